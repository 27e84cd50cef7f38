"""Tests for idempotent file mutations."""

import asyncio
import stat

import pytest

from trunkinstall.errors import ActionFailed
from trunkinstall.installer.mutations import (
    GENERATED_MARKER,
    AppendBlock,
    FileMutationAction,
    InsertAfter,
    MutationStatus,
    Substitute,
    has_marker,
    write_atomic,
)
from trunkinstall.installer.planning import (
    SQLITE_BLOCK,
    SQLITE_MARKER,
    nginx_mutations,
    secret_key_mutation,
    settings_mutations,
    supervisor_mutations,
)
from tests.conftest import SETTINGS_SAMPLE


def run(action, ctx=None):
    return asyncio.run(action.run(ctx, 10))


class TestSubstitute:
    def test_applies_once(self):
        sub = Substitute(r"^ALLOWED_HOSTS = \[\]", "ALLOWED_HOSTS = ['a']", applied=r"^ALLOWED_HOSTS = \[.+\]")

        text, status = sub.apply("ALLOWED_HOSTS = []\n")
        again, second = sub.apply(text)

        assert status is MutationStatus.APPLIED
        assert text == "ALLOWED_HOSTS = ['a']\n"
        assert second is MutationStatus.ALREADY_APPLIED
        assert again == text

    def test_no_match(self):
        sub = Substitute("missing", "x", literal=True)

        text, status = sub.apply("something else")

        assert status is MutationStatus.NO_MATCH
        assert text == "something else"

    def test_literal_escapes_regex(self):
        sub = Substitute("server 127.0.0.1:7055;", "server 127.0.0.1:8000;", literal=True)

        text, _ = sub.apply("server 127.0.0.1:7055;\nserver 127a0b0c1:7055;\n")

        assert text == "server 127.0.0.1:8000;\nserver 127a0b0c1:7055;\n"

    def test_callable_replacement_only_called_when_applied(self):
        calls = []

        def value(ctx):
            calls.append(ctx)
            return "B"

        sub = Substitute("A", value, literal=True)
        sub.apply("nothing here")
        text, _ = sub.apply("A", ctx="ctx")

        assert text == "B"
        assert calls == ["ctx"]

    def test_replacement_backslashes_are_literal(self):
        sub = Substitute("X", r"C:\new\1", literal=True)

        text, _ = sub.apply("X")

        assert text == r"C:\new\1"


class TestInsertAfter:
    def test_inserts_after_anchor_line(self):
        ins = InsertAfter(r"^B", "inserted", marker=r"^inserted")

        text, status = ins.apply("A\nB = 1\nC\n")

        assert status is MutationStatus.APPLIED
        assert text == "A\nB = 1\ninserted\nC\n"

    def test_anchor_on_last_line(self):
        ins = InsertAfter(r"^B", "inserted", marker=r"^inserted")

        text, _ = ins.apply("A\nB")

        assert text == "A\nB\ninserted"

    def test_marker_prevents_second_insert(self):
        ins = InsertAfter(r"^B", "inserted", marker=r"^inserted")
        text, _ = ins.apply("B\n")

        again, status = ins.apply(text)

        assert status is MutationStatus.ALREADY_APPLIED
        assert again.count("inserted") == 1


class TestAppendBlock:
    def test_appends_with_newline(self):
        block = AppendBlock("# block\nX = 1", marker=r"^# block")

        text, _ = block.apply("A = 1")

        assert text == "A = 1\n# block\nX = 1\n"

    def test_idempotent(self):
        block = AppendBlock(SQLITE_BLOCK, marker=SQLITE_MARKER)
        text, _ = block.apply(SETTINGS_SAMPLE)

        again, status = block.apply(text)

        assert status is MutationStatus.ALREADY_APPLIED
        assert again == text


class TestFileMutationAction:
    def test_creates_from_template(self, temp_dir):
        template = temp_dir / "settings.sample"
        template.write_text(SETTINGS_SAMPLE)
        target = temp_dir / "settings.py"
        action = FileMutationAction(target, settings_mutations(["localhost"]), template=template)

        result = run(action)

        text = target.read_text()
        assert result.output == f"created {target}"
        assert "ALLOWED_HOSTS = ['localhost']" in text
        assert "CSRF_TRUSTED_ORIGINS = [" in text
        assert "'https://localhost'" in text
        assert template.read_text() == SETTINGS_SAMPLE

    def test_second_run_is_unchanged(self, temp_dir):
        template = temp_dir / "settings.sample"
        template.write_text(SETTINGS_SAMPLE)
        target = temp_dir / "settings.py"
        action = FileMutationAction(target, settings_mutations(["localhost"]), template=template)
        run(action)
        before = target.read_bytes()

        assert not action.pending(None)
        result = run(action)

        assert target.read_bytes() == before
        assert "unchanged" in result.output

    def test_customized_file_is_not_touched(self, temp_dir):
        target = temp_dir / "settings.py"
        target.write_text("ALLOWED_HOSTS = ['scanner.example.org']\nCSRF_TRUSTED_ORIGINS = []\n")
        action = FileMutationAction(target, settings_mutations(["localhost"]))

        assert not action.pending(None)

    def test_unmatched_mutation_is_a_warning(self, temp_dir):
        target = temp_dir / "settings.py"
        target.write_text("DEBUG = True\n")
        action = FileMutationAction(target, [Substitute("NOPE", "x", literal=True, label="nope")])

        result = run(action)

        assert result.warnings == ["settings.py: 'nope' matched nothing"]

    def test_unmatched_required_mutation_fails(self, temp_dir):
        target = temp_dir / "settings.py"
        target.write_text("DEBUG = True\n")
        action = FileMutationAction(
            target, [Substitute("NOPE", "x", literal=True, label="nope", required=True)]
        )

        with pytest.raises(ActionFailed, match="nope"):
            run(action)

    def test_missing_template(self, temp_dir):
        action = FileMutationAction(temp_dir / "out", [], template=temp_dir / "absent.sample")

        with pytest.raises(ActionFailed, match="not found"):
            run(action)

    def test_regenerate_renders_from_template(self, temp_dir):
        template = temp_dir / "site.sample"
        template.write_text("root /home/radio/trunk-player;\n")
        target = temp_dir / "site"
        action = FileMutationAction(
            target,
            [Substitute("/home/radio/trunk-player", "/srv/tp", literal=True)],
            template=template,
            regenerate=True,
        )
        run(action)
        assert not action.pending(None)

        template.write_text("root /home/radio/trunk-player;\nlisten 80;\n")

        assert action.pending(None)
        run(action)
        assert target.read_text() == "root /srv/tp;\nlisten 80;\n"


class TestSecretKey:
    def test_generated_once(self, temp_dir, sqlite_config, make_context):
        ctx = make_context(sqlite_config)
        target = temp_dir / "settings.py"
        target.write_text(SETTINGS_SAMPLE)
        action = FileMutationAction(target, [secret_key_mutation()])

        run(action, ctx)
        first = target.read_text()
        assert len(ctx.secrets) == 1
        assert not action.pending(ctx)
        run(action, ctx)

        assert target.read_text() == first
        assert GENERATED_MARKER in first
        assert "replace-me-with-something-long" not in first
        key = next(iter(ctx.secrets))
        assert len(key) == 64
        assert f"SECRET_KEY = '{key}'" in first


class TestServiceConfigs:
    def test_nginx(self, sqlite_config, make_context, adapter):
        from tests.conftest import NGINX_SAMPLE

        ctx = make_context(sqlite_config)
        text = NGINX_SAMPLE
        for mutation in nginx_mutations(sqlite_config, ctx.layout, adapter):
            text, status = mutation.apply(text)
            assert status is MutationStatus.APPLIED

        assert "/home/radio" not in text
        assert f"alias {ctx.layout.root}/static/;" in text
        assert f"alias {sqlite_config.resolved_audio_dir};" in text
        assert "server 127.0.0.1:8000;" in text
        assert str(adapter.log_dir) in text

    def test_supervisor(self, sqlite_config, make_context, adapter):
        from tests.conftest import SUPERVISOR_SAMPLE

        ctx = make_context(sqlite_config)
        text = SUPERVISOR_SAMPLE
        for mutation in supervisor_mutations(sqlite_config, ctx.layout, adapter):
            text, _ = mutation.apply(text)

        assert f"command={ctx.layout.venv}/bin/daphne" in text
        assert f"directory={ctx.layout.root}" in text
        assert "user=tester" in text
        assert "/var/log/trunk-player" not in text


def test_write_atomic_keeps_mode(temp_dir):
    target = temp_dir / "conf"
    target.write_text("old")
    target.chmod(0o640)

    write_atomic(target, "new")

    assert target.read_text() == "new"
    assert stat.S_IMODE(target.stat().st_mode) == 0o640
    assert [p.name for p in temp_dir.iterdir()] == ["conf"]


def test_has_marker(temp_dir):
    target = temp_dir / "settings.py"
    target.write_text("# SQLite database setup (development)\n")

    assert has_marker(target, SQLITE_MARKER)
    assert not has_marker(temp_dir / "absent.py", SQLITE_MARKER)
