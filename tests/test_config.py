"""Tests for config loading, JSON preprocessing and validation."""

import json
from pathlib import Path

import pytest

from trunkinstall.config import (
    ConfigError,
    Configuration,
    DatabaseEngine,
    ExistingDatabaseChoice,
    _format_syntax_error,
    load_config,
    load_configuration,
    preprocess_jsonish,
    validate_config,
)
from trunkinstall.paths import get_config_path, get_state_path


class TestPreprocessJsonish:
    """Tests for the JSON preprocessor."""

    def test_valid_strict_json_unchanged(self):
        """Strict JSON should pass through unchanged."""
        input_text = '{"database": "sqlite", "server_port": 8000}'
        assert preprocess_jsonish(input_text) == input_text

    def test_trailing_comma_in_object(self):
        """Trailing comma in object should be replaced with space."""
        result = preprocess_jsonish('{"a": 1, "b": 2,}')
        assert result == '{"a": 1, "b": 2 }'
        assert json.loads(result) == {"a": 1, "b": 2}

    def test_trailing_comma_in_array(self):
        result = preprocess_jsonish('["radio.local", "10.0.0.5",]')
        assert json.loads(result) == ["radio.local", "10.0.0.5"]

    def test_line_comment(self):
        """Line comments are blanked but line structure is kept."""
        input_text = '{\n  // audio lives on the big disk\n  "audio_dir": "/mnt/audio"\n}'
        result = preprocess_jsonish(input_text)
        assert result.count("\n") == input_text.count("\n")
        assert json.loads(result) == {"audio_dir": "/mnt/audio"}

    def test_url_with_double_slash_in_string(self):
        """A // inside a string is not a comment."""
        input_text = '{"url": "http://localhost:8000/"}'
        assert json.loads(preprocess_jsonish(input_text)) == {"url": "http://localhost:8000/"}

    def test_escaped_quote_in_string(self):
        input_text = r'{"a": "say \"hi\", // not a comment"}'
        assert json.loads(preprocess_jsonish(input_text)) == {"a": 'say "hi", // not a comment'}

    def test_trailing_comma_with_comment(self):
        input_text = '{"a": 1, // last\n}'
        assert json.loads(preprocess_jsonish(input_text)) == {"a": 1}


class TestFormatSyntaxError:
    """Tests for syntax error formatting."""

    def test_caret_under_column(self):
        text = '{\n  "database": sqlite\n}'
        with pytest.raises(json.JSONDecodeError) as excinfo:
            json.loads(text)

        message = _format_syntax_error(text, excinfo.value)

        lines = message.split("\n")
        assert lines[0].startswith("Config syntax error at line 2, col 15")
        assert lines[1] == '  "database": sqlite'
        assert lines[2] == " " * 14 + "^"


class TestLoadConfig:
    """Tests for load_config."""

    def test_load_from_string(self):
        assert load_config('{"database": "postgresql",}') == {"database": "postgresql"}

    def test_load_json_file(self, tmp_path):
        path = tmp_path / "trunkinstall.json"
        path.write_text('{"server_port": 9000}')
        assert load_config(path) == {"server_port": 9000}

    def test_load_yaml_file(self, tmp_path):
        """YAML files are parsed by suffix."""
        path = tmp_path / "trunkinstall.yaml"
        path.write_text("database: sqlite\nextra_allowed_hosts:\n  - radio.local\n")
        assert load_config(path) == {"database": "sqlite", "extra_allowed_hosts": ["radio.local"]}

    def test_empty_yaml_is_empty_config(self, tmp_path):
        path = tmp_path / "trunkinstall.yml"
        path.write_text("")
        assert load_config(path) == {}

    def test_yaml_syntax_error(self, tmp_path):
        path = tmp_path / "trunkinstall.yaml"
        path.write_text("database: [sqlite\n")
        with pytest.raises(ConfigError, match="syntax error"):
            load_config(path)

    def test_file_not_found(self):
        with pytest.raises(ConfigError, match="not found"):
            load_config(Path("/nonexistent/trunkinstall.json"))

    def test_syntax_error_has_location(self):
        with pytest.raises(ConfigError) as excinfo:
            load_config('{"database": }')
        assert "line 1" in str(excinfo.value)
        assert "^" in str(excinfo.value)

    def test_non_dict_root(self):
        with pytest.raises(ConfigError, match="must be an object"):
            load_config("[1, 2]")

    def test_invalid_type_raises_typeerror(self):
        with pytest.raises(TypeError):
            load_config(42)


class TestValidateConfig:
    """Tests for validate_config."""

    def test_defaults(self, tmp_path):
        config = validate_config({}, tmp_path)
        assert config.database is DatabaseEngine.AUTO
        assert config.existing_database is None
        assert config.start_dev_server is True
        assert config.server_port == 8000
        assert config.resolved_audio_dir == tmp_path.resolve() / "audio_files"

    def test_enum_values(self, tmp_path):
        config = validate_config(
            {"database": "postgresql", "existing_database": "reuse-existing"}, tmp_path
        )
        assert config.database is DatabaseEngine.POSTGRESQL
        assert config.existing_database is ExistingDatabaseChoice.REUSE_EXISTING

    def test_bad_enum_value(self, tmp_path):
        with pytest.raises(ConfigError, match="config.database must be one of auto, postgresql, sqlite"):
            validate_config({"database": "mysql"}, tmp_path)

    def test_unknown_key(self, tmp_path):
        with pytest.raises(ConfigError, match="config.colour is not a recognized setting"):
            validate_config({"colour": "blue"}, tmp_path)

    def test_project_dir_is_not_settable(self, tmp_path):
        with pytest.raises(ConfigError, match="project_dir"):
            validate_config({"project_dir": "/elsewhere"}, tmp_path)

    def test_bool_type(self, tmp_path):
        with pytest.raises(ConfigError, match="config.skip_services must be a boolean"):
            validate_config({"skip_services": "yes"}, tmp_path)

    def test_port_type(self, tmp_path):
        with pytest.raises(ConfigError, match="config.server_port must be an integer"):
            validate_config({"server_port": True}, tmp_path)

    def test_port_range(self, tmp_path):
        with pytest.raises(ConfigError, match="between 1 and 65535"):
            validate_config({"server_port": 70000}, tmp_path)

    def test_identifier_rejects_sql(self, tmp_path):
        """Database names end up in SQL, so only plain identifiers pass."""
        with pytest.raises(ConfigError, match="db_name must be a plain identifier"):
            validate_config({"db_name": "x; DROP TABLE users"}, tmp_path)

    def test_venv_dir_must_be_inside_project(self, tmp_path):
        with pytest.raises(ConfigError, match="venv_dir"):
            validate_config({"venv_dir": "../env"}, tmp_path)

    def test_relative_audio_dir_is_under_project(self, tmp_path):
        config = validate_config({"audio_dir": "media/audio"}, tmp_path)
        assert config.audio_dir == tmp_path.resolve() / "media" / "audio"

    def test_extra_hosts_must_be_strings(self, tmp_path):
        with pytest.raises(ConfigError, match="list of strings"):
            validate_config({"extra_allowed_hosts": ["ok", 3]}, tmp_path)

    def test_none_values_are_ignored(self, tmp_path):
        config = validate_config({"database": None, "server_port": None}, tmp_path)
        assert config.database is DatabaseEngine.AUTO
        assert config.server_port == 8000


class TestLoadConfiguration:
    """Tests for file plus command-line override merging."""

    def test_without_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TRUNKINSTALL_CONFIG", raising=False)
        config = load_configuration(tmp_path)
        assert isinstance(config, Configuration)
        assert config.project_dir == tmp_path.resolve()

    def test_file_in_project_dir(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TRUNKINSTALL_CONFIG", raising=False)
        (tmp_path / "trunkinstall.json").write_text('{"database": "sqlite", "server_port": 9000}')

        config = load_configuration(tmp_path)

        assert config.database is DatabaseEngine.SQLITE
        assert config.server_port == 9000

    def test_overrides_win(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TRUNKINSTALL_CONFIG", raising=False)
        (tmp_path / "trunkinstall.json").write_text('{"database": "sqlite", "server_port": 9000}')

        config = load_configuration(
            tmp_path, overrides={"database": "postgresql", "server_port": None}
        )

        assert config.database is DatabaseEngine.POSTGRESQL
        assert config.server_port == 9000

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("skip_services: true\n")

        config = load_configuration(tmp_path, config_path=path)

        assert config.skip_services is True


class TestPaths:
    def test_config_path_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TRUNKINSTALL_CONFIG", "/etc/trunkinstall.yaml")
        assert get_config_path(tmp_path) == Path("/etc/trunkinstall.yaml")

    def test_default_state_path(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TRUNKINSTALL_STATE", raising=False)
        assert get_state_path(tmp_path) == tmp_path / ".trunkinstall" / "state.jsonl"

    def test_state_path_create(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TRUNKINSTALL_STATE", raising=False)
        path = get_state_path(tmp_path, create=True)
        assert path.parent.is_dir()
