"""Installation planning, static validation and rendering."""

import hashlib
import logging
import re
import shutil
import socket
from typing import Iterable, Mapping

from ..config import Configuration
from ..errors import ActionFailed, PlanInvariantViolation
from ..execution import INSTALL_TIMEOUT, MIGRATION_TIMEOUT, QUICK_TIMEOUT, SETUP_TIMEOUT
from ..paths import ProjectLayout, find_recorder_dir
from ..platforms import MacOSHomebrewAdapter, PlatformAdapter
from ..state import ResourceKind, StateEntry, StateStore
from ..tui import ConfirmationProvider
from .actions import (
    ActionResult,
    CallableAction,
    CommandAction,
    CompositeAction,
    CopyExecutableAction,
    EnsureDirectoriesAction,
    HttpReadyAction,
    RemovePathsAction,
    StartDetachedAction,
    SymlinkAction,
    is_process_alive,
    process_marker,
)
from .capabilities import IMPORT_CHECK, NGINX, POSTGRESQL, SUPERVISOR, Capability
from .database import (
    PASSWORD_APPLIED,
    PASSWORD_PLACEHOLDER,
    PostgresRollbackAction,
    PostgresSetupAction,
    database_exists,
    drop_database_action,
    drop_role_action,
    generate_password,
    role_exists,
)
from .models import (
    Criticality,
    ExecutionContext,
    Goal,
    Outcome,
    Plan,
    RetryPolicy,
    Step,
    project_layout,
)
from .mutations import (
    GENERATED_MARKER,
    AppendBlock,
    FileMutationAction,
    InsertAfter,
    Substitute,
    has_marker,
)
from .resolution import (
    DatabaseDecision,
    DatabasePath,
    ServiceDecision,
    VenvDecision,
    check_prerequisites,
    decide_database,
    decide_services,
    decide_venv,
)

_logging = logging.getLogger(__name__)

VENV_PROMPT = "Trunk Player"
VENV_TIMEOUT = 120
SECRET_KEY_LENGTH = 64
DEV_SERVER_ID = "runserver"

SQLITE_MARKER = r"^# SQLite database setup \(development\)"
SQLITE_BLOCK = """
# SQLite database setup (development)
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.path.join(BASE_DIR, 'db.sqlite3'),
    }
}
"""

READINESS = RetryPolicy(max_attempts=10, backoff=2.0, timeout=QUICK_TIMEOUT)


# Host detection ---------------------------------------------------------------


def _primary_address() -> str | None:
    # UDP connect sends nothing; it only selects the outbound interface
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
    except OSError:
        return None


def _local_addresses(hostname: str) -> list[str]:
    try:
        infos = socket.getaddrinfo(hostname, None, socket.AF_INET)
    except OSError:
        return []
    return [info[4][0] for info in infos]


def detect_allowed_hosts(extra: Iterable[str] = ()) -> list[str]:
    """Hosts Django should answer for, in a stable order without duplicates."""
    hostname = socket.gethostname()
    candidates = ["localhost", "127.0.0.1", _primary_address(), hostname]
    candidates += _local_addresses(hostname)
    candidates += list(extra)

    hosts: list[str] = []
    for host in candidates:
        if host and host not in hosts and not host.startswith("127.0.1."):
            hosts.append(host)
    return hosts


def allowed_hosts_line(hosts: list[str]) -> str:
    return "ALLOWED_HOSTS = [" + ", ".join(f"'{h}'" for h in hosts) + "]"


def csrf_block(hosts: list[str]) -> str:
    origins = []
    for host in hosts:
        origins += [f"'http://{host}'", f"'https://{host}'"]
    return (
        "\n# CSRF trusted origins for Django 4.0+\n"
        "CSRF_TRUSTED_ORIGINS = [\n"
        f"    {', '.join(origins)}\n"
        "]"
    )


# Mutations --------------------------------------------------------------------


def settings_mutations(hosts: list[str]) -> list:
    return [
        Substitute(
            r"^ALLOWED_HOSTS = \[\]",
            allowed_hosts_line(hosts),
            applied=r"^ALLOWED_HOSTS = \[.+\]",
            label="ALLOWED_HOSTS",
        ),
        InsertAfter(
            r"^ALLOWED_HOSTS = ",
            csrf_block(hosts),
            marker=r"^CSRF_TRUSTED_ORIGINS = ",
            label="CSRF_TRUSTED_ORIGINS",
        ),
        Substitute(
            "AUDIO_URL_BASE = '//s3.amazonaws.com/SET-TO-MY-BUCKET/'",
            "AUDIO_URL_BASE = '/audio_files/'",
            applied=r"^AUDIO_URL_BASE = '/audio_files/'",
            label="AUDIO_URL_BASE",
            literal=True,
        ),
    ]


def _secret_key_line(ctx: ExecutionContext) -> str:
    key = generate_password(SECRET_KEY_LENGTH)
    ctx.secrets.add(key)
    return f"SECRET_KEY = '{key}'  {GENERATED_MARKER}"


def secret_key_mutation() -> Substitute:
    return Substitute(
        r"^SECRET_KEY = .*$",
        _secret_key_line,
        applied=r"^SECRET_KEY = .*" + re.escape(GENERATED_MARKER),
        label="SECRET_KEY",
        required=True,
    )


def nginx_mutations(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> list:
    return [
        Substitute("/home/radio/trunk-player", str(layout.root), label="install path", literal=True),
        Substitute("/var/log/trunk-player", str(adapter.log_dir), label="log path", literal=True),
        Substitute(
            "server 127.0.0.1:7055;",
            f"server 127.0.0.1:{config.server_port};",
            label="upstream port",
            literal=True,
        ),
        Substitute(
            r"alias [^;]*audio_files;",
            f"alias {config.resolved_audio_dir};",
            label="audio alias",
        ),
    ]


def supervisor_mutations(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> list:
    return [
        Substitute("/home/radio/trunk-player/env", str(layout.venv), label="venv path", literal=True),
        Substitute("/home/radio/trunk-player", str(layout.root), label="install path", literal=True),
        Substitute("user=radio", f"user={adapter.service_user}", label="user", literal=True),
        Substitute("/var/log/trunk-player", str(adapter.log_dir), label="log path", literal=True),
    ]


# Preconditions -----------------------------------------------------------------


def requirements_digest(layout: ProjectLayout) -> str:
    return hashlib.sha256(layout.requirements.read_bytes()).hexdigest()


def requirements_changed(ctx: ExecutionContext) -> bool:
    stamp = ctx.layout.requirements_stamp
    try:
        return stamp.read_text().strip() != requirements_digest(ctx.layout)
    except OSError:
        return True


async def _write_requirements_stamp(ctx: ExecutionContext, timeout: float) -> ActionResult:
    try:
        ctx.layout.requirements_stamp.write_text(requirements_digest(ctx.layout) + "\n")
    except OSError as e:
        raise ActionFailed(f"Cannot write {ctx.layout.requirements_stamp}: {e}") from e
    return ActionResult()


async def migrations_pending(ctx: ExecutionContext) -> bool:
    result = await ctx.run(
        [str(ctx.layout.venv_python), str(ctx.layout.manage_py), "migrate", "--check"],
        SETUP_TIMEOUT,
        cwd=ctx.layout.root,
    )
    return not result.ok


async def _run_migrations(ctx: ExecutionContext, timeout: float) -> ActionResult:
    existed = ctx.layout.sqlite_db.exists()
    result = await CommandAction(
        [str(ctx.layout.venv_python), str(ctx.layout.manage_py), "migrate", "--verbosity=2"],
        cwd=ctx.layout.root,
    ).run(ctx, timeout)
    if not existed and ctx.layout.sqlite_db.exists():
        result.created.append(
            StateEntry(
                ResourceKind.SQLITE_DB,
                ctx.layout.sqlite_db.name,
                params={"path": str(ctx.layout.sqlite_db)},
            )
        )
    return result


def static_empty(ctx: ExecutionContext) -> bool:
    static = ctx.layout.static_dir
    return not static.is_dir() or not any(static.iterdir())


def _service_stopped(service: str):
    async def _check(ctx: ExecutionContext) -> bool:
        command = ctx.adapter.service_status_command(service)
        result = await ctx.run(command, QUICK_TIMEOUT)
        return not ctx.adapter.parse_service_status(service, result.returncode, result.output)

    return _check


def _binary_missing(binary: str):
    return lambda ctx: shutil.which(binary) is None


def _changed_this_run(*step_ids: str):
    return lambda ctx: any(ctx.outcomes.get(s) is Outcome.SUCCEEDED for s in step_ids)


def dev_server_alive(ctx: ExecutionContext) -> bool:
    entry = ctx.state.get(f"{ResourceKind.DEV_SERVER.value}:{DEV_SERVER_ID}")
    return entry is not None and is_process_alive(entry.params.get("pid"), process_marker(entry))


# Step groups -------------------------------------------------------------------


def _environment_steps(config: Configuration, layout: ProjectLayout, decision: VenvDecision) -> list[Step]:
    steps = []
    if decision is VenvDecision.RECREATE:
        steps.append(
            Step(
                id="remove-broken-venv",
                description=f"Remove unusable virtual environment {layout.venv_dir}/",
                action=RemovePathsAction([layout.venv]),
                precondition=lambda ctx: ctx.layout.venv.exists(),
                idempotency_key=f"{ResourceKind.VENV.value}:{layout.venv_dir}",
                goal=Goal.ENVIRONMENT,
            )
        )

    steps.append(
        Step(
            id="create-venv",
            description=f"Create virtual environment {layout.venv_dir}/",
            action=CommandAction(
                [config.python, "-m", "venv", layout.venv_dir, "--prompt", VENV_PROMPT],
                cwd=layout.root,
                creates=lambda ctx: StateEntry(
                    ResourceKind.VENV,
                    ctx.layout.venv_dir,
                    params={"path": str(ctx.layout.venv)},
                ),
            ),
            precondition=lambda ctx: not ctx.layout.venv_python.exists(),
            idempotency_key=f"{ResourceKind.VENV.value}:{layout.venv_dir}",
            retry=RetryPolicy(timeout=VENV_TIMEOUT),
            goal=Goal.ENVIRONMENT,
            produces=frozenset({"venv"}),
        )
    )

    force = decision in (VenvDecision.FORCE_REINSTALL, VenvDecision.RECREATE)
    pip = str(layout.venv_pip)
    install = [pip, "install", "-r", str(layout.requirements)]
    if force:
        install.insert(2, "--force-reinstall")
    steps.append(
        Step(
            id="install-deps",
            description="Install Python dependencies" + (" (forced)" if force else ""),
            action=CompositeAction(
                [
                    CommandAction([pip, "install", "--upgrade", "pip"], cwd=layout.root),
                    CommandAction(install, cwd=layout.root),
                    CallableAction(_write_requirements_stamp, "record requirements digest"),
                ]
            ),
            precondition=None if force else requirements_changed,
            retry=RetryPolicy(timeout=INSTALL_TIMEOUT),
            goal=Goal.ENVIRONMENT,
            requires=frozenset({"venv"}),
            produces=frozenset({"python-deps"}),
        )
    )
    steps.append(
        Step(
            id="check-imports",
            description="Verify django and channels import",
            action=CommandAction([str(layout.venv_python), "-c", IMPORT_CHECK]),
            criticality=Criticality.WARN,
            goal=Goal.ENVIRONMENT,
            requires=frozenset({"python-deps"}),
        )
    )
    return steps


def _settings_steps(layout: ProjectLayout, hosts: list[str]) -> list[Step]:
    write_settings = FileMutationAction(
        layout.settings, settings_mutations(hosts), template=layout.settings_sample
    )
    secret = FileMutationAction(layout.settings, [secret_key_mutation()])
    return [
        Step(
            id="write-settings",
            description="Write settings_local.py (allowed hosts, CSRF origins, audio URL)",
            action=write_settings,
            precondition=write_settings.pending,
            goal=Goal.ENVIRONMENT,
            produces=frozenset({"settings"}),
        ),
        Step(
            id="generate-secret",
            description="Generate SECRET_KEY",
            action=secret,
            precondition=secret.pending,
            goal=Goal.ENVIRONMENT,
            requires=frozenset({"settings"}),
        ),
    ]


def _sqlite_step(layout: ProjectLayout, fallback: bool) -> Step:
    action = FileMutationAction(
        layout.settings,
        [AppendBlock(SQLITE_BLOCK, marker=SQLITE_MARKER, label="SQLite DATABASES")],
    )
    if fallback:
        precondition = lambda ctx: (  # noqa: E731
            ctx.outcomes.get("setup-postgresql") is Outcome.FAILED and action.pending(ctx)
        )
        description = "Write SQLite database config (fallback if PostgreSQL setup fails)"
    else:
        precondition = action.pending
        description = "Write SQLite database config"
    return Step(
        id="write-sqlite-config",
        description=description,
        action=action,
        precondition=precondition,
        goal=Goal.DATABASE,
        requires=frozenset({"settings"}),
        produces=frozenset({"database-config"}),
    )


def _password_pending(ctx: ExecutionContext) -> bool:
    text = ctx.layout.settings.read_text(encoding="utf-8") if ctx.layout.settings.exists() else ""
    return PASSWORD_PLACEHOLDER in text and not re.search(PASSWORD_APPLIED, text)


async def _database_setup_pending(ctx: ExecutionContext) -> bool:
    """Settings still need a password, or the database or role is gone."""
    if _password_pending(ctx):
        return True
    if not await database_exists(ctx, ctx.config.db_name):
        return True
    return not await role_exists(ctx, ctx.config.db_user)


def _system_package_entry(capability: str):
    return lambda ctx: StateEntry(
        ResourceKind.SYSTEM_PACKAGE,
        capability,
        params={"packages": ctx.adapter.package_names(capability)},
    )


def _database_steps(
    config: Configuration,
    layout: ProjectLayout,
    adapter: PlatformAdapter,
    decision: DatabaseDecision,
) -> list[Step]:
    if decision.path is DatabasePath.SQLITE:
        return [_sqlite_step(layout, fallback=False)]
    if decision.path is DatabasePath.NONE:
        return []

    steps = []
    if decision.install_postgresql:
        steps.append(
            Step(
                id="install-postgresql",
                description="Install PostgreSQL",
                action=CommandAction(
                    adapter.install_package_command(POSTGRESQL),
                    destructive=True,
                    creates=_system_package_entry(POSTGRESQL),
                ),
                precondition=_binary_missing("psql"),
                idempotency_key=f"{ResourceKind.SYSTEM_PACKAGE.value}:{POSTGRESQL}",
                retry=RetryPolicy(timeout=INSTALL_TIMEOUT),
                criticality=Criticality.WARN,
                goal=Goal.DATABASE,
                produces=frozenset({"postgresql"}),
            )
        )
        initdb = adapter.initdb_command()
        if initdb is not None:
            steps.append(
                Step(
                    id="initdb-postgresql",
                    description="Initialize the PostgreSQL data directory",
                    action=CommandAction(initdb),
                    retry=RetryPolicy(timeout=SETUP_TIMEOUT),
                    criticality=Criticality.WARN,
                    goal=Goal.DATABASE,
                    requires=frozenset({"postgresql"}),
                )
            )

    if decision.start_postgresql:
        steps += [
            Step(
                id="start-postgresql",
                description="Start PostgreSQL service",
                action=CommandAction(adapter.start_service_command(POSTGRESQL)),
                precondition=_service_stopped(POSTGRESQL),
                retry=RetryPolicy(timeout=SETUP_TIMEOUT),
                criticality=Criticality.WARN,
                goal=Goal.DATABASE,
                requires=frozenset({"postgresql"}),
            ),
            Step(
                id="wait-for-postgresql",
                description="Wait for PostgreSQL to accept connections",
                action=CommandAction(adapter.psql_command("-c", "\\q")),
                retry=READINESS,
                criticality=Criticality.WARN,
                goal=Goal.DATABASE,
                requires=frozenset({"postgresql"}),
                produces=frozenset({"postgresql-running"}),
            ),
        ]

    if decision.drop_existing:
        steps.append(
            Step(
                id="drop-existing-database",
                description=f"Drop existing database '{config.db_name}' and user '{config.db_user}'",
                action=CompositeAction(
                    [drop_database_action(config.db_name), drop_role_action(config.db_user)]
                ),
                retry=RetryPolicy(timeout=SETUP_TIMEOUT),
                goal=Goal.DATABASE,
                requires=frozenset({"postgresql-running"}),
            )
        )

    if decision.create:
        setup = PostgresSetupAction(layout.settings)
        steps += [
            Step(
                id="setup-postgresql",
                description=f"Create PostgreSQL user '{config.db_user}' and database '{config.db_name}'",
                action=setup,
                precondition=_database_setup_pending,
                idempotency_key=f"{ResourceKind.DATABASE.value}:{config.db_name}",
                rollback=PostgresRollbackAction(setup),
                retry=RetryPolicy(timeout=SETUP_TIMEOUT),
                criticality=Criticality.WARN,
                goal=Goal.DATABASE,
                requires=frozenset({"settings", "postgresql-running"}),
                produces=frozenset({"database-config"}),
            ),
            _sqlite_step(layout, fallback=True),
        ]
    return steps


def _framework_steps(
    config: Configuration, layout: ProjectLayout, confirm: ConfirmationProvider
) -> list[Step]:
    python, manage = str(layout.venv_python), str(layout.manage_py)
    steps = [
        Step(
            id="run-migrations",
            description="Run database migrations",
            action=CallableAction(_run_migrations, f"{python} manage.py migrate --verbosity=2"),
            precondition=migrations_pending,
            retry=RetryPolicy(timeout=MIGRATION_TIMEOUT),
            criticality=Criticality.WARN,
            goal=Goal.DATABASE,
            requires=frozenset({"python-deps", "database-config"}),
            produces=frozenset({"migrated"}),
        ),
        Step(
            id="create-directories",
            description="Create audio, logs and static directories",
            action=EnsureDirectoriesAction(
                lambda ctx: [
                    ctx.config.resolved_audio_dir,
                    ctx.layout.logs_dir,
                    ctx.layout.static_dir,
                ]
            ),
            precondition=lambda ctx: not all(
                p.is_dir()
                for p in (ctx.config.resolved_audio_dir, ctx.layout.logs_dir, ctx.layout.static_dir)
            ),
            goal=Goal.ENVIRONMENT,
            produces=frozenset({"directories"}),
        ),
        Step(
            id="collect-static",
            description="Collect static files",
            action=CommandAction([python, manage, "collectstatic", "--noinput"], cwd=layout.root),
            precondition=static_empty,
            retry=RetryPolicy(timeout=MIGRATION_TIMEOUT),
            criticality=Criticality.WARN,
            goal=Goal.ENVIRONMENT,
            requires=frozenset({"python-deps", "settings", "directories"}),
        ),
    ]

    if confirm.interactive and confirm.confirm(
        "create_superuser", "Create a Django admin user now?", default=False
    ):
        steps.append(
            Step(
                id="create-superuser",
                description="Create Django admin user",
                action=CommandAction(
                    [python, manage, "createsuperuser"], cwd=layout.root, interactive=True
                ),
                retry=RetryPolicy(timeout=MIGRATION_TIMEOUT),
                criticality=Criticality.WARN,
                goal=Goal.DATABASE,
                requires=frozenset({"migrated"}),
            )
        )
    return steps


def _service_install_steps(adapter: PlatformAdapter, decisions: list[ServiceDecision]) -> list[Step]:
    steps = []
    for decision in decisions:
        name = decision.name
        goal = Goal.PROXY if name == NGINX else Goal.SERVER
        binary = "nginx" if name == NGINX else "supervisorctl"
        if decision.install:
            steps.append(
                Step(
                    id=f"install-{name}",
                    description=f"Install {name}",
                    action=CommandAction(
                        adapter.install_package_command(name),
                        destructive=True,
                        creates=_system_package_entry(name),
                    ),
                    precondition=_binary_missing(binary),
                    idempotency_key=f"{ResourceKind.SYSTEM_PACKAGE.value}:{name}",
                    retry=RetryPolicy(timeout=INSTALL_TIMEOUT),
                    criticality=Criticality.WARN,
                    goal=goal,
                    produces=frozenset({name}),
                )
            )
        if decision.start:
            steps.append(
                Step(
                    id=f"start-{name}",
                    description=f"Start {name} service",
                    action=CommandAction(adapter.start_service_command(name)),
                    precondition=_service_stopped(name),
                    retry=RetryPolicy(timeout=SETUP_TIMEOUT),
                    criticality=Criticality.WARN,
                    goal=goal,
                    requires=frozenset({name}),
                )
            )
    return steps


def _proxy_steps(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> list[Step]:
    log_dir = adapter.log_dir
    privileged = adapter.needs_privilege
    steps = [
        Step(
            id="create-log-dir",
            description=f"Create service log directory {log_dir}",
            action=CompositeAction(
                [
                    CommandAction(adapter.privileged(["mkdir", "-p", str(log_dir)])),
                    CommandAction(
                        adapter.privileged(["chown", adapter.service_user, str(log_dir)]),
                        check=False,
                    ),
                    CallableAction(_record_log_dir, "record log directory"),
                ]
            ),
            precondition=lambda ctx: not log_dir.is_dir(),
            idempotency_key=f"{ResourceKind.LOG_DIR.value}:{log_dir}",
            criticality=Criticality.WARN,
            goal=Goal.PROXY,
            produces=frozenset({"log-dir"}),
        ),
    ]

    render_nginx = FileMutationAction(
        layout.nginx_conf,
        nginx_mutations(config, layout, adapter),
        template=layout.nginx_sample,
        regenerate=True,
    )
    link_nginx = SymlinkAction(
        layout.nginx_conf,
        adapter.nginx_site_links,
        privileged=privileged,
        creates=lambda ctx: StateEntry(
            ResourceKind.NGINX_SITE,
            "trunk_player",
            params={
                "links": [str(p) for p in ctx.adapter.nginx_site_links],
                "rendered": str(ctx.layout.nginx_conf),
            },
        ),
    )
    steps += [
        Step(
            id="render-nginx-config",
            description="Render trunk_player.nginx from sample",
            action=render_nginx,
            precondition=render_nginx.pending,
            goal=Goal.PROXY,
            produces=frozenset({"nginx-config"}),
        ),
        Step(
            id="link-nginx-site",
            description="Enable nginx site",
            action=link_nginx,
            precondition=link_nginx.pending,
            idempotency_key=f"{ResourceKind.NGINX_SITE.value}:trunk_player",
            criticality=Criticality.WARN,
            goal=Goal.PROXY,
            requires=frozenset({"nginx", "nginx-config"}),
            produces=frozenset({"nginx-site"}),
        ),
    ]

    main_conf = adapter.nginx_main_conf
    if isinstance(adapter, MacOSHomebrewAdapter) and main_conf is not None:
        servers_dir = adapter.nginx_site_links[0].parent
        include = FileMutationAction(
            main_conf,
            [
                InsertAfter(
                    r"^\s*include\s+mime\.types;",
                    f"    include {servers_dir}/*;",
                    marker=r"include.*servers/\*",
                    label="include servers/*",
                )
            ],
        )
        steps.append(
            Step(
                id="include-nginx-servers",
                description="Include servers/ directory in nginx.conf",
                action=include,
                precondition=lambda ctx: main_conf.exists() and include.pending(ctx),
                criticality=Criticality.WARN,
                goal=Goal.PROXY,
                requires=frozenset({"nginx"}),
            )
        )

    changed = _changed_this_run("render-nginx-config", "link-nginx-site", "include-nginx-servers")
    steps += [
        Step(
            id="validate-nginx",
            description="Validate nginx configuration",
            action=CommandAction(adapter.nginx_test_command()),
            precondition=changed,
            criticality=Criticality.WARN,
            goal=Goal.PROXY,
            requires=frozenset({"nginx-site"}),
            produces=frozenset({"nginx-valid"}),
        ),
        Step(
            id="restart-nginx",
            description="Restart nginx",
            action=CommandAction(adapter.restart_service_command(NGINX)),
            precondition=lambda ctx: ctx.outcomes.get("validate-nginx") is Outcome.SUCCEEDED,
            retry=RetryPolicy(timeout=SETUP_TIMEOUT),
            criticality=Criticality.WARN,
            goal=Goal.PROXY,
            requires=frozenset({"nginx-valid"}),
        ),
    ]
    return steps


async def _record_log_dir(ctx: ExecutionContext, timeout: float) -> ActionResult:
    log_dir = ctx.adapter.log_dir
    return ActionResult(created=[StateEntry(ResourceKind.LOG_DIR, str(log_dir), params={"path": str(log_dir)})])


def _supervisor_steps(config: Configuration, layout: ProjectLayout, adapter: PlatformAdapter) -> list[Step]:
    render = FileMutationAction(
        layout.supervisor_conf,
        supervisor_mutations(config, layout, adapter),
        template=layout.supervisor_sample,
        regenerate=True,
    )
    link = SymlinkAction(
        layout.supervisor_conf,
        adapter.supervisor_links,
        privileged=adapter.needs_privilege,
        creates=lambda ctx: StateEntry(
            ResourceKind.SUPERVISOR_JOB,
            ctx.config.supervisor_program,
            params={
                "links": [str(p) for p in ctx.adapter.supervisor_links],
                "rendered": str(ctx.layout.supervisor_conf),
            },
        ),
    )
    changed = _changed_this_run("render-supervisor-config", "link-supervisor-job")
    program = config.supervisor_program
    return [
        Step(
            id="render-supervisor-config",
            description="Render supervisor.conf from sample",
            action=render,
            precondition=render.pending,
            goal=Goal.SERVER,
            requires=frozenset({"log-dir"}),
            produces=frozenset({"supervisor-config"}),
        ),
        Step(
            id="link-supervisor-job",
            description="Enable supervisor job",
            action=link,
            precondition=link.pending,
            idempotency_key=f"{ResourceKind.SUPERVISOR_JOB.value}:{program}",
            criticality=Criticality.WARN,
            goal=Goal.SERVER,
            requires=frozenset({"supervisor", "supervisor-config"}),
            produces=frozenset({"supervisor-job"}),
        ),
        Step(
            id="reload-supervisor",
            description="Reload supervisor configuration",
            action=CompositeAction(
                [
                    CommandAction(adapter.supervisorctl_command("reread")),
                    CommandAction(adapter.supervisorctl_command("update")),
                ]
            ),
            precondition=changed,
            retry=RetryPolicy(max_attempts=3, backoff=2.0, timeout=QUICK_TIMEOUT),
            criticality=Criticality.WARN,
            goal=Goal.SERVER,
            requires=frozenset({"supervisor-job"}),
            produces=frozenset({"supervisor-loaded"}),
        ),
        Step(
            id="start-supervisor-group",
            description=f"Start supervisor group {program}:",
            action=CommandAction(adapter.supervisorctl_command("start", f"{program}:")),
            precondition=lambda ctx: ctx.outcomes.get("reload-supervisor") is Outcome.SUCCEEDED,
            retry=RetryPolicy(timeout=SETUP_TIMEOUT),
            criticality=Criticality.WARN,
            goal=Goal.SERVER,
            requires=frozenset({"supervisor-loaded"}),
        ),
    ]


def _recorder_target_missing(ctx: ExecutionContext) -> bool:
    target_dir = find_recorder_dir()
    if target_dir is None:
        return False
    target = target_dir / ctx.layout.recorder_script.name
    return not target.exists() or target.read_bytes() != ctx.layout.recorder_script.read_bytes()


def _recorder_steps(layout: ProjectLayout) -> list[Step]:
    if not layout.recorder_script.is_file():
        return []
    return [
        Step(
            id="install-recorder-hook",
            description="Copy encode script into trunk-recorder",
            action=CopyExecutableAction(layout.recorder_script, lambda ctx: find_recorder_dir()),
            precondition=_recorder_target_missing,
            criticality=Criticality.WARN,
        )
    ]


def _dev_server_steps(config: Configuration, layout: ProjectLayout) -> list[Step]:
    address = f"{config.server_host}:{config.server_port}"
    probe_host = "127.0.0.1" if config.server_host in ("0.0.0.0", "") else config.server_host
    return [
        Step(
            id="start-dev-server",
            description=f"Start development server on {address}",
            action=StartDetachedAction(
                lambda ctx: [str(ctx.layout.venv_python), str(ctx.layout.manage_py), "runserver", address],
                lambda ctx: ctx.layout.dev_server_log,
                lambda ctx, pid: StateEntry(
                    ResourceKind.DEV_SERVER,
                    DEV_SERVER_ID,
                    params={
                        "pid": pid,
                        "marker": f"runserver {address}",
                        "address": address,
                        "log": str(ctx.layout.dev_server_log),
                    },
                ),
                label=f"manage.py runserver {address} > logs/django.log",
            ),
            precondition=lambda ctx: not dev_server_alive(ctx),
            idempotency_key=f"{ResourceKind.DEV_SERVER.value}:{DEV_SERVER_ID}",
            criticality=Criticality.WARN,
            goal=Goal.SERVER,
            requires=frozenset({"python-deps", "settings"}),
            produces=frozenset({"dev-server"}),
        ),
        Step(
            id="wait-for-dev-server",
            description="Wait for development server to answer HTTP",
            action=HttpReadyAction(f"http://{probe_host}:{config.server_port}/"),
            retry=READINESS,
            criticality=Criticality.WARN,
            goal=Goal.SERVER,
            requires=frozenset({"dev-server"}),
        ),
    ]


# Builder ------------------------------------------------------------------------


def available_resources(probed: Mapping[str, Capability], decision: DatabaseDecision) -> set[str]:
    """Resource names satisfied before any Step runs."""
    available = set()
    for name in (NGINX, SUPERVISOR, POSTGRESQL):
        cap = probed.get(name)
        if cap is not None and cap.installed:
            available.add(name)
    pg = probed.get(POSTGRESQL)
    if pg is not None and pg.running:
        available.add("postgresql-running")
    if decision.path is DatabasePath.NONE or not decision.create:
        available.add("database-config")
    return available


def validate_plan(plan: Plan, available: Iterable[str] = ()) -> None:
    """Check every Step's requirements are met by earlier Steps or the host.

    Raises:
        PlanInvariantViolation: On the first unmet requirement or duplicate id
    """
    provided = set(available)
    seen: set[str] = set()
    for step in plan.steps:
        if step.id in seen:
            raise PlanInvariantViolation(f"Duplicate step id '{step.id}'", step.id)
        seen.add(step.id)
        missing = step.requires - provided
        if missing:
            raise PlanInvariantViolation(
                f"Step '{step.id}' requires {', '.join(sorted(missing))} "
                "which no earlier step produces",
                step.id,
            )
        provided |= step.produces


def build_plan(
    config: Configuration,
    probed: Mapping[str, Capability],
    state: StateStore,
    confirm: ConfirmationProvider,
    adapter: PlatformAdapter,
    layout: ProjectLayout | None = None,
    hosts: list[str] | None = None,
) -> Plan:
    """Turn desired configuration and probe results into an ordered Plan.

    Reads but never changes system state. Prompts go through ``confirm``.

    Raises:
        PrerequisiteError: If the host cannot be provisioned
        ConfirmationRequired: If a non-interactive run lacks a needed decision
        PlanInvariantViolation: If the built Plan is mis-ordered
    """
    layout = layout or project_layout(config)
    warnings = check_prerequisites(probed)

    if hosts is None:
        hosts = detect_allowed_hosts(config.extra_allowed_hosts)

    db_decision = decide_database(
        config,
        probed,
        state,
        confirm,
        sqlite_configured=has_marker(layout.settings, SQLITE_MARKER),
    )
    warnings += db_decision.warnings

    steps: list[Step] = []
    steps += _environment_steps(config, layout, decide_venv(probed))
    steps += _settings_steps(layout, hosts)
    steps += _database_steps(config, layout, adapter, db_decision)
    steps += _framework_steps(config, layout, confirm)
    if not config.skip_services:
        steps += _service_install_steps(adapter, decide_services(probed))
        steps += _proxy_steps(config, layout, adapter)
        steps += _supervisor_steps(config, layout, adapter)
    steps += _recorder_steps(layout)
    if config.start_dev_server:
        steps += _dev_server_steps(config, layout)

    plan = Plan(title="install", steps=tuple(steps), warnings=tuple(warnings))
    validate_plan(plan, available_resources(probed, db_decision))
    _logging.debug(f"Built plan with {len(plan.steps)} steps: {', '.join(plan.step_ids())}")
    return plan


def render_plan(plan: Plan) -> str:
    lines = [f"Plan: {plan.title}", ""]

    if plan.warnings:
        lines.append("⚠️  Warnings:")
        for warning in plan.warnings:
            lines.append(f"   • {warning}")
        lines.append("")

    if plan.kept:
        lines.append("Kept (not confirmed for removal):")
        for entry in plan.kept:
            lines.append(f"   • {entry.key}")
        lines.append("")

    if not plan.steps:
        lines.append("Nothing to do.")
        return "\n".join(lines)

    lines.append("Steps:")
    for i, step in enumerate(plan.steps, 1):
        icon = "🔴" if step.action.destructive else "🟢"
        suffix = "" if step.criticality is Criticality.FATAL else " (warn on failure)"
        lines.append(f"  {i}. {icon} {step.id}: {step.description}{suffix}")
        lines.append(f"     $ {step.action.describe()}")

    return "\n".join(lines)


__all__ = [
    "SQLITE_MARKER",
    "detect_allowed_hosts",
    "settings_mutations",
    "secret_key_mutation",
    "nginx_mutations",
    "supervisor_mutations",
    "available_resources",
    "validate_plan",
    "build_plan",
    "render_plan",
]
