"""PostgreSQL provisioning actions with explicit rollback."""

import logging
import re
import secrets
import string
from pathlib import Path

from ..errors import ActionFailed
from ..execution import QUICK_TIMEOUT, SETUP_TIMEOUT
from ..state import ResourceKind, StateEntry
from .actions import Action, ActionResult, CommandAction
from .models import ExecutionContext
from .mutations import GENERATED_MARKER, FileMutationAction, Substitute, write_atomic

_logging = logging.getLogger(__name__)

PASSWORD_PLACEHOLDER = "'PASSWORD': 'fake_password',"
PASSWORD_APPLIED = r"'PASSWORD': '[^']*',\s*" + re.escape(GENERATED_MARKER)
# The placeholder, or a password an earlier run generated
PASSWORD_LINE = f"(?:{re.escape(PASSWORD_PLACEHOLDER)}|{PASSWORD_APPLIED})"

_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = 24) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def setup_sql(db_name: str, db_user: str, password: str, *, role_exists: bool, db_exists: bool) -> str:
    lines = []
    if role_exists:
        lines.append(f"ALTER ROLE {db_user} WITH PASSWORD '{password}';")
    else:
        lines.append(f"CREATE USER {db_user} WITH PASSWORD '{password}';")
    if not db_exists:
        lines.append(f"CREATE DATABASE {db_name} OWNER {db_user};")
    lines += [
        f"GRANT ALL PRIVILEGES ON DATABASE {db_name} TO {db_user};",
        f"ALTER ROLE {db_user} SET client_encoding TO 'utf8';",
        f"ALTER ROLE {db_user} SET default_transaction_isolation TO 'read committed';",
        f"ALTER ROLE {db_user} SET timezone TO 'UTC';",
        f"\\connect {db_name}",
        f"GRANT USAGE ON SCHEMA public TO {db_user};",
        f"GRANT CREATE ON SCHEMA public TO {db_user};",
        f"GRANT ALL PRIVILEGES ON ALL TABLES IN SCHEMA public TO {db_user};",
        f"GRANT ALL PRIVILEGES ON ALL SEQUENCES IN SCHEMA public TO {db_user};",
        f"ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT ALL ON TABLES TO {db_user};",
        f"ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT ALL ON SEQUENCES TO {db_user};",
    ]
    return "\n".join(lines) + "\n"


def drop_database_sql(db_name: str) -> str:
    return f"DROP DATABASE IF EXISTS {db_name};"


def drop_role_sql(db_user: str) -> str:
    return f"DROP USER IF EXISTS {db_user};"


async def _exists(ctx: ExecutionContext, query: str) -> bool:
    result = await ctx.run(ctx.adapter.psql_command("-tAc", query), QUICK_TIMEOUT)
    return result.ok and result.output.strip() == "1"


async def database_exists(ctx: ExecutionContext, db_name: str) -> bool:
    return await _exists(ctx, f"SELECT 1 FROM pg_database WHERE datname='{db_name}';")


async def role_exists(ctx: ExecutionContext, db_user: str) -> bool:
    return await _exists(ctx, f"SELECT 1 FROM pg_roles WHERE rolname='{db_user}';")


def drop_database_action(db_name: str, removes: str | None = None) -> CommandAction:
    return CommandAction(
        lambda ctx: ctx.adapter.psql_command("-c", drop_database_sql(db_name)),
        destructive=True,
        removes=removes,
        label=drop_database_sql(db_name),
    )


def drop_role_action(db_user: str, removes: str | None = None) -> CommandAction:
    return CommandAction(
        lambda ctx: ctx.adapter.psql_command("-c", drop_role_sql(db_user)),
        destructive=True,
        removes=removes,
        label=drop_role_sql(db_user),
    )


class PostgresSetupAction(Action):
    """Create role and database, then write the generated password into settings.

    The password is generated inside ``run`` and dropped when it returns.
    What existed beforehand is remembered so the rollback only removes
    objects this action created.
    """

    destructive = True

    def __init__(self, settings: Path):
        self.settings = settings
        self.had_database: bool | None = None
        self.had_role: bool | None = None
        self.settings_backup: str | None = None

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        cfg = ctx.config
        self.settings_backup = (
            self.settings.read_text(encoding="utf-8") if self.settings.exists() else None
        )
        self.had_database = await database_exists(ctx, cfg.db_name)
        self.had_role = await role_exists(ctx, cfg.db_user)

        password = generate_password()
        ctx.secrets.add(password)

        sql = setup_sql(
            cfg.db_name,
            cfg.db_user,
            password,
            role_exists=self.had_role,
            db_exists=self.had_database,
        )
        result = await ctx.run(
            ctx.adapter.psql_command("-v", "ON_ERROR_STOP=1"),
            min(timeout, SETUP_TIMEOUT),
            input_text=sql,
            sensitive=True,
        )
        if result.timed_out:
            raise ActionFailed("PostgreSQL setup timed out", output=result.output)
        if not result.ok:
            raise ActionFailed(
                "PostgreSQL setup failed",
                output=result.output,
                returncode=result.returncode,
            )

        write_password = FileMutationAction(
            self.settings,
            [
                Substitute(
                    PASSWORD_LINE,
                    f"'PASSWORD': '{password}',  {GENERATED_MARKER}",
                    label="PASSWORD",
                    required=True,
                )
            ],
        )
        outcome = await write_password.run(ctx, timeout)

        if not self.had_role:
            outcome.created.append(StateEntry(ResourceKind.DB_USER, cfg.db_user))
        if not self.had_database:
            outcome.created.append(
                StateEntry(ResourceKind.DATABASE, cfg.db_name, params={"owner": cfg.db_user})
            )
        outcome.output = f"{result.output}\n{outcome.output}".strip()
        return outcome

    def describe(self) -> str:
        return "psql: create role and database; write PASSWORD into settings"


class PostgresRollbackAction(Action):
    """Undo a failed PostgresSetupAction."""

    destructive = True

    def __init__(self, setup: PostgresSetupAction):
        self.setup = setup

    async def run(self, ctx: ExecutionContext, timeout: float) -> ActionResult:
        cfg = ctx.config
        result = ActionResult()

        if self.setup.had_database is False and await database_exists(ctx, cfg.db_name):
            result.merge(await drop_database_action(cfg.db_name).run(ctx, timeout))
        if self.setup.had_role is False and await role_exists(ctx, cfg.db_user):
            result.merge(await drop_role_action(cfg.db_user).run(ctx, timeout))

        backup = self.setup.settings_backup
        if backup is not None and self.setup.settings.exists():
            if self.setup.settings.read_text(encoding="utf-8") != backup:
                write_atomic(self.setup.settings, backup)
                result.output = f"{result.output}\nrestored {self.setup.settings.name}".strip()
        return result

    def describe(self) -> str:
        return "drop role/database created by this run; restore settings"


__all__ = [
    "PASSWORD_PLACEHOLDER",
    "PASSWORD_APPLIED",
    "PASSWORD_LINE",
    "generate_password",
    "setup_sql",
    "drop_database_sql",
    "drop_role_sql",
    "database_exists",
    "role_exists",
    "drop_database_action",
    "drop_role_action",
    "PostgresSetupAction",
    "PostgresRollbackAction",
]
