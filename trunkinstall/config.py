"""Configuration loading and validation for the provisioner."""

import json
import re
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

import yaml


class ConfigError(Exception):
    """Raised when config loading or parsing fails.

    Provides detailed error messages including line numbers,
    column positions, and caret indicators for syntax errors.
    """

    pass


# Names interpolated into SQL and service configs
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class DatabaseEngine(Enum):
    AUTO = "auto"
    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"


class ExistingDatabaseChoice(Enum):
    DROP_AND_RECREATE = "drop-and-recreate"
    REUSE_EXISTING = "reuse-existing"
    SKIP_DB_SETUP = "skip-db-setup"


@dataclass
class Configuration:
    """Desired state for one provisioning run."""

    project_dir: Path
    audio_dir: Path | None = None
    database: DatabaseEngine = DatabaseEngine.AUTO
    existing_database: ExistingDatabaseChoice | None = None
    install_postgresql: bool = False
    skip_services: bool = False
    non_interactive: bool = False
    start_dev_server: bool = True
    server_host: str = "0.0.0.0"
    server_port: int = 8000
    db_name: str = "trunk_player"
    db_user: str = "trunk_player_user"
    python: str = "python3"
    venv_dir: str = "venv"
    supervisor_program: str = "trunkplayer"
    extra_allowed_hosts: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.project_dir = Path(self.project_dir).resolve()
        if self.audio_dir is not None:
            audio = Path(self.audio_dir).expanduser()
            if not audio.is_absolute():
                audio = self.project_dir / audio
            self.audio_dir = audio

        if not 1 <= self.server_port <= 65535:
            raise ValueError(f"server_port must be between 1 and 65535, got {self.server_port}")
        for name in ("db_name", "db_user", "supervisor_program"):
            value = getattr(self, name)
            if not IDENTIFIER_PATTERN.match(value):
                raise ValueError(f"{name} must be a plain identifier, got '{value}'")
        if not self.venv_dir or "/" in self.venv_dir:
            raise ValueError("venv_dir must be a directory name inside the project")

    @property
    def resolved_audio_dir(self) -> Path:
        return self.audio_dir or self.project_dir / "audio_files"


_ENUM_FIELDS: dict[str, type[Enum]] = {
    "database": DatabaseEngine,
    "existing_database": ExistingDatabaseChoice,
}
_BOOL_FIELDS = {"install_postgresql", "skip_services", "non_interactive", "start_dev_server"}
_STR_FIELDS = {
    "server_host",
    "db_name",
    "db_user",
    "python",
    "venv_dir",
    "supervisor_program",
}


def validate_config(data: dict, project_dir: Path) -> Configuration:
    """Validate a raw config mapping and build a Configuration.

    Args:
        data: Parsed config file contents merged with command-line overrides
        project_dir: Checkout being provisioned

    Raises:
        ConfigError: If a key is unknown or a value has the wrong type
    """
    if not isinstance(data, dict):
        raise ConfigError(f"Config must be an object, got {type(data).__name__}")

    known = {f.name for f in fields(Configuration)} - {"project_dir"}
    kwargs: dict[str, Any] = {}

    for key, value in data.items():
        if key not in known:
            raise ConfigError(f"config.{key} is not a recognized setting")
        if value is None:
            continue

        if key in _ENUM_FIELDS:
            enum_type = _ENUM_FIELDS[key]
            allowed = [member.value for member in enum_type]
            if isinstance(value, enum_type):
                kwargs[key] = value
            elif value in allowed:
                kwargs[key] = enum_type(value)
            else:
                raise ConfigError(
                    f"config.{key} must be one of {', '.join(allowed)}, got {value!r}"
                )
        elif key in _BOOL_FIELDS:
            if not isinstance(value, bool):
                raise ConfigError(f"config.{key} must be a boolean, got {type(value).__name__}")
            kwargs[key] = value
        elif key in _STR_FIELDS:
            if not isinstance(value, str) or not value:
                raise ConfigError(f"config.{key} must be a non-empty string")
            kwargs[key] = value
        elif key == "server_port":
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"config.server_port must be an integer, got {type(value).__name__}")
            kwargs[key] = value
        elif key == "audio_dir":
            if not isinstance(value, (str, Path)):
                raise ConfigError("config.audio_dir must be a path string")
            kwargs[key] = Path(value)
        elif key == "extra_allowed_hosts":
            if not isinstance(value, list) or not all(isinstance(h, str) for h in value):
                raise ConfigError("config.extra_allowed_hosts must be a list of strings")
            kwargs[key] = list(value)

    try:
        return Configuration(project_dir=project_dir, **kwargs)
    except ValueError as e:
        raise ConfigError(f"config: {e}") from e


def preprocess_jsonish(text: str) -> str:
    """Turn JSON-ish text into strict JSON.

    ``//`` line comments and trailing commas before ``]`` or ``}`` are
    blanked out with spaces so line and column numbers survive for error
    messages. String contents, including escaped quotes, are left alone.
    """
    out = list(text)
    n = len(text)
    i = 0
    in_string = False

    while i < n:
        char = text[i]
        if in_string:
            if char == "\\":
                i += 2
                continue
            if char == '"':
                in_string = False
            i += 1
            continue

        if char == '"':
            in_string = True
        elif char == "/" and i + 1 < n and text[i + 1] == "/":
            while i < n and text[i] != "\n":
                out[i] = " "
                i += 1
            continue
        elif char == ",":
            j = i + 1
            while j < n:
                if text[j] in " \t\r\n":
                    j += 1
                elif text.startswith("//", j):
                    while j < n and text[j] != "\n":
                        j += 1
                else:
                    break
            if j < n and text[j] in "]}":
                out[i] = " "
        i += 1

    return "".join(out)


def _format_syntax_error(original_text: str, error: json.JSONDecodeError) -> str:
    """Format a JSON syntax error with the offending line and a caret under it."""
    lines = original_text.split("\n")
    parts = [f"Config syntax error at line {error.lineno}, col {error.colno}: {error.msg}"]
    if 1 <= error.lineno <= len(lines):
        parts.append(lines[error.lineno - 1])
        parts.append(" " * (error.colno - 1) + "^")
    return "\n".join(parts)


def load_config(path_or_text: Path | str) -> dict:
    """Load and parse a config file.

    Accepts a Path or raw JSON-ish text. Paths ending in ``.yaml``/``.yml``
    are parsed as YAML; everything else as JSON-ish.

    Raises:
        ConfigError: If the file cannot be read or contains syntax errors.
        TypeError: If path_or_text is neither Path nor str.
    """
    is_yaml = False
    if isinstance(path_or_text, Path):
        try:
            original_text = path_or_text.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigError(f"Config file not found: {path_or_text}")
        except PermissionError:
            raise ConfigError(f"Permission denied reading config file: {path_or_text}")
        except UnicodeDecodeError:
            raise ConfigError(f"Config file is not valid UTF-8: {path_or_text}")
        except OSError as e:
            raise ConfigError(f"Error reading config file {path_or_text}: {e}")
        is_yaml = path_or_text.suffix in (".yaml", ".yml")
    elif isinstance(path_or_text, str):
        original_text = path_or_text
    else:
        raise TypeError(f"path_or_text must be Path or str, got {type(path_or_text).__name__}")

    if is_yaml:
        try:
            result = yaml.safe_load(original_text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Config syntax error: {e}") from e
        if result is None:
            result = {}
    else:
        try:
            result = json.loads(preprocess_jsonish(original_text))
        except json.JSONDecodeError as e:
            raise ConfigError(_format_syntax_error(original_text, e)) from e

    if not isinstance(result, dict):
        raise ConfigError(f"Config must be an object, got {type(result).__name__}")
    return result


def load_configuration(
    project_dir: Path,
    config_path: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Configuration:
    """Build the desired Configuration from file, then command-line overrides.

    ``None`` values in overrides mean "not given on the command line".
    """
    from .paths import get_config_path

    data: dict[str, Any] = {}
    path = Path(config_path) if config_path is not None else get_config_path(project_dir)
    if config_path is not None or path.exists():
        data.update(load_config(path))

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    return validate_config(data, project_dir)


__all__ = [
    "ConfigError",
    "Configuration",
    "DatabaseEngine",
    "ExistingDatabaseChoice",
    "validate_config",
    "preprocess_jsonish",
    "load_config",
    "load_configuration",
]
