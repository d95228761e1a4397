"""htreq core - config loading, environment, request config layering."""

import os
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values

from htreq.errors import ConfigError

GLOBAL_DIR = Path.home() / ".htreq"
GLOBAL_CONFIG = GLOBAL_DIR / "config.yaml"

CWD_CONFIG_CANDIDATES = [
    ".htreq.yaml",
    ".htreq.yml",
    "htreq.yaml",
    "htreq.yml",
]

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_DEPTH = 32

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def resolve_path(
    candidates: list[Path],
    default: Path | None = None,
) -> Path | None:
    """Return the first existing path from candidates, else default."""
    for p in candidates:
        if p.exists():
            return p.resolve()
    return default


def resolve_config_path(config_file: str | None) -> Path | None:
    """Find the config file to use.

    Resolution order:
      1. Explicit -c flag (no fallthrough if missing)
      2. .htreq.yaml (variants) in CWD
      3. ~/.htreq/config.yaml
    """
    if config_file:
        return resolve_path([Path(config_file)])
    return resolve_path([Path(c) for c in CWD_CONFIG_CANDIDATES] + [GLOBAL_CONFIG])


def load_config(config_path: str | Path | None) -> dict:
    """Load YAML config file. Returns an empty defaults section if not found.

    Stores '_config_dir' in the returned dict so relative paths (env_file)
    resolve against the config file's directory.
    """
    if config_path is None:
        return {"defaults": {}, "_config_dir": None}
    path = Path(config_path)
    if not path.exists():
        return {"defaults": {}, "_config_dir": None}
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping")
    return {
        "defaults": data.get("defaults") or {},
        "_config_dir": path.resolve().parent,
    }


def load_env(env_file: str | None, base_dir: str | Path | None = ".") -> dict[str, str]:
    """Load a .env file and merge it over os.environ.

    .env values take precedence; os.environ stays available as fallback.
    """
    env = dict(os.environ)
    if env_file:
        dotenv_path = Path(env_file)
        if not dotenv_path.is_absolute() and base_dir is not None:
            dotenv_path = Path(base_dir) / dotenv_path
        if dotenv_path.exists():
            dotenv_vars = dotenv_values(str(dotenv_path))
            env.update({k: v for k, v in dotenv_vars.items() if v is not None})
    return env


def resolve_value(value: Any, env: dict[str, str]) -> Any:
    """Resolve $VAR and ${VAR} references in a config string value."""
    if not isinstance(value, str):
        return value

    def _replace(m: re.Match) -> str:
        var_name = m.group(1) or m.group(2)
        return env.get(var_name, os.environ.get(var_name, m.group(0)))

    return re.sub(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)", _replace, value)


def parse_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for '{key}': {value!r}")


def parse_timeout(value: Any) -> float:
    try:
        timeout = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid timeout: {value!r}") from e
    if timeout <= 0:
        raise ConfigError(f"Timeout must be positive, got {value!r}")
    return timeout


def parse_max_depth(value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid max_depth: {value!r}")
    try:
        depth = int(str(value).strip())
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid max_depth: {value!r}") from e
    if depth < 0:
        raise ConfigError(f"max_depth must be 0 or positive, got {value!r}")
    return depth


@dataclass(frozen=True)
class RequestConfig:
    """Effective per-request settings for the transport and shell."""

    timeout: float = DEFAULT_TIMEOUT
    insecure: bool = False
    proxy: str | None = None
    dry_run: bool = False

    def merge(self, overrides: dict[str, Any]) -> "RequestConfig":
        """Return a copy with already-resolved overrides applied.

        Keys: timeout, insecure, proxy, dry_run. None values are ignored.
        """
        changes: dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key == "timeout":
                changes["timeout"] = parse_timeout(value)
            elif key in ("insecure", "dry_run"):
                changes[key] = parse_bool(value, key)
            elif key == "proxy":
                changes["proxy"] = str(value) or None
            else:
                raise ConfigError(f"Unknown config key '{key}'")
        return replace(self, **changes) if changes else self


def build_request_config(defaults: dict, env: dict[str, str], **cli_overrides: Any) -> RequestConfig:
    """Layer config file defaults, then CLI flags, over the built-in defaults."""
    file_values = {
        key: resolve_value(defaults.get(key), env) for key in ("timeout", "insecure", "proxy", "dry_run")
    }
    return RequestConfig().merge(file_values).merge(cli_overrides)
