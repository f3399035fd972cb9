"""Endpoint and harness configuration.

Values are layered: dataclass defaults, then the TOML file, then the
deployment's environment variables, then CLI flags (applied by the caller).
"""
from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional

try:  # Python 3.11+
    import tomllib  # type: ignore
except ModuleNotFoundError:  # pragma: no cover - fallback for 3.10
    import tomli as tomllib  # type: ignore

from .errors import ConfigurationError

DEFAULT_PORT = 3306
DEFAULT_MAX_CONNECTIONS = 20
DEFAULT_ACQUIRE_TIMEOUT = 30.0
REMOTE_ACQUIRE_TIMEOUT = 10.0
DEFAULT_CONNECT_TIMEOUT = 10
DEFAULT_QUERY_TIMEOUT = 30


class Role(str, enum.Enum):
    PRIMARY = "primary"
    REGIONAL_READER = "regional-reader"
    REMOTE_READER = "remote-reader"


# TOML table name per role.
ROLE_SECTIONS: Dict[Role, str] = {
    Role.PRIMARY: "primary",
    Role.REGIONAL_READER: "regional_reader",
    Role.REMOTE_READER: "remote_reader",
}

# Environment variable reported when a field is missing, per role.
ENV_NAMES: Dict[Role, Dict[str, str]] = {
    Role.PRIMARY: {
        "host": "DB_HOST",
        "user": "DB_USER",
        "password": "DB_PASSWORD",
        "database": "DB_NAME",
    },
    Role.REGIONAL_READER: {
        "host": "DB_READER_HOST",
        "user": "DB_USER",
        "password": "DB_PASSWORD",
        "database": "DB_NAME",
    },
    Role.REMOTE_READER: {
        "host": "DB_TOKYO_READER_HOST",
        "user": "DB_USER",
        "password": "DB_PASSWORD",
        "database": "DB_NAME",
    },
}


@dataclass
class RoleConfig:
    role: Role
    host: Optional[str] = None
    port: int = DEFAULT_PORT
    user: Optional[str] = None
    password: Optional[str] = None
    database: Optional[str] = None
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT
    query_timeout: int = DEFAULT_QUERY_TIMEOUT
    read_consistency_override: bool = False

    def missing_fields(self) -> List[str]:
        """Return the environment names of every required value that is unset."""
        names = ENV_NAMES[self.role]
        return [env for attr, env in names.items() if not getattr(self, attr)]

    def validate(self) -> "RoleConfig":
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(self.role.value, missing)
        if self.max_connections < 1:
            raise ConfigurationError(self.role.value, [f"{ROLE_SECTIONS[self.role]}.max_connections"])
        return self

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"


def default_role_config(role: Role) -> RoleConfig:
    if role is Role.PRIMARY:
        return RoleConfig(role=role, read_consistency_override=True)
    if role is Role.REMOTE_READER:
        return RoleConfig(role=role, acquire_timeout=REMOTE_ACQUIRE_TIMEOUT)
    return RoleConfig(role=role)


@dataclass
class HarnessConfig:
    roles: Dict[Role, RoleConfig] = field(
        default_factory=lambda: {role: default_role_config(role) for role in Role}
    )
    allow_stress: bool = False
    log_level: str = "INFO"
    log_file: Optional[str] = None
    marker_max_age_seconds: int = 600
    path: Optional[Path] = None

    def role(self, role: Role) -> RoleConfig:
        return self.roles[role]


def _coerce_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _apply_section(cfg: RoleConfig, section: Mapping[str, object]) -> RoleConfig:
    updates: Dict[str, object] = {}
    for key in ("host", "user", "password", "database"):
        if section.get(key) not in (None, ""):
            updates[key] = str(section[key])
    for key in ("port", "max_connections", "connect_timeout", "query_timeout"):
        if section.get(key) is not None:
            updates[key] = int(section[key])  # type: ignore[arg-type]
    if section.get("acquire_timeout") is not None:
        updates["acquire_timeout"] = float(section["acquire_timeout"])  # type: ignore[arg-type]
    if section.get("read_consistency_override") is not None:
        updates["read_consistency_override"] = _coerce_bool(section["read_consistency_override"])
    return replace(cfg, **updates)


def load_toml(path: Path) -> Dict[str, object]:
    if not path.exists():
        raise FileNotFoundError(f"Config {path} not found")
    return tomllib.loads(path.read_text(encoding="utf-8"))


def apply_environment(config: HarnessConfig, environ: Mapping[str, str]) -> List[str]:
    """Overlay the deployment's DB_* variables; return the names that were applied."""
    applied: List[str] = []

    def env(name: str) -> Optional[str]:
        value = environ.get(name)
        if value in (None, ""):
            return None
        applied.append(name)
        return value

    shared: Dict[str, object] = {}
    port = env("DB_PORT")
    if port is not None:
        shared["port"] = int(port)
    for key, name in (("user", "DB_USER"), ("password", "DB_PASSWORD"), ("database", "DB_NAME")):
        value = env(name)
        if value is not None:
            shared[key] = value

    writer_host = env("DB_HOST")
    reader_host = env("DB_READER_HOST")
    remote_host = env("DB_TOKYO_READER_HOST")

    hosts = {
        Role.PRIMARY: writer_host,
        Role.REGIONAL_READER: reader_host,
        Role.REMOTE_READER: remote_host,
    }
    for role, host in hosts.items():
        section = dict(shared)
        if host is not None:
            section["host"] = host
        config.roles[role] = _apply_section(config.roles[role], section)

    allow = env("ALLOW_STRESS")
    if allow is not None:
        config.allow_stress = _coerce_bool(allow)
    return applied


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> HarnessConfig:
    """Build a HarnessConfig from an optional TOML file and the environment."""
    config = HarnessConfig(path=path)
    if path is not None:
        raw = load_toml(path)
        shared = raw.get("database")
        if isinstance(shared, dict):
            # Hosts are per role; everything else in [database] is shared.
            common = {key: value for key, value in shared.items() if key != "host"}
            for role in Role:
                config.roles[role] = _apply_section(config.roles[role], common)
        for role, section_name in ROLE_SECTIONS.items():
            section = raw.get(section_name)
            if isinstance(section, dict):
                config.roles[role] = _apply_section(config.roles[role], section)
        harness = raw.get("harness", {})
        if isinstance(harness, dict):
            if "allow_stress" in harness:
                config.allow_stress = _coerce_bool(harness["allow_stress"])
            if harness.get("log_level"):
                config.log_level = str(harness["log_level"])
            if harness.get("log_file"):
                config.log_file = str(harness["log_file"])
            if harness.get("marker_max_age_seconds") is not None:
                config.marker_max_age_seconds = int(harness["marker_max_age_seconds"])
        logging.debug("Loaded config file %s", path)

    applied = apply_environment(config, os.environ if environ is None else environ)
    if applied:
        logging.debug("Environment overrides applied: %s", ", ".join(applied))

    # The regional reader endpoint defaults to the writer host, as with a
    # single-instance cluster.
    regional = config.roles[Role.REGIONAL_READER]
    if not regional.host and config.roles[Role.PRIMARY].host:
        config.roles[Role.REGIONAL_READER] = replace(regional, host=config.roles[Role.PRIMARY].host)
    return config
