"""Deterministic settings schema for sailer.

This module is the single source of truth for:
- which keys exist
- whether they are mandatory and/or have defaults
- how the process environment and the dotenv file are merged

Resolution order for every key: process env -> dotenv file -> default.
Unknown `SAILER_*` keys in the dotenv file are rejected so typos fail fast.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping

from dotenv import dotenv_values


class SettingsEnum(str, Enum):
    ENV_FILE = "SAILER_ENV_FILE"

    # Local state
    STATE_FILE = "SAILER_STATE_FILE"
    SCRATCH_DIR = "SAILER_SCRATCH_DIR"

    # Reverse proxy
    NGINX_SITES_DIR = "SAILER_NGINX_SITES_DIR"
    NGINX_RELOAD_CMD = "SAILER_NGINX_RELOAD_CMD"

    # Master server
    MASTER_URL = "SAILER_MASTER_URL"
    MASTER_TOKEN = "SAILER_MASTER_TOKEN"
    MASTER_INSECURE = "SAILER_MASTER_INSECURE"

    # Subprocess timeouts (seconds)
    CLONE_TIMEOUT = "SAILER_CLONE_TIMEOUT"
    BUILD_TIMEOUT = "SAILER_BUILD_TIMEOUT"
    COMMAND_TIMEOUT = "SAILER_COMMAND_TIMEOUT"

    # Hooks
    HOOKS_MODULE = "SAILER_HOOKS_MODULE"
    HOOKS_SOFT_FAIL = "SAILER_HOOKS_SOFT_FAIL"


DEFAULT_HOME = Path("~/.sailer")


@dataclass(frozen=True)
class SettingSpec:
    key: SettingsEnum
    mandatory: bool = False
    default: str | None = None


class SettingsValidationError(ValueError):
    def __init__(self, *, context: str, problems: list[str]):
        super().__init__("; ".join(problems))
        self.context = context
        self.problems = problems

    def format(self) -> str:
        lines = [f"[settings] validation failed: {self.context}"]
        for p in self.problems:
            lines.append(f"- {p}")
        return "\n".join(lines)


SETTINGS_SCHEMA: tuple[SettingSpec, ...] = (
    SettingSpec(key=SettingsEnum.ENV_FILE, default=str(DEFAULT_HOME / ".env")),
    SettingSpec(key=SettingsEnum.STATE_FILE, default=str(DEFAULT_HOME / "state.yml")),
    SettingSpec(key=SettingsEnum.SCRATCH_DIR, default=tempfile.gettempdir()),
    SettingSpec(key=SettingsEnum.NGINX_SITES_DIR, default="/etc/nginx/sites-enabled"),
    SettingSpec(key=SettingsEnum.NGINX_RELOAD_CMD, default="service nginx reload"),
    SettingSpec(key=SettingsEnum.MASTER_URL),
    SettingSpec(key=SettingsEnum.MASTER_TOKEN),
    SettingSpec(key=SettingsEnum.MASTER_INSECURE, default="false"),
    SettingSpec(key=SettingsEnum.CLONE_TIMEOUT, mandatory=True, default="600"),
    SettingSpec(key=SettingsEnum.BUILD_TIMEOUT, mandatory=True, default="3600"),
    SettingSpec(key=SettingsEnum.COMMAND_TIMEOUT, mandatory=True, default="120"),
    SettingSpec(key=SettingsEnum.HOOKS_MODULE),
    SettingSpec(key=SettingsEnum.HOOKS_SOFT_FAIL, default="false"),
)

_TIMEOUT_KEYS = (SettingsEnum.CLONE_TIMEOUT, SettingsEnum.BUILD_TIMEOUT, SettingsEnum.COMMAND_TIMEOUT)


@dataclass(frozen=True)
class Settings:
    state_file: Path
    scratch_dir: Path
    nginx_sites_dir: Path
    nginx_reload_cmd: str
    master_url: str
    master_token: str
    master_insecure: bool
    clone_timeout: int
    build_timeout: int
    command_timeout: int
    hooks_module: str
    hooks_soft_fail: bool


def _schema_keys(schema: Iterable[SettingSpec]) -> set[str]:
    return {spec.key.value for spec in schema}


def parse_dotenv_file(path: Path) -> dict[str, str]:
    """Parse a dotenv file, keeping keys with empty values so unknown keys are still detected."""
    kv: dict[str, str] = {}
    raw = dotenv_values(path)
    for k, v in raw.items():
        if k is None:
            continue
        key = str(k).strip()
        if not key:
            continue
        kv[key] = "" if v is None else str(v).strip()
    return kv


def parse_boolish(value: str | None, *, default: bool = False) -> bool:
    normalized = str(value or "").strip().lower()
    if not normalized:
        return default
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def validate_known_keys(schema: Iterable[SettingSpec], kv: Mapping[str, str], *, context: str) -> None:
    allowed = _schema_keys(schema)
    unknown = sorted(k for k in kv.keys() if k.startswith("SAILER_") and k not in allowed)
    if unknown:
        raise SettingsValidationError(context=context, problems=["Unknown key(s): " + ", ".join(unknown)])


def apply_defaults(schema: Iterable[SettingSpec], kv: dict[str, str]) -> dict[str, str]:
    out = dict(kv)
    for spec in schema:
        if str(out.get(spec.key.value) or "").strip():
            continue
        if spec.default is None:
            continue
        out[spec.key.value] = spec.default
    return out


def validate_required(schema: Iterable[SettingSpec], kv: Mapping[str, str], *, context: str) -> None:
    missing = [spec.key.value for spec in schema if spec.mandatory and not str(kv.get(spec.key.value) or "").strip()]
    if missing:
        raise SettingsValidationError(context=context, problems=["Missing mandatory key(s): " + ", ".join(sorted(missing))])


def validate_timeouts(kv: Mapping[str, str], *, context: str) -> None:
    problems: list[str] = []
    for key in _TIMEOUT_KEYS:
        raw = str(kv.get(key.value) or "").strip()
        try:
            value = int(raw)
        except ValueError:
            problems.append(f"{key.value} must be an integer number of seconds (got {raw!r})")
            continue
        if value <= 0:
            problems.append(f"{key.value} must be > 0 (got {value})")
    if problems:
        raise SettingsValidationError(context=context, problems=problems)


def _env_subset(environ: Mapping[str, str], keys: set[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for k in keys:
        v = str(environ.get(k) or "").strip()
        if v:
            out[k] = v
    return out


def load_settings(*, environ: Mapping[str, str] | None = None, env_file: Path | None = None) -> Settings:
    """Merge process env over the dotenv file, apply defaults and validate."""
    environ = os.environ if environ is None else environ
    keys = _schema_keys(SETTINGS_SCHEMA)
    env_kv = _env_subset(environ, keys)

    if env_file is None:
        env_file_raw = env_kv.get(SettingsEnum.ENV_FILE.value) or str(DEFAULT_HOME / ".env")
        env_file = Path(env_file_raw).expanduser()

    file_kv: dict[str, str] = {}
    if env_file.exists():
        file_kv = parse_dotenv_file(env_file)
        validate_known_keys(SETTINGS_SCHEMA, file_kv, context=str(env_file))

    merged = {k: v for k, v in file_kv.items() if k in keys}
    merged.update(env_kv)
    merged = apply_defaults(SETTINGS_SCHEMA, merged)

    context = f"settings ({env_file} + env)"
    validate_required(SETTINGS_SCHEMA, merged, context=context)
    validate_timeouts(merged, context=context)

    def get(key: SettingsEnum) -> str:
        return str(merged.get(key.value) or "").strip()

    return Settings(
        state_file=Path(get(SettingsEnum.STATE_FILE)).expanduser(),
        scratch_dir=Path(get(SettingsEnum.SCRATCH_DIR)).expanduser(),
        nginx_sites_dir=Path(get(SettingsEnum.NGINX_SITES_DIR)).expanduser(),
        nginx_reload_cmd=get(SettingsEnum.NGINX_RELOAD_CMD),
        master_url=get(SettingsEnum.MASTER_URL),
        master_token=get(SettingsEnum.MASTER_TOKEN),
        master_insecure=parse_boolish(get(SettingsEnum.MASTER_INSECURE)),
        clone_timeout=int(get(SettingsEnum.CLONE_TIMEOUT)),
        build_timeout=int(get(SettingsEnum.BUILD_TIMEOUT)),
        command_timeout=int(get(SettingsEnum.COMMAND_TIMEOUT)),
        hooks_module=get(SettingsEnum.HOOKS_MODULE),
        hooks_soft_fail=parse_boolish(get(SettingsEnum.HOOKS_SOFT_FAIL)),
    )
