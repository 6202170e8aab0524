"""Resource config: the desired job plus its lifecycle options."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from jobkeeper.core.errors import ResourceConfigError
from jobkeeper.core.models import JobSpecification
from jobkeeper.core.settings import DEFAULT_OPERATION_TIMEOUT_S, parse_duration_ms
from jobkeeper.jobspec.parse import build_specification

_BOOL_OPTIONS = {
    "json": False,
    "detach": True,
    "deregister_on_destroy": True,
    "deregister_on_id_change": True,
    "purge_on_destroy": False,
    "policy_override": False,
    "rerun_if_dead": False,
}
_KNOWN_KEYS = set(_BOOL_OPTIONS) | {"jobspec", "jobspec_path", "hcl2", "namespace", "timeouts"}


@dataclass
class ResourceConfig:
    jobspec: str
    json: bool = False
    allow_fs: bool = False
    vars: dict[str, str] = field(default_factory=dict)
    namespace: str | None = None
    detach: bool = True
    deregister_on_destroy: bool = True
    deregister_on_id_change: bool = True
    purge_on_destroy: bool = False
    policy_override: bool = False
    rerun_if_dead: bool = False
    create_timeout_s: float = DEFAULT_OPERATION_TIMEOUT_S
    update_timeout_s: float = DEFAULT_OPERATION_TIMEOUT_S

    def specification(self) -> JobSpecification:
        return build_specification(
            self.jobspec,
            json_format=self.json,
            variables=self.vars,
            allow_fs=self.allow_fs,
        )


def _expect_dict(value: object, *, path: str) -> dict:
    if not isinstance(value, dict):
        raise ResourceConfigError(f"{path} must be an object")
    return value


def _expect_bool(value: object, *, path: str) -> bool:
    if not isinstance(value, bool):
        raise ResourceConfigError(f"{path} must be a boolean")
    return value


def _parse_timeout_s(value: object, *, path: str) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value < 0:
            raise ResourceConfigError(f"{path} must be >= 0")
        return float(value)
    if not isinstance(value, str):
        raise ResourceConfigError(f"{path} must be a duration string like 5m")
    try:
        return parse_duration_ms(value) / 1000.0
    except ValueError as exc:
        raise ResourceConfigError(f"{path}: {exc}") from exc


def parse_resource_config(payload: object, *, base_dir: Path | None = None) -> ResourceConfig:
    data = _expect_dict(payload, path="config")
    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        raise ResourceConfigError(f"config has unknown keys: {', '.join(unknown)}")

    jobspec = data.get("jobspec")
    jobspec_path = data.get("jobspec_path")
    if jobspec is not None and jobspec_path is not None:
        raise ResourceConfigError("config.jobspec and config.jobspec_path are mutually exclusive")
    if jobspec_path is not None:
        if not isinstance(jobspec_path, str) or not jobspec_path.strip():
            raise ResourceConfigError("config.jobspec_path must be a non-empty string")
        spec_path = Path(jobspec_path)
        if not spec_path.is_absolute() and base_dir is not None:
            spec_path = base_dir / spec_path
        try:
            jobspec = spec_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ResourceConfigError(f"cannot read jobspec_path {spec_path}: {exc}") from exc
    if not isinstance(jobspec, str) or not jobspec.strip():
        raise ResourceConfigError("config.jobspec must be a non-empty string")

    options = {
        key: _expect_bool(data[key], path=f"config.{key}") if key in data else default
        for key, default in _BOOL_OPTIONS.items()
    }

    hcl2 = _expect_dict(data.get("hcl2", {}), path="config.hcl2")
    allow_fs = _expect_bool(hcl2.get("allow_fs", False), path="config.hcl2.allow_fs")
    raw_vars = _expect_dict(hcl2.get("vars", {}), path="config.hcl2.vars")
    variables: dict[str, str] = {}
    for key, value in raw_vars.items():
        if not isinstance(value, str):
            raise ResourceConfigError(f"config.hcl2.vars.{key} must be a string")
        variables[str(key)] = value

    namespace = data.get("namespace")
    if namespace is not None and (not isinstance(namespace, str) or not namespace.strip()):
        raise ResourceConfigError("config.namespace must be a non-empty string")

    timeouts = _expect_dict(data.get("timeouts", {}), path="config.timeouts")
    create_timeout_s = DEFAULT_OPERATION_TIMEOUT_S
    update_timeout_s = DEFAULT_OPERATION_TIMEOUT_S
    if "create" in timeouts:
        create_timeout_s = _parse_timeout_s(timeouts["create"], path="config.timeouts.create")
    if "update" in timeouts:
        update_timeout_s = _parse_timeout_s(timeouts["update"], path="config.timeouts.update")

    return ResourceConfig(
        jobspec=jobspec,
        allow_fs=allow_fs,
        vars=variables,
        namespace=namespace.strip() if isinstance(namespace, str) else None,
        create_timeout_s=create_timeout_s,
        update_timeout_s=update_timeout_s,
        **options,
    )


def load_resource_config(path: Path) -> ResourceConfig:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ResourceConfigError(f"cannot read config {path}: {exc}") from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ResourceConfigError(f"invalid JSON in config {path}: {exc}") from exc
    return parse_resource_config(payload, base_dir=path.parent)
