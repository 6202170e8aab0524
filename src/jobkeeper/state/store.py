from __future__ import annotations

import json
from pathlib import Path

from jobkeeper.core.errors import ResourceConfigError
from jobkeeper.core.models import ReconciliationState

SCHEMA_VERSION = "jobkeeper_state.v0"


def load_state(path: Path) -> ReconciliationState | None:
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ResourceConfigError(f"invalid JSON in state {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ResourceConfigError(f"state {path} must be a JSON object")
    if payload.get("schema_version") != SCHEMA_VERSION:
        raise ResourceConfigError(f"state {path} has unsupported schema_version {payload.get('schema_version')!r}")
    resource = payload.get("resource")
    if resource is None:
        return None
    if not isinstance(resource, dict):
        raise ResourceConfigError(f"state {path}: resource must be an object or null")
    try:
        return ReconciliationState.from_dict(resource)
    except (TypeError, ValueError) as exc:
        raise ResourceConfigError(f"state {path}: {exc}") from exc


def save_state(path: Path, state: ReconciliationState | None) -> None:
    payload = {
        "schema_version": SCHEMA_VERSION,
        "resource": state.to_dict() if state is not None else None,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n", encoding="utf-8")
    tmp.replace(path)
