from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from jobkeeper.core.models import JobIdentity


@dataclass
class ExplainLog:
    """Append-only JSONL record of what the reconciler did and saw."""

    path: Path
    events: list[dict] = field(default_factory=list, repr=False)

    def emit(self, event: str, payload: dict, *, identity: JobIdentity | None = None) -> None:
        body = dict(payload)
        if identity is not None:
            body.setdefault("job_id", identity.id)
            body.setdefault("namespace", identity.namespace)
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "payload": body,
        }
        self.events.append(record)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, sort_keys=True) + "\n")

    def names(self) -> list[str]:
        return [str(record["event"]) for record in self.events]
