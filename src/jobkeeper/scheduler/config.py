from __future__ import annotations

import os
from dataclasses import dataclass, replace

from jobkeeper.core.settings import env_truthy, parse_env_float

DEFAULT_ADDRESS = "http://127.0.0.1:4646"


@dataclass(frozen=True)
class SchedulerConfig:
    """Connection settings for the scheduler API; never mutated after construction."""

    address: str = DEFAULT_ADDRESS
    token: str | None = None
    region: str | None = None
    namespace: str | None = None
    ca_file: str | None = None
    skip_verify: bool = False
    timeout_s: float = 20.0

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        def _opt(name: str) -> str | None:
            value = (os.environ.get(name) or "").strip()
            return value or None

        return cls(
            address=(_opt("NOMAD_ADDR") or DEFAULT_ADDRESS).rstrip("/"),
            token=_opt("NOMAD_TOKEN"),
            region=_opt("NOMAD_REGION"),
            namespace=_opt("NOMAD_NAMESPACE"),
            ca_file=_opt("NOMAD_CACERT"),
            skip_verify=env_truthy("NOMAD_SKIP_VERIFY"),
            timeout_s=parse_env_float("JOBKEEPER_HTTP_TIMEOUT_S", 20.0),
        )

    def with_overrides(
        self,
        *,
        address: str | None = None,
        token: str | None = None,
        region: str | None = None,
    ) -> "SchedulerConfig":
        changes: dict[str, object] = {}
        if address:
            changes["address"] = address.strip().rstrip("/")
        if token:
            changes["token"] = token
        if region:
            changes["region"] = region
        return replace(self, **changes) if changes else self
