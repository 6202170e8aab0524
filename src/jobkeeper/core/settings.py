from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from jobkeeper.core.polling import PollPolicy

DEFAULT_OPERATION_TIMEOUT_S = 300.0


def parse_duration_ms(value: str) -> int:
    raw = value
    text = str(value).strip().lower()
    if not text:
        raise ValueError(f"invalid duration: '{raw}' (use e.g. 1.5s, 250ms or 5m)")

    unit = "s"
    number = text
    if text.endswith("ms"):
        unit = "ms"
        number = text[:-2]
    elif text.endswith("s"):
        unit = "s"
        number = text[:-1]
    elif text.endswith("m"):
        unit = "m"
        number = text[:-1]
    elif text.endswith("h"):
        unit = "h"
        number = text[:-1]

    if not number:
        raise ValueError(f"invalid duration: '{raw}' (use e.g. 1.5s, 250ms or 5m)")

    try:
        parsed = Decimal(number)
    except InvalidOperation as exc:
        raise ValueError(f"invalid duration: '{raw}' (use e.g. 1.5s, 250ms or 5m)") from exc

    if not parsed.is_finite() or parsed < 0:
        raise ValueError(f"invalid duration: '{raw}' (use e.g. 1.5s, 250ms or 5m)")

    multipliers = {
        "ms": Decimal(1),
        "s": Decimal(1000),
        "m": Decimal(60_000),
        "h": Decimal(3_600_000),
    }
    duration_ms = parsed * multipliers[unit]
    if duration_ms != duration_ms.to_integral_value():
        raise ValueError(f"invalid duration: '{raw}' (use e.g. 1.5s, 250ms or 5m)")
    return int(duration_ms)


def parse_env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def parse_env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_truthy(name: str) -> bool:
    value = os.environ.get(name, "").strip().lower()
    if value in {"", "0", "false", "no", "off"}:
        return False
    return True


@dataclass(frozen=True)
class ReconcilerSettings:
    poll_interval_s: float = 1.0
    eval_attempts: int = 60
    deployment_discovery_attempts: int = 5
    teardown_attempts: int = 5
    create_timeout_s: float = DEFAULT_OPERATION_TIMEOUT_S
    update_timeout_s: float = DEFAULT_OPERATION_TIMEOUT_S

    @property
    def eval_policy(self) -> PollPolicy:
        return PollPolicy(attempts=self.eval_attempts, interval_s=self.poll_interval_s)

    @property
    def discovery_policy(self) -> PollPolicy:
        return PollPolicy(attempts=self.deployment_discovery_attempts, interval_s=self.poll_interval_s)

    @property
    def teardown_policy(self) -> PollPolicy:
        return PollPolicy(attempts=self.teardown_attempts, interval_s=self.poll_interval_s)

    @classmethod
    def from_env(cls) -> "ReconcilerSettings":
        return cls(
            poll_interval_s=max(0.0, parse_env_float("JOBKEEPER_POLL_INTERVAL_S", 1.0)),
            eval_attempts=max(1, parse_env_int("JOBKEEPER_EVAL_ATTEMPTS", 60)),
            deployment_discovery_attempts=max(1, parse_env_int("JOBKEEPER_DEPLOYMENT_DISCOVERY_ATTEMPTS", 5)),
            teardown_attempts=max(1, parse_env_int("JOBKEEPER_TEARDOWN_ATTEMPTS", 5)),
        )
