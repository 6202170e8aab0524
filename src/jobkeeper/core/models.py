from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field, fields
from enum import Enum

DEFAULT_NAMESPACE = "default"


class JobFormat(str, Enum):
    STRUCTURED_TEXT = "structured-text"
    JSON = "json"


class DeploymentStatus(str, Enum):
    RUNNING = "running"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_DEPLOYMENT_STATUSES

    @property
    def failed(self) -> bool:
        return self in (DeploymentStatus.FAILED, DeploymentStatus.CANCELLED)

    @classmethod
    def parse(cls, raw: object) -> "DeploymentStatus":
        # pending/initializing/blocked/unblocking are still converging
        text = str(raw or "").strip().lower()
        if text == "canceled":
            text = "cancelled"
        try:
            return cls(text)
        except ValueError:
            return cls.RUNNING


_TERMINAL_DEPLOYMENT_STATUSES = frozenset(
    {DeploymentStatus.SUCCESSFUL, DeploymentStatus.FAILED, DeploymentStatus.CANCELLED}
)


class DriftDecision(str, Enum):
    NONE = "none"
    EXTERNALLY_STOPPED = "externally-stopped"
    RERUN_REQUIRED = "rerun-required"
    NOT_FOUND = "not-found"


@dataclass(frozen=True)
class JobSpecification:
    source: str
    format: JobFormat = JobFormat.STRUCTURED_TEXT
    variables: dict[str, str] = field(default_factory=dict)
    allow_fs: bool = False


@dataclass(frozen=True)
class JobIdentity:
    id: str
    namespace: str = DEFAULT_NAMESPACE

    def __str__(self) -> str:
        return f"{self.namespace}/{self.id}"

    def to_dict(self) -> dict:
        return {"id": self.id, "namespace": self.namespace}


@dataclass
class RemoteJobVersion:
    identity: JobIdentity
    version: int
    submitted_source: str
    submitted_variables: dict[str, str] = field(default_factory=dict)
    eval_id: str | None = None
    modify_index: int | None = None
    warnings: str | None = None

    def to_dict(self) -> dict:
        return {
            "identity": self.identity.to_dict(),
            "version": self.version,
            "eval_id": self.eval_id,
            "modify_index": self.modify_index,
            "warnings": self.warnings,
        }


@dataclass
class Deployment:
    id: str
    job_version: int
    status: DeploymentStatus
    raw_status: str | None = None
    description: str | None = None

    @classmethod
    def from_api(cls, payload: dict) -> "Deployment":
        raw = payload.get("Status")
        return cls(
            id=str(payload.get("ID") or ""),
            job_version=int(payload.get("JobVersion") or 0),
            status=DeploymentStatus.parse(raw),
            raw_status=str(raw) if raw is not None else None,
            description=payload.get("StatusDescription"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_version": self.job_version,
            "status": self.status.value,
            "raw_status": self.raw_status,
            "description": self.description,
        }


@dataclass(frozen=True)
class TeardownPolicy:
    deregister: bool = True
    purge: bool = False


@dataclass
class ParsedJob:
    """A normalised job document plus the facts the reconciler branches on."""

    job: dict
    spec: JobSpecification

    @property
    def id(self) -> str:
        return str(self.job.get("ID") or "")

    @property
    def namespace(self) -> str | None:
        ns = self.job.get("Namespace")
        if isinstance(ns, str) and ns.strip():
            return ns.strip()
        return None

    @property
    def type(self) -> str:
        return str(self.job.get("Type") or "service")

    @property
    def parameterized(self) -> bool:
        return bool(self.job.get("ParameterizedJob"))

    @property
    def periodic(self) -> bool:
        periodic = self.job.get("Periodic")
        if isinstance(periodic, dict):
            return periodic.get("Enabled", True) is not False
        return bool(periodic)

    @property
    def multiregion(self) -> bool:
        return bool(self.job.get("Multiregion"))

    @property
    def task_groups(self) -> list[str]:
        groups = self.job.get("TaskGroups") or []
        return [str(g.get("Name")) for g in groups if isinstance(g, dict) and g.get("Name")]


@dataclass
class ReconciliationState:
    id: str
    namespace: str = DEFAULT_NAMESPACE
    version: int | None = None
    modify_index: int | None = None
    deployment_id: str | None = None
    deployment_status: str | None = None
    status: str | None = None
    jobspec: str = ""
    format: str = JobFormat.STRUCTURED_TEXT.value
    variables: dict[str, str] = field(default_factory=dict)
    name: str | None = None
    type: str | None = None
    region: str | None = None
    datacenters: list[str] = field(default_factory=list)
    task_groups: list[str] = field(default_factory=list)
    multiregion: bool = False
    pending_submission: bool = False
    detach: bool = True
    deregister_on_destroy: bool = True
    deregister_on_id_change: bool = True
    purge_on_destroy: bool = False
    policy_override: bool = False
    rerun_if_dead: bool = False

    @property
    def identity(self) -> JobIdentity:
        return JobIdentity(self.id, self.namespace)

    @property
    def teardown_policy(self) -> TeardownPolicy:
        return TeardownPolicy(deregister=self.deregister_on_destroy, purge=self.purge_on_destroy)

    def advance_version(self, version: int) -> None:
        if self.version is None or version > self.version:
            self.version = version

    def record_deployment(self, deployment: Deployment | None) -> None:
        if deployment is None:
            self.deployment_id = None
            self.deployment_status = None
            return
        self.deployment_id = deployment.id
        self.deployment_status = deployment.status.value

    def to_dict(self) -> dict:
        return {f.name: deepcopy(getattr(self, f.name)) for f in fields(self)}

    def copy(self) -> "ReconciliationState":
        return ReconciliationState.from_dict(self.to_dict())

    @classmethod
    def from_dict(cls, payload: dict) -> "ReconciliationState":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in payload.items() if k in known}
        if not isinstance(values.get("id"), str) or not values["id"].strip():
            raise ValueError("state.id must be a non-empty string")
        return cls(**values)


@dataclass
class DriftReport:
    decision: DriftDecision
    identity: JobIdentity
    remote_status: str | None = None
    remote_version: int | None = None
    source_mismatch: bool = False
    stopped: bool = False
    remote_job: dict | None = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "decision": self.decision.value,
            "identity": self.identity.to_dict(),
            "remote_status": self.remote_status,
            "remote_version": self.remote_version,
            "source_mismatch": self.source_mismatch,
            "stopped": self.stopped,
        }
