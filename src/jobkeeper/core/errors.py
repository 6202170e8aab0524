"""Error taxonomy shared by the scheduler client and the reconcilers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from jobkeeper.core.models import Deployment, JobIdentity, ReconciliationState


class JobkeeperError(Exception):
    """Base class; ``state`` is set when the failure left remote changes behind.

    ``registered`` marks failures raised after the scheduler accepted the job.
    """

    state: "ReconciliationState | None" = None
    registered: bool = False


class JobspecParseError(JobkeeperError, ValueError):
    """Raised before any submission when the jobspec cannot be parsed."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"error parsing jobspec: {detail}")
        self.detail = detail


class ResourceConfigError(JobkeeperError, ValueError):
    """Raised when a resource config document fails validation."""


class SchedulerAPIError(JobkeeperError):
    def __init__(self, message: str, *, status_code: int | None = None, path: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.path = path


class JobNotFoundError(SchedulerAPIError):
    pass


class PolicyRejectionError(SchedulerAPIError):
    """Submission refused by a soft-mandatory policy pending an explicit override."""


class SchedulerUnavailableError(SchedulerAPIError):
    """Transport failure: no response was received from the scheduler."""


class PollTimeoutError(JobkeeperError):
    def __init__(self, message: str, *, attempts: int = 0, last_value: object = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_value = last_value


class JobNotStoppedError(PollTimeoutError):
    pass


class DeploymentFailedError(JobkeeperError):
    def __init__(self, deployment: "Deployment") -> None:
        super().__init__(
            f"deployment {deployment.id} for job version {deployment.job_version} "
            f"finished with status {deployment.status.value}"
            + (f": {deployment.description}" if deployment.description else "")
        )
        self.deployment = deployment


class PartialMigrationError(JobkeeperError):
    def __init__(
        self,
        old_identity: "JobIdentity",
        new_identity: "JobIdentity",
        cause: Exception,
    ) -> None:
        super().__init__(
            f"job {old_identity} was deregistered but submitting {new_identity} failed: {cause}; "
            f"retry the update to submit without another teardown"
        )
        self.old_identity = old_identity
        self.new_identity = new_identity
        self.cause = cause
