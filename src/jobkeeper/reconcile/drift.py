from __future__ import annotations

from jobkeeper.core.errors import JobNotFoundError
from jobkeeper.core.models import DriftDecision, DriftReport, JobIdentity
from jobkeeper.safety.explain import ExplainLog
from jobkeeper.scheduler.client import SchedulerClient

DEAD_STATUS = "dead"


class DriftDetector:
    """Read-only comparison of the scheduler's view against the desired job."""

    def __init__(self, client: SchedulerClient, *, explain: ExplainLog | None = None) -> None:
        self.client = client
        self.explain = explain

    def _submitted_source(self, identity: JobIdentity, version: int) -> str | None:
        try:
            submission = self.client.job_submission(identity.id, version, namespace=identity.namespace)
        except JobNotFoundError:
            return None
        if not submission:
            return None
        source = submission.get("Source")
        return source if isinstance(source, str) else None

    def check_drift(
        self,
        identity: JobIdentity,
        *,
        desired_source: str | None,
        rerun_if_dead: bool,
    ) -> DriftReport:
        try:
            job = self.client.job_info(identity.id, namespace=identity.namespace)
        except JobNotFoundError:
            report = DriftReport(decision=DriftDecision.NOT_FOUND, identity=identity)
            if self.explain is not None:
                self.explain.emit("drift_checked", report.to_dict(), identity=identity)
            return report

        status = str(job.get("Status") or "")
        version = job.get("Version")
        decision = DriftDecision.NONE
        if status == DEAD_STATUS:
            decision = DriftDecision.RERUN_REQUIRED if rerun_if_dead else DriftDecision.EXTERNALLY_STOPPED

        source_mismatch = False
        if desired_source is not None and isinstance(version, int):
            submitted = self._submitted_source(identity, version)
            source_mismatch = submitted is not None and submitted != desired_source

        report = DriftReport(
            decision=decision,
            identity=identity,
            remote_status=status or None,
            remote_version=version if isinstance(version, int) else None,
            source_mismatch=source_mismatch,
            stopped=bool(job.get("Stop")),
            remote_job=job,
        )
        if self.explain is not None:
            self.explain.emit("drift_checked", report.to_dict(), identity=identity)
        return report
