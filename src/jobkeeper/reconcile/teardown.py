from __future__ import annotations

from jobkeeper.core.errors import JobNotFoundError, JobNotStoppedError
from jobkeeper.core.models import JobIdentity, TeardownPolicy
from jobkeeper.core.polling import Clock, poll_until
from jobkeeper.core.settings import ReconcilerSettings
from jobkeeper.reconcile.drift import DEAD_STATUS
from jobkeeper.safety.explain import ExplainLog
from jobkeeper.scheduler.client import SchedulerClient


class TeardownManager:
    def __init__(
        self,
        client: SchedulerClient,
        *,
        settings: ReconcilerSettings | None = None,
        clock: Clock | None = None,
        explain: ExplainLog | None = None,
    ) -> None:
        self.client = client
        self.settings = settings or ReconcilerSettings()
        self.clock = clock or Clock()
        self.explain = explain

    def _emit(self, event: str, payload: dict, identity: JobIdentity) -> None:
        if self.explain is not None:
            self.explain.emit(event, payload, identity=identity)

    def _stopped(self, identity: JobIdentity) -> tuple[bool, str | None]:
        try:
            job = self.client.job_info(identity.id, namespace=identity.namespace)
        except JobNotFoundError:
            return True, None
        status = str(job.get("Status") or "")
        return status == DEAD_STATUS, status

    def teardown(self, identity: JobIdentity, policy: TeardownPolicy, *, global_: bool = False) -> None:
        if not policy.deregister:
            self._emit("teardown_skipped", {"reason": "deregister_disabled"}, identity)
            return

        self._emit("teardown_start", {"purge": policy.purge, "global": global_}, identity)
        try:
            eval_id = self.client.deregister_job(
                identity.id,
                namespace=identity.namespace,
                purge=policy.purge,
                global_=global_,
            )
        except JobNotFoundError:
            self._emit("teardown_done", {"already_absent": True}, identity)
            return

        if policy.purge:
            self._emit("teardown_done", {"eval_id": eval_id, "purged": True}, identity)
            return

        outcome = poll_until(
            lambda: self._stopped(identity),
            policy=self.settings.teardown_policy,
            clock=self.clock,
        )
        if not outcome.done:
            raise JobNotStoppedError(
                f"job {identity.id!r} in namespace {identity.namespace!r} has not stopped "
                f"(status={outcome.value!r} after {outcome.attempts} checks)",
                attempts=outcome.attempts,
                last_value=outcome.value,
            )
        self._emit("teardown_done", {"eval_id": eval_id, "polls": outcome.attempts}, identity)
