from __future__ import annotations

from jobkeeper.core.errors import DeploymentFailedError, PollTimeoutError
from jobkeeper.core.models import Deployment, JobIdentity
from jobkeeper.core.polling import Clock, PollPolicy, PollState, poll_until
from jobkeeper.core.settings import ReconcilerSettings
from jobkeeper.safety.explain import ExplainLog
from jobkeeper.scheduler.client import SchedulerClient

# Job types that are never rolled out through a deployment.
NO_DEPLOYMENT_TYPES = frozenset({"batch", "sysbatch"})


class DeploymentMonitor:
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

    def _matching(self, identity: JobIdentity, version: int) -> Deployment | None:
        deployment = self.client.latest_deployment(identity.id, namespace=identity.namespace)
        if deployment is None or deployment.job_version != version:
            return None
        return deployment

    def observe(
        self,
        identity: JobIdentity,
        version: int,
        *,
        job_type: str = "service",
        parameterized: bool = False,
        periodic: bool = False,
        blocking: bool = True,
        timeout_s: float | None = None,
    ) -> Deployment | None:
        if job_type in NO_DEPLOYMENT_TYPES or parameterized or periodic:
            self._emit(
                "deployment_skipped",
                {"version": version, "type": job_type, "parameterized": parameterized, "periodic": periodic},
                identity,
            )
            return None

        if not blocking:
            deployment = self._matching(identity, version)
            self._emit(
                "deployment_observed",
                {"version": version, "deployment": deployment.to_dict() if deployment else None, "polls": 1},
                identity,
            )
            return deployment

        if timeout_s is None:
            timeout_s = self.settings.create_timeout_s
        started = self.clock.monotonic()

        def _discover() -> tuple[bool, Deployment | None]:
            found = self._matching(identity, version)
            return found is not None, found

        discovery = poll_until(
            _discover,
            policy=self.settings.discovery_policy,
            clock=self.clock,
            timeout_s=timeout_s,
        )
        if discovery.state == PollState.TIMED_OUT:
            raise PollTimeoutError(
                f"timed out waiting for a deployment of job {identity} version {version}",
                attempts=discovery.attempts,
            )
        if discovery.state == PollState.EXHAUSTED:
            self._emit("deployment_absent", {"version": version, "polls": discovery.attempts}, identity)
            return None

        deployment = discovery.value
        assert deployment is not None
        self._emit("deployment_found", deployment.to_dict(), identity)

        def _watch() -> tuple[bool, Deployment | None]:
            current = self._matching(identity, version)
            if current is None or current.id != deployment.id:
                # a newer submission replaced the watched rollout
                return True, None
            return current.status.terminal, current

        remaining = max(0.0, timeout_s - (self.clock.monotonic() - started))
        watch = poll_until(
            _watch,
            policy=PollPolicy.for_timeout(remaining, self.settings.poll_interval_s),
            clock=self.clock,
            timeout_s=remaining,
        )
        if watch.done and watch.value is None:
            self._emit("deployment_superseded", deployment.to_dict(), identity)
            return None
        deployment = watch.value or deployment
        if not watch.done:
            raise PollTimeoutError(
                f"deployment {deployment.id} of job {identity} still {deployment.status.value} "
                f"after {watch.attempts} polls",
                attempts=watch.attempts,
                last_value=deployment,
            )
        self._emit("deployment_finished", deployment.to_dict(), identity)
        if deployment.status.failed:
            raise DeploymentFailedError(deployment)
        return deployment
