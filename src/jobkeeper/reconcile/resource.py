"""Managed-resource lifecycle for a scheduler job.

``JobResource`` is what a calling framework drives: ``create``, ``read``
(refresh plus drift check), ``update`` (resubmission, identity changes
handled as migrations), ``delete`` and ``exists``, plus ``plan`` for a
preview and ``apply`` which chains them the way the CLI needs.

Operations on one job must be serialised by the caller; nothing here locks.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from jobkeeper.core.errors import (
    DeploymentFailedError,
    JobNotFoundError,
    PollTimeoutError,
    SchedulerUnavailableError,
)
from jobkeeper.core.models import (
    DEFAULT_NAMESPACE,
    DriftDecision,
    DriftReport,
    JobIdentity,
    JobSpecification,
    ParsedJob,
    ReconciliationState,
    RemoteJobVersion,
    TeardownPolicy,
)
from jobkeeper.core.polling import Clock
from jobkeeper.core.settings import ReconcilerSettings
from jobkeeper.jobspec.parse import parse_jobspec
from jobkeeper.reconcile.deployment import DeploymentMonitor
from jobkeeper.reconcile.drift import DriftDetector
from jobkeeper.reconcile.migration import NamespaceMigrationHandler, rebind_state
from jobkeeper.reconcile.submission import SubmissionManager
from jobkeeper.reconcile.teardown import TeardownManager
from jobkeeper.safety.explain import ExplainLog
from jobkeeper.scheduler.client import SchedulerClient
from jobkeeper.state.config import ResourceConfig

_OPTION_FIELDS = (
    "detach",
    "deregister_on_destroy",
    "deregister_on_id_change",
    "purge_on_destroy",
    "policy_override",
    "rerun_if_dead",
)


@dataclass
class ReadResult:
    state: ReconciliationState | None
    drift: DriftReport
    resubmitted: bool = False


@dataclass
class PlanResult:
    action: str
    reasons: list[str] = field(default_factory=list)
    identity: JobIdentity | None = None
    diff_type: str | None = None
    warnings: str | None = None

    @property
    def changed(self) -> bool:
        return self.action != "noop"

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "changed": self.changed,
            "reasons": list(self.reasons),
            "identity": self.identity.to_dict() if self.identity else None,
            "diff_type": self.diff_type,
            "warnings": self.warnings,
        }


@dataclass
class ApplyResult:
    state: ReconciliationState
    action: str
    drift: DriftReport | None = None


@dataclass
class _Desired:
    spec: JobSpecification
    parsed: ParsedJob
    identity: JobIdentity


class JobResource:
    def __init__(
        self,
        client: SchedulerClient,
        *,
        settings: ReconcilerSettings | None = None,
        clock: Clock | None = None,
        explain: ExplainLog | None = None,
        default_namespace: str | None = None,
    ) -> None:
        self.client = client
        self.settings = settings or ReconcilerSettings()
        self.clock = clock or Clock()
        self.explain = explain
        self.default_namespace = default_namespace or DEFAULT_NAMESPACE
        self.submission = SubmissionManager(client, settings=self.settings, clock=self.clock, explain=explain)
        self.deployments = DeploymentMonitor(client, settings=self.settings, clock=self.clock, explain=explain)
        self.drift = DriftDetector(client, explain=explain)
        self.teardown = TeardownManager(client, settings=self.settings, clock=self.clock, explain=explain)
        self.migration = NamespaceMigrationHandler(self.submission, self.teardown, explain=explain)

    def _desired(self, config: ResourceConfig) -> _Desired:
        spec = config.specification()
        parsed = parse_jobspec(spec, self.client)
        namespace = config.namespace or parsed.namespace or self.default_namespace
        return _Desired(spec=spec, parsed=parsed, identity=JobIdentity(parsed.id, namespace))

    def _apply_desired(self, state: ReconciliationState, config: ResourceConfig, desired: _Desired) -> None:
        for name in _OPTION_FIELDS:
            setattr(state, name, getattr(config, name))
        state.jobspec = desired.spec.source
        state.format = desired.spec.format.value
        state.variables = dict(desired.spec.variables)
        job = desired.parsed.job
        state.name = job.get("Name") or desired.parsed.id
        state.type = desired.parsed.type
        state.multiregion = desired.parsed.multiregion
        state.task_groups = desired.parsed.task_groups

    def _refresh_from_job(self, state: ReconciliationState, job: dict) -> None:
        version = job.get("Version")
        if isinstance(version, int):
            state.advance_version(version)
        state.modify_index = job.get("JobModifyIndex", state.modify_index)
        state.status = job.get("Status") or state.status
        state.name = job.get("Name") or state.name
        state.type = job.get("Type") or state.type
        state.region = job.get("Region") or state.region
        datacenters = job.get("Datacenters")
        if isinstance(datacenters, list):
            state.datacenters = [str(dc) for dc in datacenters]
        groups = job.get("TaskGroups")
        if isinstance(groups, list):
            state.task_groups = [str(g.get("Name")) for g in groups if isinstance(g, dict) and g.get("Name")]
        state.multiregion = bool(job.get("Multiregion")) or state.multiregion

    def _observe(
        self,
        state: ReconciliationState,
        desired: _Desired,
        version: RemoteJobVersion,
        *,
        detach: bool,
        timeout_s: float,
    ) -> None:
        try:
            deployment = self.deployments.observe(
                desired.identity,
                version.version,
                job_type=desired.parsed.type,
                parameterized=desired.parsed.parameterized,
                periodic=desired.parsed.periodic,
                blocking=not detach,
                timeout_s=timeout_s,
            )
        except DeploymentFailedError as exc:
            state.record_deployment(exc.deployment)
            exc.state = state
            raise
        except PollTimeoutError as exc:
            exc.state = state
            raise
        state.record_deployment(deployment)
        if not detach:
            self._refresh_from_job(state, self.client.job_info(desired.identity.id, namespace=desired.identity.namespace))

    def _submit(
        self,
        state: ReconciliationState,
        config: ResourceConfig,
        desired: _Desired,
        *,
        timeout_s: float,
    ) -> RemoteJobVersion:
        # failures after registration come back with ``state`` attached
        return self.submission.submit(
            desired.spec,
            desired.identity,
            policy_override=config.policy_override,
            detach=config.detach,
            state=state,
            parsed=desired.parsed,
            timeout_s=timeout_s,
        )

    def create(self, config: ResourceConfig) -> ReconciliationState:
        desired = self._desired(config)
        state = ReconciliationState(id=desired.identity.id, namespace=desired.identity.namespace)
        self._apply_desired(state, config, desired)
        version = self._submit(state, config, desired, timeout_s=config.create_timeout_s)
        self._observe(state, desired, version, detach=config.detach, timeout_s=config.create_timeout_s)
        return state

    def read(self, config: ResourceConfig | None, state: ReconciliationState) -> ReadResult:
        rerun_if_dead = config.rerun_if_dead if config is not None else state.rerun_if_dead
        # out-of-band edits show up as a difference from what was last applied
        report = self.drift.check_drift(state.identity, desired_source=state.jobspec, rerun_if_dead=rerun_if_dead)
        if report.decision == DriftDecision.NOT_FOUND:
            return ReadResult(state=None, drift=report)

        refreshed = state.copy()
        if report.remote_job is not None:
            self._refresh_from_job(refreshed, report.remote_job)
        if config is not None:
            refreshed.rerun_if_dead = config.rerun_if_dead

        if report.decision != DriftDecision.RERUN_REQUIRED or config is None:
            if refreshed.version is not None and refreshed.type:
                deployment = self.deployments.observe(
                    refreshed.identity,
                    refreshed.version,
                    job_type=refreshed.type,
                    blocking=False,
                )
                refreshed.record_deployment(deployment)
            return ReadResult(state=refreshed, drift=report)

        desired = self._desired(config)
        if desired.identity != refreshed.identity:
            # identity changes are resolved by update, which resubmits anyway
            return ReadResult(state=refreshed, drift=report)

        if self.explain is not None:
            self.explain.emit("job_rerun", {"remote_status": report.remote_status}, identity=desired.identity)
        self._apply_desired(refreshed, config, desired)
        version = self._submit(refreshed, config, desired, timeout_s=config.update_timeout_s)
        self._observe(refreshed, desired, version, detach=config.detach, timeout_s=config.update_timeout_s)
        return ReadResult(state=refreshed, drift=report, resubmitted=True)

    def update(self, config: ResourceConfig, state: ReconciliationState) -> ReconciliationState:
        desired = self._desired(config)
        new_state = state.copy()
        self._apply_desired(new_state, config, desired)
        timeout_s = config.update_timeout_s
        old_identity = state.identity

        if state.pending_submission or desired.identity == old_identity:
            if desired.identity != old_identity:
                rebind_state(new_state, desired.identity)
            version = self._submit(new_state, config, desired, timeout_s=timeout_s)
        elif desired.identity.namespace != old_identity.namespace or config.deregister_on_id_change:
            version = self.migration.migrate(
                old_identity,
                desired.identity,
                desired.spec,
                TeardownPolicy(deregister=True, purge=config.purge_on_destroy),
                policy_override=config.policy_override,
                detach=config.detach,
                state=new_state,
                parsed=desired.parsed,
                global_=state.multiregion,
                timeout_s=timeout_s,
            )
        else:
            # renamed without deregister_on_id_change: the old job keeps running
            rebind_state(new_state, desired.identity)
            version = self._submit(new_state, config, desired, timeout_s=timeout_s)

        self._observe(new_state, desired, version, detach=config.detach, timeout_s=timeout_s)
        return new_state

    def delete(self, state: ReconciliationState) -> None:
        self.teardown.teardown(state.identity, state.teardown_policy, global_=state.multiregion)

    def exists(self, state: ReconciliationState) -> bool:
        try:
            self.client.job_info(state.id, namespace=state.namespace)
        except JobNotFoundError:
            return False
        return True

    def plan(self, config: ResourceConfig, state: ReconciliationState | None) -> PlanResult:
        try:
            return self._plan(config, state)
        except SchedulerUnavailableError as exc:
            # an unreachable scheduler cannot confirm the job is unchanged
            return PlanResult(action="unknown", reasons=[f"scheduler_unavailable: {exc}"])

    def _plan(self, config: ResourceConfig, state: ReconciliationState | None) -> PlanResult:
        desired = self._desired(config)
        if state is None:
            server = self.submission.plan(
                desired.spec,
                desired.identity,
                policy_override=config.policy_override,
                parsed=desired.parsed,
            )
            return PlanResult(
                action="create",
                reasons=["no_state"],
                identity=desired.identity,
                diff_type=server["diff_type"],
                warnings=server["warnings"],
            )

        if desired.identity.namespace != state.namespace:
            return PlanResult(action="replace", reasons=["namespace_changed"], identity=desired.identity)
        if desired.identity.id != state.id:
            return PlanResult(action="replace", reasons=["id_changed"], identity=desired.identity)

        reasons: list[str] = []
        action = "noop"
        if state.pending_submission:
            action = "update"
            reasons.append("pending_submission")

        report = self.drift.check_drift(state.identity, desired_source=state.jobspec, rerun_if_dead=config.rerun_if_dead)
        if report.decision == DriftDecision.NOT_FOUND:
            return PlanResult(action="create", reasons=["not_found"], identity=desired.identity)
        if report.decision == DriftDecision.RERUN_REQUIRED:
            action = "update"
            reasons.append("rerun_if_dead")
        if report.source_mismatch:
            reasons.append("remote_source_modified")

        diff_type = None
        warnings = None
        source_changed = (
            desired.spec.source != state.jobspec
            or desired.spec.format.value != state.format
            or dict(desired.spec.variables) != state.variables
        )
        if source_changed or report.source_mismatch:
            server = self.submission.plan(
                desired.spec,
                desired.identity,
                policy_override=config.policy_override,
                parsed=desired.parsed,
            )
            diff_type = server["diff_type"]
            warnings = server["warnings"]
            if diff_type != "None":
                action = "update"
                reasons.append("job_changed")

        if action == "noop" and any(getattr(config, name) != getattr(state, name) for name in _OPTION_FIELDS):
            action = "update"
            reasons.append("options_changed")

        return PlanResult(
            action=action,
            reasons=reasons,
            identity=desired.identity,
            diff_type=diff_type,
            warnings=warnings,
        )

    def apply(self, config: ResourceConfig, state: ReconciliationState | None) -> ApplyResult:
        if state is None:
            return ApplyResult(state=self.create(config), action="create")

        if state.pending_submission:
            return ApplyResult(state=self.update(config, state), action="update")

        result = self.read(config, state)
        if result.state is None:
            return ApplyResult(state=self.create(config), action="create", drift=result.drift)

        current = result.state
        plan = self._plan(config, current)
        if plan.action == "create":
            return ApplyResult(state=self.create(config), action="create", drift=result.drift)
        if plan.action == "replace" or "job_changed" in plan.reasons or "pending_submission" in plan.reasons:
            return ApplyResult(state=self.update(config, current), action=plan.action, drift=result.drift)

        if plan.action == "update":
            # rerun already resubmitted during read; only local options remain
            for name in _OPTION_FIELDS:
                setattr(current, name, getattr(config, name))
        action = "rerun" if result.resubmitted else plan.action
        return ApplyResult(state=current, action=action, drift=result.drift)
