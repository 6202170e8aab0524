from __future__ import annotations

from jobkeeper.core.errors import (
    JobkeeperError,
    JobspecParseError,
    PolicyRejectionError,
    PollTimeoutError,
    SchedulerAPIError,
)
from jobkeeper.core.models import (
    JobFormat,
    JobIdentity,
    JobSpecification,
    ParsedJob,
    ReconciliationState,
    RemoteJobVersion,
)
from jobkeeper.core.polling import Clock, poll_until
from jobkeeper.core.settings import ReconcilerSettings
from jobkeeper.jobspec.parse import parse_jobspec
from jobkeeper.safety.explain import ExplainLog
from jobkeeper.scheduler.client import RegisterResponse, SchedulerClient

_EVAL_PENDING = {"pending"}
_EVAL_FAILED = {"failed", "canceled", "cancelled"}
_SUBMISSION_FORMATS = {
    JobFormat.STRUCTURED_TEXT: "hcl2",
    JobFormat.JSON: "json",
}


def _submission_payload(spec: JobSpecification) -> dict:
    return {
        "Source": spec.source,
        "Format": _SUBMISSION_FORMATS[spec.format],
        "VariableFlags": dict(spec.variables),
    }


class SubmissionManager:
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

    def prepare(self, spec: JobSpecification, identity: JobIdentity, parsed: ParsedJob | None = None) -> dict:
        """Parse (unless already parsed) and pin the job document to ``identity``."""
        if parsed is None:
            parsed = parse_jobspec(spec, self.client)
        if parsed.id != identity.id:
            raise JobspecParseError(f"job ID {parsed.id!r} does not match {identity.id!r}")
        job = dict(parsed.job)
        job["Namespace"] = identity.namespace
        return job

    def _register(self, job: dict, spec: JobSpecification, identity: JobIdentity, policy_override: bool) -> RegisterResponse:
        submission = _submission_payload(spec)
        try:
            return self.client.register_job(job, namespace=identity.namespace, submission=submission)
        except PolicyRejectionError as exc:
            if not policy_override:
                self._emit("job_submit_policy_rejected", {"error": exc.message, "override": False}, identity)
                raise
            self._emit("job_submit_policy_override_retry", {"error": exc.message}, identity)
        return self.client.register_job(
            job,
            namespace=identity.namespace,
            policy_override=True,
            submission=submission,
        )

    def wait_for_evaluation(self, eval_id: str, identity: JobIdentity, timeout_s: float | None = None) -> dict:
        def _probe() -> tuple[bool, dict]:
            evaluation = self.client.evaluation(eval_id)
            status = str(evaluation.get("Status") or "").lower()
            return status not in _EVAL_PENDING, evaluation

        outcome = poll_until(
            _probe,
            policy=self.settings.eval_policy,
            clock=self.clock,
            timeout_s=timeout_s,
        )
        evaluation = outcome.value or {}
        if not outcome.done:
            raise PollTimeoutError(
                f"evaluation {eval_id} for job {identity} still pending after {outcome.attempts} polls",
                attempts=outcome.attempts,
                last_value=evaluation,
            )
        status = str(evaluation.get("Status") or "").lower()
        self._emit("job_evaluation_done", {"eval_id": eval_id, "status": status, "polls": outcome.attempts}, identity)
        if status in _EVAL_FAILED:
            detail = evaluation.get("StatusDescription") or status
            raise SchedulerAPIError(f"evaluation {eval_id} for job {identity} {status}: {detail}")
        return evaluation

    def submit(
        self,
        spec: JobSpecification,
        identity: JobIdentity,
        *,
        policy_override: bool = False,
        detach: bool = True,
        state: ReconciliationState | None = None,
        parsed: ParsedJob | None = None,
        timeout_s: float | None = None,
    ) -> RemoteJobVersion:
        job = self.prepare(spec, identity, parsed)
        self._emit(
            "job_submit_start",
            {"format": spec.format.value, "policy_override": policy_override, "detach": detach},
            identity,
        )

        resp = self._register(job, spec, identity, policy_override)
        info = self.client.job_info(identity.id, namespace=identity.namespace)
        version = RemoteJobVersion(
            identity=identity,
            version=int(info.get("Version") or 0),
            submitted_source=spec.source,
            submitted_variables=dict(spec.variables),
            eval_id=resp.eval_id,
            modify_index=resp.job_modify_index or info.get("JobModifyIndex"),
            warnings=resp.warnings,
        )
        self._emit("job_submitted", version.to_dict(), identity)

        if state is not None:
            state.advance_version(version.version)
            state.modify_index = version.modify_index
            state.status = info.get("Status") or state.status
            state.pending_submission = False

        # parameterized and periodic parents are registered without an evaluation
        if not detach and resp.eval_id:
            try:
                self.wait_for_evaluation(resp.eval_id, identity, timeout_s=timeout_s)
            except JobkeeperError as exc:
                exc.registered = True
                if state is not None:
                    exc.state = state
                raise
        return version

    def plan(
        self,
        spec: JobSpecification,
        identity: JobIdentity,
        *,
        policy_override: bool = False,
        parsed: ParsedJob | None = None,
    ) -> dict:
        job = self.prepare(spec, identity, parsed)
        payload = self.client.plan_job(job, namespace=identity.namespace, policy_override=policy_override)
        diff = payload.get("Diff") if isinstance(payload.get("Diff"), dict) else {}
        result = {
            "diff_type": str(diff.get("Type") or "None"),
            "warnings": payload.get("Warnings") or None,
            "failed_allocs": sorted((payload.get("FailedTGAllocs") or {}).keys()),
        }
        self._emit("job_plan", result, identity)
        return result
