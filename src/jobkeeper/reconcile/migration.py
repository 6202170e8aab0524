from __future__ import annotations

from jobkeeper.core.errors import JobkeeperError, PartialMigrationError
from jobkeeper.core.models import (
    JobIdentity,
    JobSpecification,
    ParsedJob,
    ReconciliationState,
    RemoteJobVersion,
    TeardownPolicy,
)
from jobkeeper.reconcile.submission import SubmissionManager
from jobkeeper.reconcile.teardown import TeardownManager
from jobkeeper.safety.explain import ExplainLog


def rebind_state(state: ReconciliationState, identity: JobIdentity) -> None:
    """Point ``state`` at a fresh identity with no submission recorded yet."""
    state.id = identity.id
    state.namespace = identity.namespace
    state.version = None
    state.modify_index = None
    state.status = None
    state.record_deployment(None)
    state.pending_submission = True


class NamespaceMigrationHandler:
    """Jobs cannot move between identities in place: tear down, then submit anew."""

    def __init__(
        self,
        submission: SubmissionManager,
        teardown: TeardownManager,
        *,
        explain: ExplainLog | None = None,
    ) -> None:
        self.submission = submission
        self.teardown = teardown
        self.explain = explain

    def migrate(
        self,
        old_identity: JobIdentity,
        new_identity: JobIdentity,
        spec: JobSpecification,
        policy: TeardownPolicy,
        *,
        policy_override: bool = False,
        detach: bool = True,
        state: ReconciliationState | None = None,
        parsed: ParsedJob | None = None,
        global_: bool = False,
        timeout_s: float | None = None,
    ) -> RemoteJobVersion:
        if self.explain is not None:
            self.explain.emit(
                "migration_start",
                {"from": old_identity.to_dict(), "to": new_identity.to_dict(), "purge": policy.purge},
                identity=old_identity,
            )

        # the old identity must be emptied even when destroy would leave the job running
        self.teardown.teardown(old_identity, TeardownPolicy(deregister=True, purge=policy.purge), global_=global_)
        if state is not None:
            rebind_state(state, new_identity)

        try:
            version = self.submission.submit(
                spec,
                new_identity,
                policy_override=policy_override,
                detach=detach,
                state=state,
                parsed=parsed,
                timeout_s=timeout_s,
            )
        except JobkeeperError as exc:
            if exc.registered:
                # the new identity exists; only its evaluation did not settle
                if self.explain is not None:
                    self.explain.emit(
                        "migration_registered",
                        {"from": old_identity.to_dict(), "to": new_identity.to_dict(), "error": str(exc)},
                        identity=new_identity,
                    )
                raise
            err = PartialMigrationError(old_identity, new_identity, exc)
            err.state = state
            if self.explain is not None:
                self.explain.emit(
                    "migration_partial",
                    {"from": old_identity.to_dict(), "to": new_identity.to_dict(), "error": str(exc)},
                    identity=new_identity,
                )
            raise err from exc

        if state is not None:
            state.pending_submission = False
        if self.explain is not None:
            self.explain.emit("migration_done", version.to_dict(), identity=new_identity)
        return version
