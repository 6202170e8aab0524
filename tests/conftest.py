# --- test import path bootstrap (src/ layout) ---
import sys as _sys
from pathlib import Path as _Path

_SRC = _Path(__file__).resolve().parents[1] / "src"
if _SRC.is_dir():
    _p = str(_SRC)
    if _p not in _sys.path:
        _sys.path.insert(0, _p)
# --- end bootstrap ---

import json
from copy import deepcopy
from pathlib import Path

import pytest

from jobkeeper.core.errors import (
    JobNotFoundError,
    PolicyRejectionError,
    SchedulerAPIError,
    SchedulerUnavailableError,
)
from jobkeeper.core.models import Deployment
from jobkeeper.core.settings import ReconcilerSettings
from jobkeeper.reconcile.resource import JobResource
from jobkeeper.safety.explain import ExplainLog
from jobkeeper.scheduler.config import SchedulerConfig

_SERVER_FIELDS = ("Version", "Status", "Stop", "JobModifyIndex", "SubmitTime")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeScheduler:
    """In-memory stand-in for SchedulerClient with just enough scheduler behaviour."""

    def __init__(self) -> None:
        self.config = SchedulerConfig()
        self.jobs: dict[tuple[str, str], dict] = {}
        self.submissions: dict[tuple[str, str, int], dict] = {}
        self.deployments: dict[tuple[str, str], dict] = {}
        self.hcl: dict[str, dict] = {}
        self.calls: list[tuple[str, dict]] = []
        self.soft_policy = False
        self.unavailable = False
        self.stop_on_deregister = True
        self.deployment_running_polls = 1
        self.deployment_outcome = "successful"
        self.eval_status = "complete"
        self.register_error: Exception | None = None
        self._index = 100
        self._evals = 0

    def _record(self, method: str, **kwargs) -> None:
        self.calls.append((method, kwargs))
        if self.unavailable:
            raise SchedulerUnavailableError("url error: [Errno 111] Connection refused")

    def methods(self) -> list[str]:
        return [name for name, _ in self.calls]

    def _next_eval(self) -> str:
        self._evals += 1
        return f"eval-{self._evals}"

    def register_job(self, job, *, namespace, policy_override=False, submission=None):
        self._record("register_job", job=deepcopy(job), namespace=namespace, policy_override=policy_override)
        if self.register_error is not None:
            raise self.register_error
        if self.soft_policy and not policy_override:
            raise PolicyRejectionError(
                "1 error occurred:\n\t* restrict-images : Result: false (soft-mandatory policy violation, "
                "use policy override)",
                status_code=500,
                path="/v1/jobs",
            )
        key = (namespace, job["ID"])
        previous = self.jobs.get(key)
        version = previous["Version"] + 1 if previous else 1
        self._index += 1
        stored = deepcopy(job)
        stored.setdefault("Type", "service")
        stored.update(
            {
                "Namespace": namespace,
                "Version": version,
                "Status": "running",
                "Stop": False,
                "JobModifyIndex": self._index,
            }
        )
        self.jobs[key] = stored
        if submission is not None:
            self.submissions[(namespace, job["ID"], version)] = deepcopy(submission)
        no_rollout = (
            stored["Type"] in ("batch", "sysbatch")
            or stored.get("ParameterizedJob")
            or stored.get("Periodic")
            or not stored.get("Update")
        )
        if not no_rollout:
            self.deployments[key] = {
                "ID": f"dep-{job['ID']}-{version}",
                "JobVersion": version,
                "Status": "running",
                "polls": 0,
            }
        eval_id = None if stored.get("ParameterizedJob") or stored.get("Periodic") else self._next_eval()
        return _RegisterResponse(eval_id, self._index)

    def job_info(self, job_id, *, namespace):
        self._record("job_info", job_id=job_id, namespace=namespace)
        job = self.jobs.get((namespace, job_id))
        if job is None:
            raise JobNotFoundError("Unexpected response code: 404 (job not found)", status_code=404)
        return deepcopy(job)

    def deregister_job(self, job_id, *, namespace, purge=False, global_=False):
        self._record("deregister_job", job_id=job_id, namespace=namespace, purge=purge, global_=global_)
        key = (namespace, job_id)
        if key not in self.jobs:
            raise JobNotFoundError("Unexpected response code: 404 (job not found)", status_code=404)
        if purge:
            del self.jobs[key]
            self.deployments.pop(key, None)
            for sub_key in [k for k in self.submissions if k[:2] == key]:
                del self.submissions[sub_key]
        else:
            self.jobs[key]["Stop"] = True
            if self.stop_on_deregister:
                self.jobs[key]["Status"] = "dead"
        return self._next_eval()

    def latest_deployment(self, job_id, *, namespace):
        self._record("latest_deployment", job_id=job_id, namespace=namespace)
        record = self.deployments.get((namespace, job_id))
        if record is None:
            return None
        record["polls"] += 1
        if record["polls"] > self.deployment_running_polls and record["Status"] == "running":
            record["Status"] = self.deployment_outcome
        return Deployment.from_api(record)

    def job_submission(self, job_id, version, *, namespace):
        self._record("job_submission", job_id=job_id, version=version, namespace=namespace)
        submission = self.submissions.get((namespace, job_id, version))
        if submission is None:
            raise JobNotFoundError("Unexpected response code: 404 (job source not found)", status_code=404)
        return deepcopy(submission)

    def evaluation(self, eval_id):
        self._record("evaluation", eval_id=eval_id)
        return {"ID": eval_id, "Status": self.eval_status}

    def parse_job(self, source, *, variables=None):
        self._record("parse_job", source=source, variables=dict(variables or {}))
        job = self.hcl.get(source)
        if job is None:
            raise SchedulerAPIError(
                "Unexpected response code: 400 (input.hcl:1,1-4: Argument or block definition required)",
                status_code=400,
            )
        return deepcopy(job)

    def plan_job(self, job, *, namespace, policy_override=False):
        self._record("plan_job", job=deepcopy(job), namespace=namespace, policy_override=policy_override)
        current = self.jobs.get((namespace, job["ID"]))
        if current is None:
            diff_type = "Added"
        else:
            registered = {k: v for k, v in current.items() if k not in _SERVER_FIELDS}
            candidate = dict(job)
            candidate.setdefault("Type", "service")
            diff_type = "None" if candidate == registered else "Edited"
        return {"Diff": {"Type": diff_type}, "FailedTGAllocs": None, "Warnings": ""}

    # out-of-band operator actions

    def stop_externally(self, job_id, namespace="default"):
        self.jobs[(namespace, job_id)]["Stop"] = True
        self.jobs[(namespace, job_id)]["Status"] = "dead"

    def purge_externally(self, job_id, namespace="default"):
        self.jobs.pop((namespace, job_id), None)


class _RegisterResponse:
    def __init__(self, eval_id, modify_index):
        self.eval_id = eval_id
        self.job_modify_index = modify_index
        self.warnings = None


def make_job(job_id: str = "foo", **fields) -> dict:
    job = {
        "ID": job_id,
        "Name": job_id,
        "Type": "service",
        "Datacenters": ["dc1"],
        "TaskGroups": [{"Name": "web", "Count": 1}],
        "Update": {"MaxParallel": 1},
    }
    job.update(fields)
    return {k: v for k, v in job.items() if v is not None}


def job_json(job_id: str = "foo", *, envelope: bool = True, **fields) -> str:
    job = make_job(job_id, **fields)
    return json.dumps({"Job": job} if envelope else job, sort_keys=True)


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> ReconcilerSettings:
    return ReconcilerSettings(
        poll_interval_s=1.0,
        eval_attempts=5,
        deployment_discovery_attempts=3,
        teardown_attempts=3,
        create_timeout_s=60.0,
        update_timeout_s=60.0,
    )


@pytest.fixture
def explain(tmp_path: Path) -> ExplainLog:
    return ExplainLog(tmp_path / "explain.jsonl")


@pytest.fixture
def resource(fake_scheduler, fake_clock, settings, explain) -> JobResource:
    return JobResource(fake_scheduler, settings=settings, clock=fake_clock, explain=explain)
