import pytest

from conftest import make_job
from jobkeeper.core.errors import DeploymentFailedError, PollTimeoutError
from jobkeeper.core.models import Deployment, DeploymentStatus, JobIdentity
from jobkeeper.reconcile.deployment import DeploymentMonitor

FOO = JobIdentity("foo", "default")


@pytest.fixture
def monitor(fake_scheduler, fake_clock, settings, explain) -> DeploymentMonitor:
    return DeploymentMonitor(fake_scheduler, settings=settings, clock=fake_clock, explain=explain)


def _register(fake_scheduler, **fields) -> int:
    fake_scheduler.register_job(make_job("foo", **fields), namespace="default")
    return fake_scheduler.jobs[("default", "foo")]["Version"]


def test_blocking_observe_waits_for_successful(monitor, fake_scheduler, explain) -> None:
    fake_scheduler.deployment_running_polls = 3
    version = _register(fake_scheduler)

    deployment = monitor.observe(FOO, version, timeout_s=60.0)

    assert deployment is not None
    assert deployment.status == DeploymentStatus.SUCCESSFUL
    assert deployment.job_version == version
    assert explain.names()[-2:] == ["deployment_found", "deployment_finished"]


def test_failed_deployment_raises(monitor, fake_scheduler) -> None:
    fake_scheduler.deployment_outcome = "failed"
    version = _register(fake_scheduler)

    with pytest.raises(DeploymentFailedError) as excinfo:
        monitor.observe(FOO, version, timeout_s=60.0)
    assert excinfo.value.deployment.status == DeploymentStatus.FAILED


def test_deployment_that_never_finishes_times_out(monitor, fake_scheduler, fake_clock) -> None:
    fake_scheduler.deployment_running_polls = 10_000
    version = _register(fake_scheduler)

    with pytest.raises(PollTimeoutError):
        monitor.observe(FOO, version, timeout_s=10.0)
    assert fake_clock.now <= 10.0


def test_no_update_strategy_is_absent_not_error(monitor, fake_scheduler, explain) -> None:
    version = _register(fake_scheduler, Update=None)

    assert monitor.observe(FOO, version, timeout_s=60.0) is None
    assert fake_scheduler.methods().count("latest_deployment") == 3
    assert "deployment_absent" in explain.names()


@pytest.mark.parametrize(
    "kwargs",
    [{"job_type": "batch"}, {"job_type": "sysbatch"}, {"parameterized": True}, {"periodic": True}],
)
def test_job_kinds_without_rollout_are_skipped(monitor, fake_scheduler, kwargs) -> None:
    assert monitor.observe(FOO, 1, **kwargs) is None
    assert fake_scheduler.calls == []


def test_deployment_for_older_version_is_ignored(monitor, fake_scheduler) -> None:
    _register(fake_scheduler)
    assert monitor.observe(FOO, 2, blocking=False) is None


def test_non_blocking_observe_returns_current(monitor, fake_scheduler) -> None:
    version = _register(fake_scheduler)

    deployment = monitor.observe(FOO, version, blocking=False)

    assert deployment is not None
    assert deployment.status == DeploymentStatus.RUNNING
    assert fake_scheduler.methods().count("latest_deployment") == 1


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("successful", DeploymentStatus.SUCCESSFUL),
        ("canceled", DeploymentStatus.CANCELLED),
        ("paused", DeploymentStatus.PAUSED),
        ("initializing", DeploymentStatus.RUNNING),
        (None, DeploymentStatus.RUNNING),
    ],
)
def test_status_parse(raw, expected) -> None:
    assert DeploymentStatus.parse(raw) == expected


class _ScriptedDeployments:
    def __init__(self, *deployments: Deployment) -> None:
        self.deployments = list(deployments)

    def latest_deployment(self, job_id, *, namespace):
        if len(self.deployments) > 1:
            return self.deployments.pop(0)
        return self.deployments[0]


def test_superseded_deployment_stops_the_watch(fake_clock, settings, explain) -> None:
    client = _ScriptedDeployments(
        Deployment(id="d1", job_version=1, status=DeploymentStatus.RUNNING),
        Deployment(id="d2", job_version=2, status=DeploymentStatus.RUNNING),
    )
    monitor = DeploymentMonitor(client, settings=settings, clock=fake_clock, explain=explain)

    assert monitor.observe(FOO, 1, timeout_s=60.0) is None
    assert fake_clock.sleeps == []
    assert "deployment_superseded" in explain.names()
