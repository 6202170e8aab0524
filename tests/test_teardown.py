import pytest

from conftest import make_job
from jobkeeper.core.errors import JobNotFoundError, JobNotStoppedError, SchedulerUnavailableError
from jobkeeper.core.models import JobIdentity, TeardownPolicy
from jobkeeper.reconcile.teardown import TeardownManager

FOO = JobIdentity("foo", "default")


@pytest.fixture
def manager(fake_scheduler, fake_clock, settings, explain) -> TeardownManager:
    return TeardownManager(fake_scheduler, settings=settings, clock=fake_clock, explain=explain)


@pytest.fixture
def running(fake_scheduler):
    fake_scheduler.register_job(
        make_job("foo"),
        namespace="default",
        submission={"Source": "{}", "Format": "json", "VariableFlags": {}},
    )
    fake_scheduler.register_job(make_job("foo"), namespace="default")
    return fake_scheduler


def test_deregister_waits_until_dead(manager, running) -> None:
    manager.teardown(FOO, TeardownPolicy(deregister=True, purge=False))

    job = running.jobs[("default", "foo")]
    assert job["Status"] == "dead"
    assert job["Stop"] is True


@pytest.mark.parametrize("purge", [False, True])
def test_teardown_is_idempotent(manager, running, purge: bool) -> None:
    policy = TeardownPolicy(deregister=True, purge=purge)

    manager.teardown(FOO, policy)
    manager.teardown(FOO, policy)


def test_purge_removes_all_history(manager, running) -> None:
    manager.teardown(FOO, TeardownPolicy(deregister=True, purge=True))
    assert running.methods()[-1] == "deregister_job"

    with pytest.raises(JobNotFoundError):
        running.job_info("foo", namespace="default")
    with pytest.raises(JobNotFoundError):
        running.job_submission("foo", 1, namespace="default")


def test_deregister_disabled_makes_no_remote_call(manager, running, explain) -> None:
    running.calls.clear()

    manager.teardown(FOO, TeardownPolicy(deregister=False, purge=True))

    assert running.calls == []
    assert running.jobs[("default", "foo")]["Status"] == "running"
    assert explain.names() == ["teardown_skipped"]


def test_job_that_never_stops_raises(manager, running, fake_clock) -> None:
    running.stop_on_deregister = False

    with pytest.raises(JobNotStoppedError) as excinfo:
        manager.teardown(FOO, TeardownPolicy())

    assert "has not stopped" in str(excinfo.value)
    assert excinfo.value.attempts == 3


def test_missing_job_counts_as_success(manager, fake_scheduler, explain) -> None:
    manager.teardown(JobIdentity("ghost", "default"), TeardownPolicy())
    assert explain.events[-1]["payload"]["already_absent"] is True


def test_multiregion_teardown_is_global(manager, running) -> None:
    manager.teardown(FOO, TeardownPolicy(purge=True), global_=True)

    deregister = [kwargs for name, kwargs in running.calls if name == "deregister_job"]
    assert deregister[0]["global_"] is True


def test_transport_errors_propagate(manager, running) -> None:
    running.unavailable = True
    with pytest.raises(SchedulerUnavailableError):
        manager.teardown(FOO, TeardownPolicy())
