import pytest

from jobkeeper.core.settings import ReconcilerSettings, parse_duration_ms


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("0.2s", 200),
        ("1.5s", 1500),
        ("250ms", 250),
        ("2", 2000),
        ("5m", 300_000),
        ("1h", 3_600_000),
    ],
)
def test_parse_duration_ms_ok(value: str, expected: int) -> None:
    assert parse_duration_ms(value) == expected


@pytest.mark.parametrize("value", ["abc", "1xs", "", "-1s", "0.5ms", "nan", "infs", "inf"])
def test_parse_duration_ms_invalid(value: str) -> None:
    with pytest.raises(ValueError):
        parse_duration_ms(value)


def test_settings_from_env(monkeypatch) -> None:
    monkeypatch.setenv("JOBKEEPER_POLL_INTERVAL_S", "0.25")
    monkeypatch.setenv("JOBKEEPER_TEARDOWN_ATTEMPTS", "9")
    monkeypatch.setenv("JOBKEEPER_EVAL_ATTEMPTS", "not-a-number")

    settings = ReconcilerSettings.from_env()

    assert settings.poll_interval_s == 0.25
    assert settings.teardown_policy.attempts == 9
    assert settings.eval_attempts == 60
