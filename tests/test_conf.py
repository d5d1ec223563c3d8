# mypy: ignore-errors
import conf
from utils import env
from utils.env import EnvVarSpec


def test_defaults_validate(monkeypatch) -> None:
    for spec in conf.VALIDATED_ENV_VARS:
        monkeypatch.delenv(spec.id, raising=False)

    assert conf.validate()
    assert conf.get_http_conf().port == 8000
    scheduler = conf.get_scheduler_conf()
    assert scheduler.enabled is True
    assert scheduler.close_interval_seconds == 60
    assert scheduler.bid_sync_interval_seconds == 300


def test_invalid_port_fails_validation(monkeypatch) -> None:
    monkeypatch.setenv("HTTP_PORT", "eighty")
    assert not conf.validate()


def test_scheduler_overrides(monkeypatch) -> None:
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("AUCTION_CLOSE_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("BID_SYNC_INTERVAL_SECONDS", "30")

    scheduler = conf.get_scheduler_conf()

    assert scheduler.enabled is False
    assert scheduler.close_interval_seconds == 1
    assert scheduler.bid_sync_interval_seconds == 30


def test_required_variable_missing(monkeypatch) -> None:
    spec = EnvVarSpec(id="AUCTION_TEST_REQUIRED")
    monkeypatch.delenv(spec.id, raising=False)

    assert not env.validate([spec])
    assert env.parse(EnvVarSpec(id=spec.id, is_optional=True)) is None
