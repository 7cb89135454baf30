from __future__ import annotations

import pytest

from app.services.betting_service import BettingService, OperationResult


@pytest.fixture
def service(session_factory, test_settings, plaintext_keystore, clock):
    return BettingService(session_factory, test_settings, keystore=plaintext_keystore, clock=clock)


def test_operation_result_serialises_error_only_on_failure():
    assert OperationResult.success({"a": 1}).to_dict() == {"ok": True, "data": {"a": 1}}
    assert OperationResult.failure("nope").to_dict() == {"ok": False, "data": None, "error": "nope"}


def test_domain_failures_are_results_not_exceptions(service, make_race):
    assert service.allocate("missing", 1).error == "Race not found"
    assert service.get_deposit_status("missing").error == "Deposit not found"
    assert service.race_pools("missing").error == "Race not found"
    assert service.settle("missing", 1).error == "Race not found"
    assert service.list_races("bogus").error == "Unknown race status: bogus"
    assert not service.create_race("Cup", ["Solo"]).ok


def test_allocate_returns_public_fields_only(service, make_race):
    race = make_race()
    result = service.allocate(race.id, 1)

    assert result.ok
    assert "private_key" not in result.data
    assert result.data["max_bet"] == pytest.approx(20.0)


def test_dispatch_requires_dispatcher(service):
    for result in (service.process_payouts(), service.process_refunds(), service.collect_deposits()):
        assert not result.ok
        assert result.error == "Payout dispatcher is not configured"
    assert service.treasury_balance().error == "Payout dispatcher is not configured"


def test_unexpected_errors_are_contained(service, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr("app.services.betting_service.RaceRepository.list_races", explode)
    result = service.list_races()

    assert not result.ok
    assert result.error == "Race listing failed"


def test_config_requires_key(service):
    assert service.set_config(" ", "x").error == "Config key is required"
    assert service.set_config("current_race", "abc").data == {"key": "current_race", "value": "abc"}
    assert service.get_config("current_race").data["value"] == "abc"
