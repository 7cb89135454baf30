from __future__ import annotations

import threading
import time

import pytest
from sqlalchemy import func, select

from app.db import session_scope
from app.models import Bet, DepositAddress, DepositStatus, Refund
from app.repositories import DepositRepository
from app.services.notifications import BetPlaced, DepositExpired, RefundQueued
from app.services.race_service import RaceService
from conftest import FakeLedger, new_wallet
from pipelines.deposit_watch import DepositReconciler, PollingTask

SOL = 1_000_000_000


@pytest.fixture
def reconciler(ledger, session_factory, test_settings, clock):
    return DepositReconciler(ledger, session_factory, test_settings, clock=clock)


def _deposit(session_factory, deposit_id) -> DepositAddress:
    with session_scope(session_factory) as session:
        return session.get(DepositAddress, deposit_id)


def _count(session_factory, model) -> int:
    with session_scope(session_factory) as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


def test_valid_transfer_places_bet(reconciler, ledger, session_factory, make_race, make_deposit):
    race = make_race()
    deposit = make_deposit(race.id, 2)
    sender = new_wallet()
    signature = ledger.deposit(deposit.address, 2 * SOL, sender=sender)

    summary = reconciler.run_cycle()

    assert summary.checked == 1
    assert summary.confirmed == 1
    stored = _deposit(session_factory, deposit.id)
    assert stored.status == DepositStatus.CONFIRMED.value
    assert stored.amount_received == pytest.approx(2.0)
    assert stored.transaction_signature == signature
    assert stored.user_wallet == sender
    with session_scope(session_factory) as session:
        bet = DepositRepository(session).get_bet_for_deposit(deposit.id)
        assert bet.horse_number == 2
        assert bet.user_wallet == sender
        assert bet.amount == pytest.approx(2.0)
        assert bet.odds_at_placement == pytest.approx(1.0)
    assert signature in reconciler.signatures
    [event] = reconciler.events.drain()
    assert isinstance(event, BetPlaced)
    assert event.deposit_id == deposit.id


def test_odds_at_placement_reflect_existing_pools(reconciler, ledger, session_factory, make_race, make_deposit, place_bet):
    race = make_race()
    place_bet(race.id, 1, 10.0)
    deposit = make_deposit(race.id, 2)
    ledger.deposit(deposit.address, 5 * SOL, sender=new_wallet())

    reconciler.run_cycle()

    with session_scope(session_factory) as session:
        bet = DepositRepository(session).get_bet_for_deposit(deposit.id)
        assert bet.odds_at_placement == pytest.approx(3.0)


def test_below_minimum_queues_refund(reconciler, ledger, session_factory, make_race, make_deposit):
    race = make_race()
    deposit = make_deposit(race.id)
    sender = new_wallet()
    ledger.deposit(deposit.address, 5_000_000, sender=sender)

    summary = reconciler.run_cycle()

    assert summary.rejected == 1
    assert _deposit(session_factory, deposit.id).status == DepositStatus.REJECTED_TOO_SMALL.value
    assert _count(session_factory, Bet) == 0
    with session_scope(session_factory) as session:
        [refund] = session.execute(select(Refund)).scalars().all()
        assert refund.amount == pytest.approx(0.005)
        assert refund.user_wallet == sender
        assert refund.status == "pending"
        assert refund.reason == "Amount below minimum bet"
    [event] = reconciler.events.drain()
    assert isinstance(event, RefundQueued)


def test_above_maximum_queues_refund(reconciler, ledger, session_factory, make_race, make_deposit):
    race = make_race()
    deposit = make_deposit(race.id)
    ledger.deposit(deposit.address, 25 * SOL, sender=new_wallet())

    reconciler.run_cycle()

    assert _deposit(session_factory, deposit.id).status == DepositStatus.REJECTED_OVER_MAX.value
    with session_scope(session_factory) as session:
        [refund] = session.execute(select(Refund)).scalars().all()
        assert refund.amount == pytest.approx(25.0)
    assert _count(session_factory, Bet) == 0


def test_transfer_after_race_closed_is_refunded(reconciler, ledger, session_factory, make_race, make_deposit):
    race = make_race()
    deposit = make_deposit(race.id)
    with session_scope(session_factory) as session:
        RaceService(session).close_race(race.id)
    ledger.deposit(deposit.address, SOL, sender=new_wallet())

    reconciler.run_cycle()

    assert _deposit(session_factory, deposit.id).status == DepositStatus.REJECTED_RACE_CLOSED.value
    assert _count(session_factory, Refund) == 1
    assert _count(session_factory, Bet) == 0


def test_empty_address_expires_only_after_deadline(reconciler, session_factory, clock, make_race, make_deposit):
    race = make_race()
    deposit = make_deposit(race.id, expiry_minutes=30)

    reconciler.run_cycle()
    assert _deposit(session_factory, deposit.id).status == DepositStatus.WAITING.value

    clock.advance(minutes=31)
    summary = reconciler.run_cycle()

    assert summary.expired == 1
    assert _deposit(session_factory, deposit.id).status == DepositStatus.EXPIRED.value
    assert _count(session_factory, Bet) == 0
    assert _count(session_factory, Refund) == 0
    [event] = reconciler.events.drain()
    assert isinstance(event, DepositExpired)


def test_late_transfer_is_honoured(reconciler, ledger, session_factory, clock, make_race, make_deposit):
    race = make_race()
    deposit = make_deposit(race.id)
    clock.advance(minutes=45)
    ledger.deposit(deposit.address, SOL, sender=new_wallet())

    summary = reconciler.run_cycle()

    assert summary.confirmed == 1
    assert summary.expired == 0
    assert _deposit(session_factory, deposit.id).status == DepositStatus.CONFIRMED.value


def test_expired_address_with_unindexed_funds_keeps_waiting(reconciler, ledger, session_factory, clock, make_race, make_deposit):
    race = make_race()
    deposit = make_deposit(race.id)
    ledger.balances[deposit.address] = SOL
    clock.advance(minutes=45)

    reconciler.run_cycle()

    assert _deposit(session_factory, deposit.id).status == DepositStatus.WAITING.value


def test_only_first_valid_transfer_counts(reconciler, ledger, session_factory, make_race, make_deposit):
    race = make_race()
    deposit = make_deposit(race.id)
    ledger.deposit(deposit.address, SOL, sender=new_wallet())
    ledger.deposit(deposit.address, 3 * SOL, sender=new_wallet())

    reconciler.run_cycle()
    reconciler.run_cycle()

    assert _count(session_factory, Bet) == 1
    assert _count(session_factory, Refund) == 0
    stored = _deposit(session_factory, deposit.id)
    assert stored.transaction_signature == ledger.history[deposit.address][0]


def test_confirmed_deposit_is_never_revisited(reconciler, ledger, session_factory, clock, make_race, make_deposit):
    race = make_race()
    deposit = make_deposit(race.id)
    ledger.deposit(deposit.address, SOL, sender=new_wallet())
    reconciler.run_cycle()

    ledger.deposit(deposit.address, 50 * SOL, sender=new_wallet())
    clock.advance(hours=2)
    for _ in range(3):
        reconciler.run_cycle()

    assert _deposit(session_factory, deposit.id).status == DepositStatus.CONFIRMED.value
    assert _count(session_factory, Refund) == 0
    with session_scope(session_factory) as session:
        assert not DepositRepository(session).resolve(deposit.id, DepositStatus.EXPIRED)


def test_replayed_signature_is_not_consumed_twice(ledger, session_factory, test_settings, clock, make_race, make_deposit):
    race = make_race()
    first = make_deposit(race.id)
    second = make_deposit(race.id)
    ledger.deposit(first.address, SOL, sender=new_wallet(), signature="replayed")
    DepositReconciler(ledger, session_factory, test_settings, clock=clock).run_cycle()

    # A fresh process with an empty in-memory set sees the same signature credited elsewhere.
    ledger.deposit(second.address, SOL, sender=new_wallet(), signature="replayed")
    restarted = DepositReconciler(ledger, session_factory, test_settings, clock=clock)
    summary = restarted.run_cycle()

    assert summary.confirmed == 0
    assert _count(session_factory, Bet) == 1
    assert _count(session_factory, Refund) == 0
    assert _deposit(session_factory, second.id).status == DepositStatus.WAITING.value
    assert "replayed" in restarted.signatures


def test_prime_signatures_restores_processed_set(ledger, session_factory, test_settings, clock, make_race, make_deposit):
    race = make_race()
    deposit = make_deposit(race.id)
    signature = ledger.deposit(deposit.address, SOL, sender=new_wallet())
    DepositReconciler(ledger, session_factory, test_settings, clock=clock).run_cycle()

    restarted = DepositReconciler(ledger, session_factory, test_settings, clock=clock)
    assert restarted.prime_signatures() == 1
    assert signature in restarted.signatures


def test_ledger_failure_is_isolated_per_address(reconciler, ledger, session_factory, make_race, make_deposit):
    race = make_race()
    broken = make_deposit(race.id)
    healthy = make_deposit(race.id)
    ledger.failing_addresses.add(broken.address)
    ledger.deposit(healthy.address, SOL, sender=new_wallet())

    summary = reconciler.run_cycle()

    assert summary.errors == 1
    assert summary.confirmed == 1
    assert _deposit(session_factory, broken.id).status == DepositStatus.WAITING.value
    assert _deposit(session_factory, healthy.id).status == DepositStatus.CONFIRMED.value

    ledger.failing_addresses.clear()
    ledger.deposit(broken.address, SOL, sender=new_wallet())
    assert reconciler.run_cycle().confirmed == 1


def test_non_signing_sender_is_still_recorded(reconciler, ledger, session_factory, make_race, make_deposit):
    race = make_race()
    deposit = make_deposit(race.id)
    sender = new_wallet()
    ledger.deposit(deposit.address, SOL, sender=sender, sender_signs=False)

    reconciler.run_cycle()

    assert _deposit(session_factory, deposit.id).user_wallet == sender


class _BlockingLedger(FakeLedger):
    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_balance(self, address: str) -> int:
        self.entered.set()
        self.release.wait(5)
        return super().get_balance(address)


def test_overlapping_cycle_is_skipped(session_factory, test_settings, clock, make_race, make_deposit):
    race = make_race()
    make_deposit(race.id)
    ledger = _BlockingLedger()
    reconciler = DepositReconciler(ledger, session_factory, test_settings, clock=clock)

    worker = threading.Thread(target=reconciler.run_cycle)
    worker.start()
    try:
        assert ledger.entered.wait(5)
        summary = reconciler.run_cycle()
        assert summary.skipped
        assert summary.checked == 0
    finally:
        ledger.release.set()
        worker.join(5)
    assert not reconciler.run_cycle().skipped


def test_polling_task_stop_waits_for_in_flight_cycle():
    started = threading.Event()
    release = threading.Event()
    finished = threading.Event()

    def cycle():
        started.set()
        release.wait(5)
        finished.set()

    task = PollingTask(cycle, interval=0.01, name="test-poll")
    task.start()
    assert started.wait(5)

    stopper = threading.Thread(target=task.stop)
    stopper.start()
    time.sleep(0.05)
    assert stopper.is_alive()
    assert not finished.is_set()

    release.set()
    stopper.join(5)
    assert finished.is_set()
    assert not task.running


def test_polling_task_survives_failing_cycle():
    calls: list[int] = []
    recovered = threading.Event()

    def cycle():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        recovered.set()

    task = PollingTask(cycle, interval=0.01)
    task.start()
    try:
        assert recovered.wait(5)
    finally:
        task.stop(5)


def test_reconciler_start_and_stop(reconciler, ledger, session_factory, make_race, make_deposit):
    race = make_race()
    deposit = make_deposit(race.id)
    ledger.deposit(deposit.address, SOL, sender=new_wallet())

    reconciler.start(interval=0.01)
    try:
        event = reconciler.events.get(timeout=5)
    finally:
        reconciler.stop(5)

    assert isinstance(event, BetPlaced)
    assert _deposit(session_factory, deposit.id).status == DepositStatus.CONFIRMED.value
