from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.db import session_scope
from app.domain import ClassifiedTransfer
from app.main import app, get_betting_service
from app.repositories import DepositRepository, PayoutRepository
from app.services.betting_service import BettingService
from app.services.payouts import PayoutDispatcher
from conftest import new_wallet

ADMIN_TOKEN = "secret-token"
ADMIN = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def admin_settings(test_settings):
    return test_settings.model_copy(update={"admin_api_key": ADMIN_TOKEN})


@pytest.fixture
def client(session_factory, admin_settings, ledger, plaintext_keystore, clock):
    """Test client bound to the in-memory database; overrides are cleared afterwards."""
    dispatcher = PayoutDispatcher(ledger, session_factory, plaintext_keystore)
    service = BettingService(
        session_factory,
        admin_settings,
        keystore=plaintext_keystore,
        dispatcher=dispatcher,
        clock=clock,
    )
    app.dependency_overrides[get_betting_service] = lambda: service
    app.dependency_overrides[get_settings] = lambda: admin_settings
    yield TestClient(app)
    app.dependency_overrides.clear()


def _open_race(client, horses=("Comet", "Blaze", "Dancer")) -> dict:
    response = client.post("/admin/races", json={"title": "Spring Cup", "horses": list(horses)}, headers=ADMIN)
    assert response.status_code == 200
    race = response.json()
    response = client.post(f"/admin/races/{race['id']}/open", headers=ADMIN)
    assert response.status_code == 200
    return response.json()


def test_healthcheck(client):
    """Verify the healthcheck endpoint returns a successful response."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_admin_routes_require_bearer_token(client):
    assert client.post("/admin/races", json={"title": "Cup", "horses": ["A", "B"]}).status_code == 401
    wrong = {"Authorization": "Bearer nope"}
    assert client.get("/admin/config/current_race", headers=wrong).status_code == 401


def test_admin_routes_disabled_without_key(client, test_settings):
    app.dependency_overrides[get_settings] = lambda: test_settings
    response = client.get("/admin/config/current_race", headers=ADMIN)
    assert response.status_code == 503


def test_race_lifecycle(client):
    race = _open_race(client)
    assert race["status"] == "open"
    assert [horse["horse_number"] for horse in race["horses"]] == [1, 2, 3]

    listed = client.get("/races", params={"status": "open"}).json()
    assert listed["total"] == 1
    assert listed["items"][0]["id"] == race["id"]

    closed = client.post(f"/admin/races/{race['id']}/close", headers=ADMIN)
    assert closed.json()["status"] == "closed"
    reopened = client.post(f"/admin/races/{race['id']}/open", headers=ADMIN)
    assert reopened.status_code == 400
    assert "Cannot move race" in reopened.json()["detail"]


def test_unknown_status_filter_is_rejected(client):
    response = client.get("/races", params={"status": "running"})
    assert response.status_code == 400


def test_race_needs_two_horses(client):
    response = client.post("/admin/races", json={"title": "Cup", "horses": ["Solo"]}, headers=ADMIN)
    assert response.status_code == 422


def test_deposit_address_flow(client, ledger):
    race = _open_race(client)

    response = client.post("/bets/deposit-address", json={"race_id": race["id"], "horse_number": 2})
    assert response.status_code == 200
    issued = response.json()
    assert issued["horse_number"] == 2
    assert issued["min_bet"] == pytest.approx(0.01)
    assert "private_key" not in issued

    status = client.get(f"/bets/status/{issued['deposit_id']}")
    assert status.status_code == 200
    body = status.json()
    assert body["status"] == "waiting"
    assert body["address"] == issued["address"]
    assert body["bet"] is None


def test_deposit_address_validation(client):
    race = _open_race(client)

    bad_horse = client.post("/bets/deposit-address", json={"race_id": race["id"], "horse_number": 9})
    assert bad_horse.status_code == 400
    assert bad_horse.json()["detail"] == "Invalid horse number. Must be 1-3"

    bad_wallet = client.post(
        "/bets/deposit-address",
        json={"race_id": race["id"], "horse_number": 1, "user_wallet": "nope"},
    )
    assert bad_wallet.status_code == 400

    blank_wallet = client.post(
        "/bets/deposit-address",
        json={"race_id": race["id"], "horse_number": 1, "user_wallet": "  "},
    )
    assert blank_wallet.status_code == 200


def test_unknown_deposit(client):
    response = client.get("/bets/status/missing")
    assert response.status_code == 400
    assert response.json()["detail"] == "Deposit not found"


def test_pools_and_settlement(client, make_deposit, place_bet):
    race = _open_race(client)
    winner_wallet = new_wallet()
    place_bet(race["id"], 1, 10.0, wallet=winner_wallet)
    place_bet(race["id"], 2, 5.0)

    pools = client.get(f"/races/{race['id']}/pools").json()
    assert pools["total_pool"] == pytest.approx(15.0)
    by_horse = {pool["horse_number"]: pool for pool in pools["pools"]}
    assert by_horse[1]["odds"] == pytest.approx(1.5)
    assert by_horse[3]["odds"] is None

    settled = client.post(f"/admin/races/{race['id']}/settle", json={"winner": 1}, headers=ADMIN)
    assert settled.status_code == 200
    body = settled.json()
    assert body["house_cut"] == pytest.approx(0.25)
    [payout] = body["winners"]
    assert payout["user_wallet"] == winner_wallet
    assert payout["total_payout"] == pytest.approx(14.75)

    again = client.post(f"/admin/races/{race['id']}/settle", json={"winner": 2}, headers=ADMIN)
    assert again.status_code == 400
    assert "already been settled" in again.json()["detail"]


def test_dispatch_without_treasury_reports_error(client):
    response = client.post("/admin/payouts/process", headers=ADMIN)
    assert response.status_code == 400
    assert response.json()["detail"] == "Treasury wallet not configured"

    refunds = client.post("/admin/refunds/process", headers=ADMIN)
    assert refunds.status_code == 200
    assert refunds.json()["processed"] == 0


def test_requeue_unknown_payout(client):
    response = client.post("/admin/payouts/missing/requeue", headers=ADMIN)
    assert response.status_code == 400
    assert response.json()["detail"] == "Payout not found"


def test_config_roundtrip(client):
    assert client.get("/admin/config/current_race", headers=ADMIN).json() == {"key": "current_race", "value": None}
    response = client.put("/admin/config/current_race", json={"value": "abc"}, headers=ADMIN)
    assert response.status_code == 200
    assert client.get("/admin/config/current_race", headers=ADMIN).json()["value"] == "abc"


def test_bet_listings_by_race_and_wallet(client, place_bet):
    race = _open_race(client)
    wallet = new_wallet()
    place_bet(race["id"], 1, 2.0, wallet=wallet)
    place_bet(race["id"], 2, 1.0)

    race_bets = client.get(f"/races/{race['id']}/bets")
    assert race_bets.status_code == 200
    assert sorted(bet["amount"] for bet in race_bets.json()) == [1.0, 2.0]

    mine = client.get(f"/wallets/{wallet}/bets").json()
    assert [bet["amount"] for bet in mine] == [2.0]
    assert mine[0]["race_id"] == race["id"]
    assert mine[0]["payout_status"] == "pending"

    invalid = client.get("/wallets/nope/bets")
    assert invalid.status_code == 400
    assert invalid.json()["detail"] == "Invalid wallet address"
    assert client.get("/races/missing/bets").json()["detail"] == "Race not found"

    assert client.get("/admin/bets").status_code == 401
    assert len(client.get("/admin/bets", params={"race_id": race["id"]}, headers=ADMIN).json()) == 2
    assert len(client.get("/admin/bets", headers=ADMIN).json()) == 2


def test_deposit_lookup_by_address(client):
    race = _open_race(client)
    issued = client.post("/bets/deposit-address", json={"race_id": race["id"], "horse_number": 1}).json()

    found = client.get(f"/bets/address/{issued['address']}")
    assert found.status_code == 200
    body = found.json()
    assert body["deposit_id"] == issued["deposit_id"]
    assert body["status"] == "waiting"
    assert "private_key" not in body

    missing = client.get(f"/bets/address/{new_wallet()}")
    assert missing.status_code == 400
    assert missing.json()["detail"] == "Deposit not found"


def test_admin_deposit_listing(client):
    race = _open_race(client)
    for horse in (1, 2):
        client.post("/bets/deposit-address", json={"race_id": race["id"], "horse_number": horse})

    waiting = client.get("/admin/deposits", params={"status": "waiting"}, headers=ADMIN)
    assert waiting.status_code == 200
    assert sorted(deposit["horse_number"] for deposit in waiting.json()) == [1, 2]
    assert all("private_key" not in deposit for deposit in waiting.json())
    assert client.get("/admin/deposits", params={"status": "confirmed"}, headers=ADMIN).json() == []
    assert client.get("/admin/deposits", params={"status": "bogus"}, headers=ADMIN).status_code == 400


def test_admin_transfer_listings_and_stats(client, session_factory, make_deposit, place_bet):
    race = _open_race(client)
    winner = new_wallet()
    place_bet(race["id"], 1, 10.0, wallet=winner)
    place_bet(race["id"], 2, 5.0)
    other = _open_race(client)
    place_bet(other["id"], 1, 3.0)
    assert client.post(f"/admin/races/{race['id']}/settle", json={"winner": 1}, headers=ADMIN).status_code == 200

    rejected = make_deposit(other["id"])
    with session_scope(session_factory) as session:
        repo = DepositRepository(session)
        repo.create_refund(
            repo.get_deposit(rejected.id),
            ClassifiedTransfer(signature="late-1", sender=new_wallet(), amount=0.005),
            reason="Below minimum bet",
        )

    [payout] = client.get("/admin/payouts", params={"status": "pending"}, headers=ADMIN).json()
    assert payout["user_wallet"] == winner
    assert payout["amount"] == pytest.approx(14.75)
    assert client.get("/admin/payouts", params={"status": "failed"}, headers=ADMIN).json() == []
    assert client.get("/admin/payouts", params={"status": "lost"}, headers=ADMIN).status_code == 400

    [refund] = client.get("/admin/refunds", headers=ADMIN).json()
    assert refund["status"] == "pending"
    assert refund["reason"] == "Below minimum bet"
    assert refund["deposit_id"] == rejected.id
    assert refund["amount_sent"] is None

    stats = client.get("/admin/stats", headers=ADMIN).json()
    assert stats["races"] == {"completed": 1, "open": 1}
    assert stats["active_bets"] == 1
    assert stats["active_pool"] == pytest.approx(3.0)
    assert stats["payouts"]["pending"] == {"count": 1, "amount": pytest.approx(14.75)}
    assert stats["refunds"]["pending"] == {"count": 1, "amount": pytest.approx(0.005)}


def test_requeue_resolves_unconfirmed_payout_from_ledger(client, ledger, session_factory, place_bet):
    race = _open_race(client)
    place_bet(race["id"], 1, 1.0)
    client.post(f"/admin/races/{race['id']}/settle", json={"winner": 1}, headers=ADMIN)
    [payout] = client.get("/admin/payouts", headers=ADMIN).json()
    with session_scope(session_factory) as session:
        transfers = PayoutRepository(session)
        transfers.mark_unconfirmed(
            transfers.get_payout(payout["id"]),
            signature="sig-stuck",
            error="Transaction sig-stuck was not confirmed in time",
        )

    pending_outcome = client.post(f"/admin/payouts/{payout['id']}/requeue", headers=ADMIN)
    assert pending_outcome.status_code == 400
    assert "unconfirmed transaction sig-stuck" in pending_outcome.json()["detail"]

    ledger.signature_statuses["sig-stuck"] = "confirmed"
    response = client.post(f"/admin/payouts/{payout['id']}/requeue", headers=ADMIN)
    assert response.json() == {"status": "completed", "payout_id": payout["id"], "refund_id": None}
    [listed] = client.get("/admin/payouts", params={"status": "completed"}, headers=ADMIN).json()
    assert listed["transaction_signature"] == "sig-stuck"
