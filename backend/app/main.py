from __future__ import annotations

import secrets
from functools import lru_cache
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query

from . import schemas
from .core.config import Settings, get_settings, settings
from .core.keystore import EncryptedKeyStore
from .db import SessionLocal, init_db
from .services.betting_service import BettingService, OperationResult
from .services.payouts import PayoutDispatcher
from ledger.client import SolanaRpcClient

app = FastAPI(title="Racepool API", version="0.1.0", debug=settings.debug)


@app.on_event("startup")
def on_startup() -> None:
    """Create tables and announce plaintext key storage before serving traffic."""

    EncryptedKeyStore.from_settings(settings).warn_if_plaintext()
    init_db()


@lru_cache
def get_betting_service() -> BettingService:
    """Provide the process-wide betting facade wired to the configured ledger."""

    app_settings = get_settings()
    keystore = EncryptedKeyStore.from_settings(app_settings)
    client = SolanaRpcClient(
        rpc_url=str(app_settings.solana_rpc_url),
        timeout=app_settings.rpc_timeout_seconds,
        confirm_timeout=app_settings.confirm_timeout_seconds,
    )
    dispatcher = PayoutDispatcher.from_settings(app_settings, client, SessionLocal, keystore)
    return BettingService(SessionLocal, app_settings, keystore=keystore, dispatcher=dispatcher)


def require_admin(
    authorization: Annotated[str | None, Header()] = None,
    app_settings: Settings = Depends(get_settings),
) -> None:
    """Reject admin calls that do not carry the configured bearer token."""

    if not app_settings.admin_api_key:
        raise HTTPException(status_code=503, detail="Admin API is not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token, app_settings.admin_api_key):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _unwrap(result: OperationResult) -> Any:
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.error)
    return result.data


Service = Annotated[BettingService, Depends(get_betting_service)]
AdminOnly = [Depends(require_admin)]


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness check consumed by infrastructure monitors."""

    return {"status": "ok"}


@app.get("/races", response_model=schemas.RaceList, tags=["races"])
def list_races(
    service: Service,
    status: Annotated[str | None, Query(description="Race status filter", examples=["open"])] = None,
):
    items = _unwrap(service.list_races(status))
    return schemas.RaceList(total=len(items), items=items)


@app.get("/races/{race_id}/pools", response_model=schemas.RacePools, tags=["races"])
def race_pools(race_id: str, service: Service):
    """Current pool totals and indicative odds for every horse."""

    return _unwrap(service.race_pools(race_id))


@app.get("/races/{race_id}/bets", response_model=list[schemas.BetRecord], tags=["races"])
def race_bets(race_id: str, service: Service):
    return _unwrap(service.race_bets(race_id))


@app.post("/bets/deposit-address", response_model=schemas.DepositAddress, tags=["bets"])
def create_deposit_address(payload: schemas.DepositAddressRequest, service: Service):
    """Issue a single-use address; the first transfer it receives becomes the bet."""

    return _unwrap(service.allocate(payload.race_id, payload.horse_number, user_wallet=payload.user_wallet))


@app.get("/bets/status/{deposit_id}", response_model=schemas.DepositStatus, tags=["bets"])
def deposit_status(deposit_id: str, service: Service):
    return _unwrap(service.get_deposit_status(deposit_id))


@app.get("/bets/address/{address}", response_model=schemas.DepositStatus, tags=["bets"])
def deposit_by_address(address: str, service: Service):
    return _unwrap(service.deposit_by_address(address))


@app.get("/wallets/{wallet}/bets", response_model=list[schemas.BetRecord], tags=["bets"])
def wallet_bets(wallet: str, service: Service):
    """Most recent bets placed from ``wallet``."""

    return _unwrap(service.wallet_bets(wallet))


@app.post("/admin/races", response_model=schemas.Race, tags=["admin"], dependencies=AdminOnly)
def create_race(payload: schemas.RaceCreateRequest, service: Service):
    return _unwrap(service.create_race(payload.title, payload.horses, start_time=payload.start_time))


@app.post("/admin/races/{race_id}/open", response_model=schemas.Race, tags=["admin"], dependencies=AdminOnly)
def open_race(race_id: str, service: Service):
    return _unwrap(service.open_race(race_id))


@app.post("/admin/races/{race_id}/close", response_model=schemas.Race, tags=["admin"], dependencies=AdminOnly)
def close_race(race_id: str, service: Service):
    return _unwrap(service.close_race(race_id))


@app.post(
    "/admin/races/{race_id}/settle",
    response_model=schemas.Settlement,
    tags=["admin"],
    dependencies=AdminOnly,
)
def settle_race(race_id: str, payload: schemas.SettleRequest, service: Service):
    """Declare the winner and queue payouts. Settlement happens once per race."""

    return _unwrap(service.settle(race_id, payload.winner))


@app.post(
    "/admin/payouts/process",
    response_model=schemas.DispatchSummary,
    tags=["admin"],
    dependencies=AdminOnly,
)
def process_payouts(service: Service):
    return _unwrap(service.process_payouts())


@app.post(
    "/admin/refunds/process",
    response_model=schemas.DispatchSummary,
    tags=["admin"],
    dependencies=AdminOnly,
)
def process_refunds(service: Service):
    return _unwrap(service.process_refunds())


@app.post(
    "/admin/collect-deposits",
    response_model=schemas.DispatchSummary,
    tags=["admin"],
    dependencies=AdminOnly,
)
def collect_deposits(service: Service):
    return _unwrap(service.collect_deposits())


@app.post(
    "/admin/payouts/{payout_id}/requeue",
    response_model=schemas.RequeueResult,
    tags=["admin"],
    dependencies=AdminOnly,
)
def requeue_payout(payout_id: str, service: Service):
    return _unwrap(service.requeue_payout(payout_id))


@app.post(
    "/admin/refunds/{refund_id}/requeue",
    response_model=schemas.RequeueResult,
    tags=["admin"],
    dependencies=AdminOnly,
)
def requeue_refund(refund_id: str, service: Service):
    return _unwrap(service.requeue_refund(refund_id))


@app.get("/admin/stats", response_model=schemas.AdminStats, tags=["admin"], dependencies=AdminOnly)
def admin_stats(service: Service):
    return _unwrap(service.admin_stats())


@app.get("/admin/payouts", response_model=list[schemas.PayoutRecord], tags=["admin"], dependencies=AdminOnly)
def list_payouts(
    service: Service,
    status: Annotated[str | None, Query(description="Transfer status filter", examples=["failed"])] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
):
    return _unwrap(service.list_payouts(status, limit=limit))


@app.get("/admin/refunds", response_model=list[schemas.RefundRecord], tags=["admin"], dependencies=AdminOnly)
def list_refunds(
    service: Service,
    status: Annotated[str | None, Query(description="Transfer status filter", examples=["pending"])] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
):
    return _unwrap(service.list_refunds(status, limit=limit))


@app.get("/admin/deposits", response_model=list[schemas.DepositStatus], tags=["admin"], dependencies=AdminOnly)
def list_deposits(
    service: Service,
    status: Annotated[str | None, Query(description="Deposit status filter", examples=["waiting"])] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
):
    return _unwrap(service.list_deposits(status, limit=limit))


@app.get("/admin/bets", response_model=list[schemas.BetRecord], tags=["admin"], dependencies=AdminOnly)
def list_bets(
    service: Service,
    race_id: str | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 200,
):
    """Every bet on ``race_id``, or the most recent bets across races."""

    return _unwrap(service.list_bets(race_id, limit=limit))


@app.get("/admin/treasury", response_model=schemas.TreasuryBalance, tags=["admin"], dependencies=AdminOnly)
def treasury_balance(service: Service):
    return _unwrap(service.treasury_balance())


@app.get("/admin/config/{key}", response_model=schemas.ConfigEntry, tags=["admin"], dependencies=AdminOnly)
def get_config(key: str, service: Service):
    return _unwrap(service.get_config(key))


@app.put("/admin/config/{key}", response_model=schemas.ConfigEntry, tags=["admin"], dependencies=AdminOnly)
def set_config(key: str, payload: schemas.ConfigValue, service: Service):
    return _unwrap(service.set_config(key, payload.value))
