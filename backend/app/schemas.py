from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Horse(BaseModel):
    horse_number: int
    name: str


class Race(BaseModel):
    id: str
    title: str
    status: str
    winner: int | None = None
    start_time: datetime | None = None
    created_at: datetime | None = None
    horses: list[Horse] = Field(default_factory=list)


class RaceList(BaseModel):
    total: int
    items: list[Race]


class HorsePool(BaseModel):
    horse_number: int
    name: str | None = None
    bets: int
    amount: float
    odds: float | None = None


class RacePools(BaseModel):
    race_id: str
    status: str
    total_pool: float
    pools: list[HorsePool]


class DepositAddressRequest(BaseModel):
    race_id: str = Field(min_length=1)
    horse_number: int = Field(ge=1)
    user_wallet: str | None = Field(default=None, description="Optional wallet the bettor expects to send from")

    @field_validator("user_wallet", mode="before")
    @classmethod
    def _blank_wallet(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class DepositAddress(BaseModel):
    """Issued deposit address. The custody key never leaves the service."""

    deposit_id: str
    address: str
    race_id: str
    horse_number: int
    expires_at: datetime
    min_bet: float
    max_bet: float


class BetSummary(BaseModel):
    id: str
    amount: float
    odds_at_placement: float | None = None
    winnings: float | None = None
    payout_status: str


class DepositStatus(BaseModel):
    deposit_id: str
    address: str
    race_id: str
    horse_number: int
    status: str
    user_wallet: str | None = None
    amount_received: float
    transaction_signature: str | None = None
    expires_at: datetime
    created_at: datetime | None = None
    resolved_at: datetime | None = None
    collection_signature: str | None = None
    bet: BetSummary | None = None


class BetRecord(BaseModel):
    id: str
    race_id: str
    horse_number: int
    user_wallet: str
    amount: float
    transaction_signature: str
    odds_at_placement: float | None = None
    winnings: float | None = None
    payout_status: str
    payout_signature: str | None = None
    created_at: datetime | None = None


class RaceCreateRequest(BaseModel):
    title: str = Field(min_length=1)
    horses: list[str] = Field(min_length=2)
    start_time: datetime | None = None


class SettleRequest(BaseModel):
    winner: int = Field(ge=1)


class WinnerPayout(BaseModel):
    bet_id: str
    user_wallet: str
    bet_amount: float
    winnings: float
    total_payout: float


class Settlement(BaseModel):
    race_id: str
    winning_horse: int
    total_pool: float
    winning_pool: float
    losing_pool: float
    house_cut: float
    distributed: float
    winners: list[WinnerPayout]


class DispatchSummary(BaseModel):
    processed: int
    failed: int
    skipped: int
    unconfirmed: int = 0
    total_amount: float


class RequeueResult(BaseModel):
    status: str
    payout_id: str | None = None
    refund_id: str | None = None


class TransferRecord(BaseModel):
    id: str
    user_wallet: str
    amount: float
    status: str
    transaction_signature: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None


class PayoutRecord(TransferRecord):
    bet_id: str


class RefundRecord(TransferRecord):
    deposit_id: str
    reason: str | None = None
    amount_sent: float | None = None


class TransferTotals(BaseModel):
    count: int = 0
    amount: float = 0.0


class AdminStats(BaseModel):
    """Race counts by status, the unsettled pool and outbound transfer totals by status."""

    races: dict[str, int]
    active_bets: int
    active_pool: float
    payouts: dict[str, TransferTotals]
    refunds: dict[str, TransferTotals]


class TreasuryBalance(BaseModel):
    address: str | None = None
    balance: float


class ConfigValue(BaseModel):
    value: str


class ConfigEntry(BaseModel):
    key: str
    value: str | None = None
