from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_ENCRYPTION_SECRET_LENGTH = 32


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("sslmode", "require")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode and SQL echo")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    log_level: str = Field(default="INFO", description="Log level used by command line entry points")
    database_url: AnyUrl | str = Field(
        default="sqlite:///./data/racepool.db",
        description="SQLAlchemy compatible database URL",
    )
    solana_rpc_url: AnyUrl | str = Field(
        default="https://api.devnet.solana.com",
        description="JSON-RPC endpoint of the Solana cluster holding deposits and treasury",
    )
    rpc_timeout_seconds: float = Field(
        default=10.0,
        description="Per-request timeout applied to every ledger RPC call",
        gt=0,
    )
    confirm_timeout_seconds: float = Field(
        default=60.0,
        description="How long to wait for a submitted transaction to reach confirmed commitment",
        gt=0,
    )
    min_bet: float = Field(default=0.01, description="Smallest accepted wager in SOL", gt=0)
    max_bet: float = Field(default=20.0, description="Largest accepted wager in SOL", gt=0)
    poll_interval_seconds: float = Field(
        default=5.0,
        description="Seconds between deposit reconciliation cycles",
        gt=0,
    )
    deposit_expiry_minutes: int = Field(
        default=30,
        description="Minutes a freshly allocated deposit address accepts a transfer",
        ge=1,
    )
    house_edge_percent: float = Field(
        default=5.0,
        description="Percentage of the losing pool retained by the house",
        ge=0,
        lt=100,
    )
    recent_transaction_limit: int = Field(
        default=5,
        description="Number of recent signatures inspected per deposit address each cycle",
        ge=1,
    )
    signature_cache_size: int = Field(
        default=10_000,
        description="Capacity of the in-memory processed signature set",
        ge=1,
    )
    reconciler_max_workers: int = Field(
        default=4,
        description="Number of deposit addresses queried against the ledger concurrently",
        ge=1,
    )
    encryption_secret: str | None = Field(
        default=None,
        description="Passphrase protecting deposit private keys at rest (minimum 32 characters)",
    )
    treasury_private_key: str | None = Field(
        default=None,
        description="Base58 secret key of the treasury wallet that funds payouts",
    )
    operations_wallet_address: str | None = Field(
        default=None,
        description="Optional secondary wallet receiving a share of collected deposits",
    )
    operations_split_percent: float = Field(
        default=0.0,
        description="Percentage of each collected deposit routed to the operations wallet",
        ge=0,
        le=100,
    )
    network_fee_lamports: int = Field(
        default=5000,
        description="Lamports reserved for the network fee when sweeping or refunding a deposit address",
        ge=0,
    )
    payout_require_full_funding: bool = Field(
        default=True,
        description="Refuse to start a payout batch when the treasury cannot cover every pending payout",
    )
    admin_api_key: str | None = Field(
        default=None,
        description="Bearer token required by admin routes (admin routes are disabled when unset)",
    )

    @field_validator("encryption_secret", "treasury_private_key", "admin_api_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("encryption_secret")
    @classmethod
    def _validate_encryption_secret(cls, value: str | None) -> str | None:
        if value is not None and len(value) < MIN_ENCRYPTION_SECRET_LENGTH:
            raise ValueError(
                f"ENCRYPTION_SECRET must be at least {MIN_ENCRYPTION_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_url(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @model_validator(mode="after")
    def _validate_bet_limits(self) -> "Settings":
        if self.min_bet > self.max_bet:
            raise ValueError("MIN_BET must not exceed MAX_BET")
        return self

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def house_edge(self) -> float:
        return self.house_edge_percent / 100

    @property
    def encryption_enabled(self) -> bool:
        return self.encryption_secret is not None


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
