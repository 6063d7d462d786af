from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


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
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


def _parse_backoff(value: Any, *, env_name: str, default: list[float]) -> list[float]:
    if value in (None, "", []):
        return list(default)
    if isinstance(value, str):
        tokens = [token.strip() for token in value.split(",") if token.strip()]
        if not tokens:
            raise ValueError(f"{env_name} must contain at least one value")
        value = tokens
    if isinstance(value, (list, tuple)):
        backoff: list[float] = []
        for item in value:
            try:
                delay = float(item)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{env_name} entries must be numeric") from exc
            if delay <= 0:
                raise ValueError(f"{env_name} entries must be positive")
            backoff.append(delay)
        if not backoff:
            raise ValueError(f"{env_name} must contain at least one value")
        return backoff
    raise ValueError(
        f"{env_name} must be provided as a comma-separated string or list of numbers"
    )


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/ledger.db",
        description="SQLAlchemy compatible database URL",
    )
    production_database_url: AnyUrl | str | None = Field(
        default=None,
        description="Pooled Postgres connection string used when ENVIRONMENT=production",
    )
    rpc_url: AnyUrl | str = Field(
        default="https://forno.celo.org",
        description="CELO JSON-RPC endpoint used as the log source",
    )
    rpc_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout applied to every JSON-RPC request",
        gt=0,
    )
    core_contract_address: str = Field(
        default="0x35f61008878b85B4239C1EF714989B236757a283",
        description="Prediction market core contract (MarketCreated, SharesBought, MarketResolved)",
    )
    claims_contract_address: str | None = Field(
        default="0x2FDd27190d3A7EB376f06D391d7e0F4fF7811350",
        description="Claims contract (WinningsClaimed, CreatorFeeClaimed); blank disables claim tracking",
    )
    start_block: int | None = Field(
        default=None,
        description="First block to scan when no cursor exists; blank triggers deployment-block discovery",
        ge=0,
    )
    confirmation_lag: int = Field(
        default=3,
        description="Number of most recent blocks left unprocessed to absorb shallow reorgs",
        ge=0,
    )
    max_block_range: int = Field(
        default=2000,
        description="Largest block window requested from the RPC in a single eth_getLogs call",
        ge=1,
    )
    poll_interval_seconds: float = Field(
        default=10.0,
        description="Delay between event poller cycles",
        gt=0,
    )
    reconciliation_interval_seconds: float = Field(
        default=300.0,
        description="Delay between duplicate-participant reconciliation sweeps",
        gt=0,
    )
    enable_background_workers: bool = Field(
        default=False,
        description="Start the poller and reconciliation workers alongside the API process",
    )
    rpc_retry_attempts: int = Field(
        default=4,
        description="Number of attempts for a JSON-RPC call that fails with a transient error",
        ge=1,
    )
    rpc_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [1.0, 2.0, 4.0, 8.0],
        description="Comma-separated list or array of backoff delays (seconds) between RPC retries",
    )
    rpc_retry_backoff_cap_seconds: float = Field(
        default=30.0,
        description="Upper bound for a single RPC backoff delay including jitter",
        gt=0,
    )
    block_timestamp_cache_size: int = Field(
        default=4096,
        description="Most recent block timestamps kept in memory by the RPC client",
        ge=1,
    )
    persistence_retry_attempts: int = Field(
        default=3,
        description="Number of attempts to retry a participant write when the database reports a conflict",
        ge=1,
    )
    unhealthy_after_failures: int = Field(
        default=5,
        description="Consecutive failed poll cycles after which the poller reports itself unhealthy",
        ge=1,
    )
    ledger_api_base_url: AnyUrl | str = Field(
        default="http://localhost:8000",
        description="Base URL of the ledger read API used by client-side state helpers",
    )

    @field_validator("database_url", "production_database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("core_contract_address", "claims_contract_address", mode="before")
    @classmethod
    def _validate_address(cls, value: Any) -> Any:
        if value is None:
            return None
        candidate = str(value).strip()
        if not candidate:
            return None
        if not candidate.startswith("0x") or len(candidate) != 42:
            raise ValueError("Contract addresses must be 0x-prefixed 20-byte hex strings")
        try:
            int(candidate[2:], 16)
        except ValueError as exc:
            raise ValueError("Contract addresses must be hexadecimal") from exc
        return candidate.lower()

    @field_validator("rpc_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_rpc_backoff(cls, value: Any) -> list[float]:
        return _parse_backoff(
            value, env_name="RPC_RETRY_BACKOFF_SECONDS", default=[1.0, 2.0, 4.0, 8.0]
        )

    @property
    def resolved_database_url(self) -> str:
        environment = self.environment.lower()
        if environment == "production":
            if not self.production_database_url:
                raise ValueError(
                    "PRODUCTION_DATABASE_URL must be set when ENVIRONMENT=production"
                )
            return _ensure_sqlalchemy_postgres_scheme(str(self.production_database_url))
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def rpc_retry_backoff_schedule(self) -> tuple[float, ...]:
        sequence = tuple(float(value) for value in self.rpc_retry_backoff_seconds)
        if not sequence:
            return (1.0,)
        return sequence

    @property
    def tracked_contracts(self) -> dict[str, str]:
        """Map contract role (``core``/``claims``) to its lowercase address."""

        contracts = {"core": self.core_contract_address}
        if self.claims_contract_address:
            contracts["claims"] = self.claims_contract_address
        return contracts


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
