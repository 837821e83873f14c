# config.py
"""
FlipSOL engine: Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator


class ConfigError(RuntimeError):
    """Unrecoverable configuration problem; raised at startup only."""


class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".flipsol.env",
        env_prefix="",            # read raw names (e.g., RPC_URL)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ADMIN_TOKEN: Optional[str] = None
    ENGINE_ENABLED: bool = True

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def _norm_log_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()

    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]

    # =========================
    # Ledger / Authority
    # =========================
    RPC_URL: str = "https://api.devnet.solana.com"
    PROGRAM_ID: str = "BTU8kuz95iPH6XqBMp7a4VEsLhdco62s9H81Jt6G4GQL"
    # JSON byte array ("[12,34,...]") or base58; 64-byte keypair or 32-byte seed.
    # MUST be set in env for settlement and payouts.
    AUTHORITY_SECRET: Optional[str] = None

    RPC_TIMEOUT_S: float = 10.0
    CONFIRM_TIMEOUT_S: float = 45.0

    # =========================
    # Round timing
    # =========================
    ROUND_DURATION_MS: int = 60_000
    BETTING_WINDOW_MS: int = 60_000
    CHECK_INTERVAL_S: float = 30.0
    START_ROUND_DURATION_S: int = 60

    # ends_at values (unix seconds) below this come from legacy program versions
    MIN_VALID_ENDS_AT: int = 1_000_000_000

    @field_validator("START_ROUND_DURATION_S")
    @classmethod
    def _check_start_duration(cls, v: int) -> int:
        if not 0 < int(v) <= 86_400:
            raise ValueError("START_ROUND_DURATION_S must be within 1..86400")
        return int(v)

    @model_validator(mode="after")
    def _check_timing(self) -> "Settings":
        if self.ROUND_DURATION_MS <= 0:
            raise ValueError("ROUND_DURATION_MS must be > 0")
        if not 0 < self.BETTING_WINDOW_MS <= self.ROUND_DURATION_MS:
            raise ValueError("BETTING_WINDOW_MS must be within 1..ROUND_DURATION_MS")
        if self.CHECK_INTERVAL_S <= 0:
            raise ValueError("CHECK_INTERVAL_S must be > 0")
        return self

    # =========================
    # Distribution
    # =========================
    DISTRIBUTION_DELAY_S: float = 3.0     # let the settlement write propagate
    DISTRIBUTION_CONCURRENCY: int = 4     # nodes rate-limit; keep this small
    CREDIT_TIMEOUT_S: float = 60.0

    # =========================
    # Status
    # =========================
    MAX_RECENT_ERRORS: int = 10

    # =========================
    # Database (analytics mirror)
    # =========================
    DB_PATH: str = "/data/flipsol.db"

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def has_authority(self) -> bool:
        return bool((self.AUTHORITY_SECRET or "").strip())


# Instantiate global settings (values resolved from environment)
settings = Settings()
