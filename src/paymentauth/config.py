"""Configuration surface for the payment auth gate."""
from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import PaymentConfigError

DEFAULT_CHALLENGE_VALIDITY_MS = 300_000
DEFAULT_REPLAY_WINDOW_MS = 300_000
DEFAULT_REPLAY_MAX_ENTRIES = 10_000


class PaymentAuthSettings(BaseSettings):
    """Gate configuration.

    Loaded from ``PAYMENTAUTH_*`` environment variables or a ``.env`` file,
    or constructed directly. Collaborators (verifier, broadcaster,
    confirmer) are passed to the gate itself, not stored here.
    """

    # Challenge labels
    method: str = "tempo"
    realm: str = "api"
    description: Optional[str] = None

    # Charge terms
    destination: str = ""
    asset: str = ""
    amount: str = ""

    # Timing
    challenge_validity_ms: int = Field(default=DEFAULT_CHALLENGE_VALIDITY_MS, gt=0)
    allowed_age_seconds: Optional[int] = Field(default=None, gt=0)

    # Replay protection
    replay_window_ms: int = Field(default=DEFAULT_REPLAY_WINDOW_MS, gt=0)
    replay_max_entries: int = Field(default=DEFAULT_REPLAY_MAX_ENTRIES, gt=0)

    # Shared state backend
    storage_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_namespace: str = "paymentauth:"

    # Block explorer URL template, e.g. "https://explore.example/tx/{txHash}"
    explorer_url: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_prefix="PAYMENTAUTH_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        v = v.strip()
        if not v:
            return v
        if not v.isdigit() or int(v) <= 0:
            raise ValueError("amount must be a positive integer in base units")
        return v

    @field_validator("explorer_url")
    @classmethod
    def validate_explorer_url(cls, v: Optional[str]) -> Optional[str]:
        if v and "{txHash}" not in v:
            raise ValueError("explorer_url must contain the {txHash} placeholder")
        return v or None

    @field_validator("method", "realm", "description")
    @classmethod
    def validate_header_text(cls, v: Optional[str]) -> Optional[str]:
        # Rendered into WWW-Authenticate, which must encode as latin-1
        if v is None:
            return v
        try:
            v.encode("latin-1")
        except UnicodeEncodeError:
            raise ValueError("must contain only latin-1 characters") from None
        if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in v):
            raise ValueError("must not contain control characters")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level

    def require_charge_terms(self) -> None:
        """Raise PaymentConfigError unless destination, asset and amount are set."""
        missing = [name for name in ("destination", "asset", "amount") if not getattr(self, name)]
        if missing:
            raise PaymentConfigError(
                "Payment gate misconfigured",
                details={"missing": missing},
            )

    def explorer_link(self, tx_hash: str) -> Optional[str]:
        if not self.explorer_url:
            return None
        return self.explorer_url.replace("{txHash}", tx_hash)

    def redacted(self) -> dict[str, Any]:
        """Settings as a dict that is safe to log."""
        data = self.model_dump()
        if "@" in data["redis_url"]:
            scheme, _, rest = data["redis_url"].partition("://")
            data["redis_url"] = f"{scheme}://[REDACTED]@{rest.rpartition('@')[2]}"
        return data


def build_settings(**overrides: Any) -> PaymentAuthSettings:
    """Construct settings, mapping validation failures to PaymentConfigError."""
    try:
        return PaymentAuthSettings(**overrides)
    except ValidationError as exc:
        raise PaymentConfigError(
            "Invalid configuration",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


@lru_cache
def load_settings() -> PaymentAuthSettings:
    """Load settings from the environment once per process."""
    return build_settings()


__all__ = [
    "DEFAULT_CHALLENGE_VALIDITY_MS",
    "DEFAULT_REPLAY_WINDOW_MS",
    "DEFAULT_REPLAY_MAX_ENTRIES",
    "PaymentAuthSettings",
    "build_settings",
    "load_settings",
]
