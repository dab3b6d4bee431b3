"""HTTP 402 payment authentication gate."""

from .challenge_store import ChallengeEntry, ChallengeStore
from .coalescer import VerificationCoalescer
from .config import PaymentAuthSettings, build_settings, load_settings
from .encoding import (
    format_authorization,
    format_receipt,
    format_www_authenticate,
    generate_challenge_id,
    is_valid_tx_hash,
    parse_authorization,
    parse_receipt,
    parse_www_authenticate,
)
from .exceptions import (
    BroadcastError,
    InvalidTransactionHashError,
    MalformedProofError,
    NetworkError,
    PaymentAuthError,
    PaymentConfigError,
    PaymentExpiredError,
    PaymentMethodUnsupportedError,
    PaymentRequiredError,
    PaymentVerificationFailedError,
    ReplayError,
)
from .gate import GateDecision, GateState, PaymentGate, default_reference_resolver
from .logging_config import LogContext, setup_logging
from .middleware import (
    PaymentAuthMiddleware,
    PaymentAuthMiddlewareConfig,
    PaymentDenied,
    install_payment_handlers,
    render_decision,
    require_payment,
)
from .replay import ReplayProtection
from .storage import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore, create_store
from .types import (
    BroadcastResult,
    ChargeRequest,
    ConfirmationResult,
    PaymentChallenge,
    PaymentContext,
    PaymentCredential,
    PaymentPayload,
    PaymentReceipt,
    VerificationResult,
)

__all__ = [
    # Gate
    "PaymentGate",
    "GateDecision",
    "GateState",
    "default_reference_resolver",
    # Components
    "ChallengeEntry",
    "ChallengeStore",
    "ReplayProtection",
    "VerificationCoalescer",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "create_store",
    # Codec
    "format_authorization",
    "format_receipt",
    "format_www_authenticate",
    "generate_challenge_id",
    "is_valid_tx_hash",
    "parse_authorization",
    "parse_receipt",
    "parse_www_authenticate",
    # Types
    "BroadcastResult",
    "ChargeRequest",
    "ConfirmationResult",
    "PaymentChallenge",
    "PaymentContext",
    "PaymentCredential",
    "PaymentPayload",
    "PaymentReceipt",
    "VerificationResult",
    # Config and logging
    "PaymentAuthSettings",
    "build_settings",
    "load_settings",
    "LogContext",
    "setup_logging",
    # HTTP
    "PaymentAuthMiddleware",
    "PaymentAuthMiddlewareConfig",
    "PaymentDenied",
    "install_payment_handlers",
    "render_decision",
    "require_payment",
    # Errors
    "PaymentAuthError",
    "PaymentConfigError",
    "PaymentRequiredError",
    "MalformedProofError",
    "InvalidTransactionHashError",
    "PaymentMethodUnsupportedError",
    "PaymentVerificationFailedError",
    "PaymentExpiredError",
    "ReplayError",
    "NetworkError",
    "BroadcastError",
]
