"""Exception hierarchy for the payment auth gate.

Every gate rejection maps to one of these classes. Each carries:
- error_code: machine-readable code (e.g. "MALFORMED_PROOF")
- http_status: status the transport should render
- title: short human label rendered in the ``error`` field
- retryable: whether a client may retry without changing its request
- to_dict(): JSON body for HTTP responses

Usage:
    from paymentauth.exceptions import MalformedProofError

    try:
        credential = parse_authorization(header)
    except MalformedProofError as exc:
        return JSONResponse(exc.to_dict(), status_code=exc.http_status)
"""
from __future__ import annotations

from typing import Any, Optional


class PaymentAuthError(Exception):
    """Base exception for all payment auth errors."""

    error_code: str = "PAYMENT_AUTH_ERROR"
    http_status: int = 500
    title: str = "Payment Error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        http_status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        if http_status is not None:
            self.http_status = http_status
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result: dict[str, Any] = {
            "error": self.title,
            "code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result


class PaymentConfigError(PaymentAuthError):
    """Gate configuration is invalid. Raised at construction time."""

    error_code = "PAYMENT_CONFIG_ERROR"
    http_status = 503
    title = "Service Unavailable"


class PaymentRequiredError(PaymentAuthError):
    """No payment credential was presented."""

    error_code = "PAYMENT_REQUIRED"
    http_status = 402
    title = "Payment Required"
    retryable = True

    def __init__(self, message: str = "Payment required", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class MalformedProofError(PaymentAuthError):
    """Authorization header or payload is structurally invalid."""

    error_code = "MALFORMED_PROOF"
    http_status = 400
    title = "Bad Request"

    def __init__(self, message: str = "Malformed payment proof", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class InvalidTransactionHashError(MalformedProofError):
    """Legacy ``Tempo <txHash>`` credential does not carry a valid hash."""

    error_code = "INVALID_TX_HASH"

    def __init__(self, message: str = "Invalid transaction hash format", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class PaymentMethodUnsupportedError(PaymentAuthError):
    """Credential names a payment method this gate does not accept."""

    error_code = "PAYMENT_METHOD_UNSUPPORTED"
    http_status = 400
    title = "Bad Request"

    def __init__(self, message: str = "Payment method not supported", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class PaymentVerificationFailedError(PaymentAuthError):
    """Challenge unknown or used, or the proof did not verify."""

    error_code = "PAYMENT_VERIFICATION_FAILED"
    http_status = 401
    title = "Unauthorized"
    retryable = True

    def __init__(self, message: str = "Payment verification failed", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)

    @classmethod
    def unknown_challenge(cls) -> "PaymentVerificationFailedError":
        return cls("Unknown or expired challenge ID", error_code="UNKNOWN_CHALLENGE")

    @classmethod
    def challenge_used(cls) -> "PaymentVerificationFailedError":
        return cls("Challenge has already been used", error_code="CHALLENGE_ALREADY_USED")

    @classmethod
    def verification_failed(cls, reason: Optional[str] = None) -> "PaymentVerificationFailedError":
        # The existing challenge stays valid, so this renders as 402 rather than 401.
        err = cls(
            reason or "Transaction verification failed",
            error_code="VERIFICATION_FAILED",
            http_status=402,
        )
        err.title = "Payment Required"
        return err


class PaymentExpiredError(PaymentAuthError):
    """Challenge has expired."""

    error_code = "PAYMENT_EXPIRED"
    http_status = 402
    title = "Payment Required"
    retryable = True

    def __init__(self, message: str = "Challenge has expired", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class ReplayError(PaymentAuthError):
    """Reference was already accepted, or is being verified, inside the window."""

    error_code = "REPLAY_ERROR"
    http_status = 402
    title = "Payment Required"

    def __init__(self, reference: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", None) or {}
        details["reference"] = reference
        super().__init__(
            "Transaction has already been processed or is currently being verified",
            details=details,
            **kwargs,
        )
        self.reference = reference


class NetworkError(PaymentAuthError):
    """Verifier infrastructure failed. Retrying with the same proof is sensible."""

    error_code = "NETWORK_ERROR"
    http_status = 503
    title = "Service Temporarily Unavailable"
    retryable = True

    def __init__(
        self,
        message: str = "Payment verification failed due to infrastructure error",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)


class BroadcastError(NetworkError):
    """Broadcasting the verified transaction failed for this request."""

    error_code = "BROADCAST_FAILED"
    http_status = 500
    title = "Internal Server Error"

    def __init__(self, reason: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(f"Broadcast failed: {reason or 'unknown error'}", **kwargs)


__all__ = [
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
