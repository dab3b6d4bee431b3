"""Wire-level records and collaborator interfaces for the payment auth gate."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Protocol

PayloadType = Literal["transaction", "keyAuthorization"]
PAYLOAD_TYPES: tuple[str, ...] = ("transaction", "keyAuthorization")

INTENT_CHARGE = "charge"


@dataclass(slots=True)
class ChargeRequest:
    """Payment terms for intent="charge"."""
    amount: str  # Base units, stringified integer
    asset: str  # Token identifier
    destination: str  # Recipient identifier
    expires: str  # ISO-8601

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": self.amount,
            "asset": self.asset,
            "destination": self.destination,
            "expires": self.expires,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChargeRequest":
        return cls(
            amount=str(data["amount"]),
            asset=str(data["asset"]),
            destination=str(data["destination"]),
            expires=str(data["expires"]),
        )


@dataclass(slots=True)
class PaymentChallenge:
    """Server-issued challenge rendered in WWW-Authenticate."""
    id: str
    realm: str
    method: str
    intent: str
    request: ChargeRequest
    expires: str
    description: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "realm": self.realm,
            "method": self.method,
            "intent": self.intent,
            "request": self.request.to_dict(),
            "expires": self.expires,
        }
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentChallenge":
        return cls(
            id=data["id"],
            realm=data["realm"],
            method=data["method"],
            intent=data["intent"],
            request=ChargeRequest.from_dict(data["request"]),
            expires=data["expires"],
            description=data.get("description"),
        )


@dataclass(slots=True)
class PaymentPayload:
    type: str
    signature: str  # Hex-encoded signed data


@dataclass(slots=True)
class PaymentCredential:
    """Client credential carried in the Authorization header."""
    id: str
    payload: PaymentPayload
    source: Optional[str] = None  # Optional payer DID

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "payload": {"type": self.payload.type, "signature": self.payload.signature},
        }
        if self.source is not None:
            data["source"] = self.source
        return data


@dataclass(slots=True, frozen=True)
class PaymentReceipt:
    """Settlement receipt rendered in the Payment-Receipt header."""
    status: Literal["success", "failed"]
    method: str
    timestamp: str
    reference: str
    block_number: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status,
            "method": self.method,
            "timestamp": self.timestamp,
            "reference": self.reference,
        }
        if self.block_number is not None:
            data["blockNumber"] = self.block_number
        return data


@dataclass(slots=True)
class VerificationResult:
    valid: bool
    error: Optional[str] = None
    payer: Optional[str] = None


@dataclass(slots=True)
class BroadcastResult:
    success: bool
    transaction_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass(slots=True)
class ConfirmationResult:
    block_number: Optional[int] = None


@dataclass(slots=True)
class PaymentContext:
    """Exposed to the protected handler after a successful payment."""
    paid: bool
    receipt: PaymentReceipt
    tx_hash: str
    block_number: Optional[str] = None
    payer: Optional[str] = None
    explorer: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "paid": self.paid,
            "receipt": self.receipt.to_dict(),
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "payer": self.payer,
        }
        if self.explorer is not None:
            data["explorer"] = self.explorer
        data.update(self.extra)
        return data


class PaymentVerifier(Protocol):
    """Checks a signed proof against the charge terms on a ledger.

    Must be safe to call concurrently for different proofs and idempotent for
    the same proof.
    """

    async def __call__(
        self,
        signed_proof: str,
        request: ChargeRequest,
        *,
        max_age_seconds: Optional[int] = None,
    ) -> VerificationResult:
        ...


class TransactionBroadcaster(Protocol):
    async def __call__(self, signed_proof: str) -> BroadcastResult:
        ...


class TransactionConfirmer(Protocol):
    async def __call__(self, tx_hash: str) -> ConfirmationResult:
        ...


class ReferenceResolver(Protocol):
    def __call__(self, payload: PaymentPayload) -> str:
        ...


__all__ = [
    "PayloadType",
    "PAYLOAD_TYPES",
    "INTENT_CHARGE",
    "ChargeRequest",
    "PaymentChallenge",
    "PaymentPayload",
    "PaymentCredential",
    "PaymentReceipt",
    "VerificationResult",
    "BroadcastResult",
    "ConfirmationResult",
    "PaymentContext",
    "PaymentVerifier",
    "TransactionBroadcaster",
    "TransactionConfirmer",
    "ReferenceResolver",
]
