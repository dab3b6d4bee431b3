"""Payment gate state machine.

Drives one request through challenge issuance, credential validation,
replay reservation, coalesced verification, optional broadcast and receipt
issuance. The result is a transport-agnostic ``GateDecision`` that an HTTP
adapter renders; collaborator failures never escape as exceptions.

Flow for ``Authorization: Payment <credential>``:
1. Parse the credential (400 on malformed input)
2. Resolve the challenge: unknown (401), used (401), expired (402)
3. Check the payload type (400)
4. Reserve the transaction reference (402 on replay)
5. Verify through the coalescer (503 on infra error, 402 on rejection)
6. Consume the challenge, broadcast, commit the reference (500 on broadcast
   failure, with the challenge and reference released for retry)
7. Build the receipt (200)
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Optional

from web3 import Web3

from .challenge_store import ChallengeStore, isoformat, utcnow
from .coalescer import VerificationCoalescer
from .config import PaymentAuthSettings
from .encoding import (
    PAYMENT_RECEIPT_HEADER,
    PAYMENT_SCHEME,
    TEMPO_SCHEME,
    WWW_AUTHENTICATE_HEADER,
    format_receipt,
    format_www_authenticate,
    is_valid_tx_hash,
    parse_authorization,
)
from .exceptions import (
    BroadcastError,
    InvalidTransactionHashError,
    MalformedProofError,
    NetworkError,
    PaymentAuthError,
    PaymentExpiredError,
    PaymentMethodUnsupportedError,
    PaymentRequiredError,
    PaymentVerificationFailedError,
    ReplayError,
)
from .logging_config import LogContext
from .replay import ReplayProtection
from .storage import InMemoryKeyValueStore, KeyValueStore, create_store
from .types import (
    PAYLOAD_TYPES,
    BroadcastResult,
    ChargeRequest,
    PaymentContext,
    PaymentPayload,
    PaymentReceipt,
    PaymentVerifier,
    ReferenceResolver,
    TransactionBroadcaster,
    TransactionConfirmer,
    VerificationResult,
)

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    """Terminal states of one pass through the gate."""

    CHALLENGE_ISSUED = "challenge_issued"
    MALFORMED = "malformed"
    UNKNOWN_CHALLENGE = "unknown_challenge"
    USED_CHALLENGE = "used_challenge"
    EXPIRED_CHALLENGE = "expired_challenge"
    INVALID_PAYLOAD = "invalid_payload"
    REPLAYED = "replayed"
    VERIFICATION_FAILED = "verification_failed"
    INFRA_ERROR = "infra_error"
    BROADCAST_FAILED = "broadcast_failed"
    AUTHORIZED = "authorized"


@dataclass(slots=True)
class GateDecision:
    """What the transport should render for this request."""
    state: GateState
    status: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    payment: Optional[PaymentContext] = None

    @property
    def authorized(self) -> bool:
        return self.state is GateState.AUTHORIZED


def default_reference_resolver(payload: PaymentPayload) -> str:
    """Reference of a signed payload: keccak-256 of its bytes, 0x-prefixed.

    For a signed EVM transaction this is the transaction hash.
    """
    try:
        return Web3.to_hex(Web3.keccak(hexstr=payload.signature))
    except (ValueError, TypeError) as exc:
        raise MalformedProofError("Payload signature is not valid hex") from exc


def _as_verification(result: Any) -> VerificationResult:
    if isinstance(result, VerificationResult):
        return result
    return VerificationResult(valid=bool(result))


class PaymentGate:
    """HTTP 402 payment gate.

    Args:
        settings: Charge terms and gate options.
        verifier: Async callable checking a signed proof against a ChargeRequest.
        broadcaster: Optional async callable submitting the signed proof.
        confirmer: Optional async callable returning the block number of a tx.
        challenges: Challenge store; defaults to an in-memory one.
        replay: Replay protection; defaults to an in-memory one sized from settings.
        coalescer: Verification coalescer; defaults to a fresh one.
        reference_resolver: Maps a payload to its transaction reference.
    """

    def __init__(
        self,
        settings: PaymentAuthSettings,
        verifier: PaymentVerifier,
        broadcaster: Optional[TransactionBroadcaster] = None,
        confirmer: Optional[TransactionConfirmer] = None,
        *,
        challenges: Optional[ChallengeStore] = None,
        replay: Optional[ReplayProtection] = None,
        coalescer: Optional[VerificationCoalescer] = None,
        reference_resolver: Optional[ReferenceResolver] = None,
    ):
        settings.require_charge_terms()
        self.settings = settings
        self.verifier = verifier
        self.broadcaster = broadcaster
        self.confirmer = confirmer
        self.challenges = challenges or ChallengeStore()
        self.replay = replay or ReplayProtection(
            window_ms=settings.replay_window_ms,
            max_entries=settings.replay_max_entries,
        )
        self.coalescer = coalescer or VerificationCoalescer()
        self.reference_resolver = reference_resolver or default_reference_resolver

    @classmethod
    def from_settings(
        cls,
        settings: PaymentAuthSettings,
        verifier: PaymentVerifier,
        broadcaster: Optional[TransactionBroadcaster] = None,
        confirmer: Optional[TransactionConfirmer] = None,
        store: Optional[KeyValueStore] = None,
        **kwargs: Any,
    ) -> "PaymentGate":
        """Build a gate whose stores follow ``settings.storage_backend``.

        A shared backend (Redis, or an explicit ``store``) holds both challenges
        and replay entries under separate key prefixes. The in-memory backend
        gives replay protection its own size-bounded store so that eviction
        never drops live challenges.
        """
        shared = store if store is not None else create_store(settings)
        if isinstance(shared, InMemoryKeyValueStore) and store is None:
            replay_store: KeyValueStore = InMemoryKeyValueStore(max_entries=settings.replay_max_entries)
        else:
            replay_store = shared
        logger.info("Payment gate configured: %s", settings.redacted())
        return cls(
            settings,
            verifier,
            broadcaster,
            confirmer,
            challenges=ChallengeStore(shared),
            replay=ReplayProtection(window_ms=settings.replay_window_ms, store=replay_store),
            **kwargs,
        )

    async def handle(self, authorization: Optional[str]) -> GateDecision:
        """Run the gate for one request's Authorization header."""
        if authorization and authorization.startswith(f"{PAYMENT_SCHEME} "):
            return await self._handle_payment(authorization)
        if authorization and authorization.startswith(f"{TEMPO_SCHEME} "):
            return await self._handle_tempo(authorization)
        return await self._issue_challenge(
            GateState.CHALLENGE_ISSUED,
            PaymentRequiredError(self.settings.description or "Payment required to access this endpoint"),
        )

    # --- decisions -----------------------------------------------------------

    async def _issue_challenge(self, state: GateState, error: PaymentAuthError) -> GateDecision:
        challenge = await self.challenges.create(self.settings)
        headers = {
            WWW_AUTHENTICATE_HEADER: format_www_authenticate(challenge),
            "Cache-Control": "no-store",
        }
        if state is not GateState.CHALLENGE_ISSUED:
            logger.info("Payment rejected (%s): %s; reissued challenge %s", state.value, error.message, challenge.id)
        return GateDecision(state, error.http_status, error.to_dict(), headers)

    @staticmethod
    def _reject(state: GateState, error: PaymentAuthError) -> GateDecision:
        logger.info("Payment rejected (%s): %s", state.value, error.message)
        return GateDecision(state, error.http_status, error.to_dict())

    # --- Payment scheme ------------------------------------------------------

    async def _handle_payment(self, authorization: str) -> GateDecision:
        try:
            credential = parse_authorization(authorization)
        except MalformedProofError as exc:
            return self._reject(GateState.MALFORMED, exc)

        with LogContext(challenge_id=credential.id):
            entry = await self.challenges.get(credential.id)
            if entry is None:
                return await self._issue_challenge(
                    GateState.UNKNOWN_CHALLENGE, PaymentVerificationFailedError.unknown_challenge()
                )
            if entry.used:
                return await self._issue_challenge(
                    GateState.USED_CHALLENGE, PaymentVerificationFailedError.challenge_used()
                )
            if entry.is_expired():
                await self.challenges.delete(credential.id)
                return await self._issue_challenge(GateState.EXPIRED_CHALLENGE, PaymentExpiredError())

            if credential.payload.type not in PAYLOAD_TYPES:
                return self._reject(
                    GateState.INVALID_PAYLOAD,
                    MalformedProofError("Invalid payload type", error_code="INVALID_PAYLOAD_TYPE"),
                )

            try:
                reference = self.reference_resolver(credential.payload)
            except MalformedProofError as exc:
                return self._reject(GateState.MALFORMED, exc)

            with LogContext(reference=reference):
                return await self._settle(
                    credential.id, credential.payload.signature, reference, entry.challenge.request
                )

    async def _verify(
        self, reference: str, signed_proof: str, request: ChargeRequest
    ) -> tuple[Optional[VerificationResult], Optional[GateDecision]]:
        """Reserve ``reference`` and run the coalesced verifier.

        Returns the verification result on success, or the rejection decision.
        The reservation is released on every failure path.
        """
        if not await self.replay.begin_verification(reference):
            return None, self._reject(GateState.REPLAYED, ReplayError(reference))

        async def run_verify() -> VerificationResult:
            result = await self.verifier(
                signed_proof, request, max_age_seconds=self.settings.allowed_age_seconds
            )
            return _as_verification(result)

        try:
            verification = await self.coalescer.verify(reference, run_verify)
        except asyncio.CancelledError:
            await self.replay.rollback_verification(reference)
            raise
        except Exception as exc:
            logger.exception("Payment verification infrastructure error")
            await self.replay.rollback_verification(reference)
            return None, self._reject(
                GateState.INFRA_ERROR, NetworkError(details={"reason": type(exc).__name__})
            )

        if not verification.valid:
            # The challenge stays usable: the client may retry with a corrected proof.
            await self.replay.rollback_verification(reference)
            return None, self._reject(
                GateState.VERIFICATION_FAILED,
                PaymentVerificationFailedError.verification_failed(verification.error),
            )
        return verification, None

    async def _settle(
        self, challenge_id: str, signed_proof: str, reference: str, request: ChargeRequest
    ) -> GateDecision:
        timestamp = isoformat(utcnow())
        verification, rejection = await self._verify(reference, signed_proof, request)
        if rejection is not None:
            return rejection
        assert verification is not None

        if not await self.challenges.mark_used(challenge_id):
            # A concurrent submission consumed the challenge first.
            await self.replay.rollback_verification(reference)
            return await self._issue_challenge(
                GateState.USED_CHALLENGE, PaymentVerificationFailedError.challenge_used()
            )

        tx_hash = reference
        if self.broadcaster is not None:
            try:
                broadcast = await self.broadcaster(signed_proof)
            except asyncio.CancelledError:
                logger.warning("Broadcast cancelled for %s, releasing challenge %s", reference, challenge_id)
                await self.challenges.unmark_used(challenge_id)
                await self.replay.rollback_verification(reference)
                raise
            except Exception as exc:
                logger.exception("Broadcast raised")
                broadcast = BroadcastResult(success=False, error=str(exc) or type(exc).__name__)
            if not broadcast.success or not broadcast.transaction_hash:
                await self.challenges.unmark_used(challenge_id)
                await self.replay.rollback_verification(reference)
                return self._reject(GateState.BROADCAST_FAILED, BroadcastError(broadcast.error))
            tx_hash = broadcast.transaction_hash

        await self.replay.commit_verification(reference)
        return await self._authorize(tx_hash, timestamp, verification.payer)

    async def _authorize(self, tx_hash: str, timestamp: str, payer: Optional[str]) -> GateDecision:
        block_number: Optional[str] = None
        if self.confirmer is not None:
            try:
                confirmation = await self.confirmer(tx_hash)
                if confirmation.block_number is not None:
                    block_number = str(confirmation.block_number)
            except Exception:
                # Payment already settled; the block number only enriches the receipt.
                logger.warning("Confirmation lookup failed for %s", tx_hash, exc_info=True)

        receipt = PaymentReceipt(
            status="success",
            method=self.settings.method,
            timestamp=timestamp,
            reference=tx_hash,
            block_number=block_number,
        )
        context = PaymentContext(
            paid=True,
            receipt=receipt,
            tx_hash=tx_hash,
            block_number=block_number,
            payer=payer,
            explorer=self.settings.explorer_link(tx_hash),
        )
        logger.info("Payment authorized (tx=%s, payer=%s)", tx_hash, payer)
        return GateDecision(
            GateState.AUTHORIZED,
            200,
            context.to_dict(),
            {PAYMENT_RECEIPT_HEADER: format_receipt(receipt), "Cache-Control": "private"},
            payment=context,
        )

    # --- legacy Tempo scheme -------------------------------------------------

    async def _handle_tempo(self, authorization: str) -> GateDecision:
        """``Authorization: Tempo <txHash>`` for transactions already on chain."""
        if self.settings.method != "tempo":
            return self._reject(
                GateState.MALFORMED,
                PaymentMethodUnsupportedError(f"Tempo credentials are not accepted by method {self.settings.method!r}"),
            )
        tx_hash = authorization[len(TEMPO_SCHEME) + 1:].strip()
        if not is_valid_tx_hash(tx_hash):
            return self._reject(GateState.MALFORMED, InvalidTransactionHashError())

        request = ChargeRequest(
            amount=self.settings.amount,
            asset=self.settings.asset,
            destination=self.settings.destination,
            expires=isoformat(utcnow() + timedelta(milliseconds=self.settings.challenge_validity_ms)),
        )
        timestamp = isoformat(utcnow())
        with LogContext(reference=tx_hash):
            verification, rejection = await self._verify(tx_hash, tx_hash, request)
            if rejection is not None:
                return rejection
            assert verification is not None
            await self.replay.commit_verification(tx_hash)
            return await self._authorize(tx_hash, timestamp, verification.payer)


__all__ = [
    "GateState",
    "GateDecision",
    "PaymentGate",
    "default_reference_resolver",
]
