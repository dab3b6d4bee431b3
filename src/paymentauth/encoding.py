"""Header codec for the Payment HTTP authentication scheme.

Implements:
- WWW-Authenticate challenge rendering and parsing (server -> client, 402)
- Authorization credential rendering and parsing (client -> server)
- Payment-Receipt rendering and parsing (server -> client, 200)
- Challenge id generation

Payloads embedded in headers are base64url JSON without padding.
"""
from __future__ import annotations

import base64
import binascii
import json
import re
import secrets
from typing import Any

from .exceptions import MalformedProofError
from .types import ChargeRequest, PaymentChallenge, PaymentCredential, PaymentPayload, PaymentReceipt

PAYMENT_SCHEME = "Payment"
TEMPO_SCHEME = "Tempo"

WWW_AUTHENTICATE_HEADER = "WWW-Authenticate"
AUTHORIZATION_HEADER = "Authorization"
PAYMENT_RECEIPT_HEADER = "Payment-Receipt"

CHALLENGE_ID_BYTES = 16  # 128 bits
# Upper bound on the encoded credential, checked before any decoding
MAX_CREDENTIAL_LENGTH = 8192

_AUTH_PARAM_RE = re.compile(r'(\w+)="((?:[^"\\]|\\.)*)"(?:\s*,\s*)?')
_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def base64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def base64url_decode(value: str) -> bytes:
    padding = -len(value) % 4
    # validate=True rejects characters outside the urlsafe alphabet
    return base64.b64decode(value + "=" * padding, altchars=b"-_", validate=True)


def encode_json(data: Any) -> str:
    return base64url_encode(json.dumps(data, separators=(",", ":")).encode())


def decode_json(value: str) -> Any:
    return json.loads(base64url_decode(value))


def generate_challenge_id() -> str:
    """Return a random challenge id with 128 bits of entropy."""
    return base64url_encode(secrets.token_bytes(CHALLENGE_ID_BYTES))


def is_valid_tx_hash(value: str) -> bool:
    return bool(_TX_HASH_RE.match(value or ""))


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)


def format_www_authenticate(challenge: PaymentChallenge) -> str:
    """Render a challenge as a WWW-Authenticate value.

    Parameter order is fixed so that output is byte-stable:
    ``Payment id="…", realm="…", method="…", intent="…", request="…", expires="…"``
    followed by ``description`` when present.
    """
    params = [
        f"id={_quote(challenge.id)}",
        f"realm={_quote(challenge.realm)}",
        f"method={_quote(challenge.method)}",
        f"intent={_quote(challenge.intent)}",
        f"request={_quote(encode_json(challenge.request.to_dict()))}",
    ]
    if challenge.expires:
        params.append(f"expires={_quote(challenge.expires)}")
    if challenge.description:
        params.append(f"description={_quote(challenge.description)}")
    return f"{PAYMENT_SCHEME} " + ", ".join(params)


def parse_www_authenticate(header: str) -> PaymentChallenge:
    """Parse a WWW-Authenticate value back into a PaymentChallenge."""
    prefix = f"{PAYMENT_SCHEME} "
    if not header or not header.startswith(prefix):
        raise ValueError('invalid_www_authenticate: must start with "Payment "')

    params = {
        name: _unquote(value)
        for name, value in _AUTH_PARAM_RE.findall(header[len(prefix):])
    }
    missing = [k for k in ("id", "realm", "method", "intent", "request") if not params.get(k)]
    if missing:
        raise ValueError(f"invalid_www_authenticate: missing {', '.join(missing)}")

    try:
        request = ChargeRequest.from_dict(decode_json(params["request"]))
    except (binascii.Error, ValueError, KeyError, TypeError) as exc:
        raise ValueError(f"invalid_www_authenticate: bad request parameter: {exc}") from exc

    return PaymentChallenge(
        id=params["id"],
        realm=params["realm"],
        method=params["method"],
        intent=params["intent"],
        request=request,
        expires=params.get("expires", request.expires),
        description=params.get("description"),
    )


def format_authorization(credential: PaymentCredential) -> str:
    return f"{PAYMENT_SCHEME} {encode_json(credential.to_dict())}"


def parse_authorization(header: str) -> PaymentCredential:
    """Parse ``Authorization: Payment <base64url-json>``.

    Only structural validity is checked here. Whether ``payload.type`` is a
    recognized value is decided by the gate.
    """
    prefix = f"{PAYMENT_SCHEME} "
    if not header or not header.startswith(prefix):
        raise MalformedProofError('Authorization header must start with "Payment "')

    token = header[len(prefix):].strip()
    if len(token) > MAX_CREDENTIAL_LENGTH:
        raise MalformedProofError("Invalid Authorization header format")
    try:
        data = decode_json(token)
    except (binascii.Error, ValueError) as exc:
        raise MalformedProofError("Invalid Authorization header format") from exc

    if not isinstance(data, dict):
        raise MalformedProofError("Credential must be a JSON object")

    payload = data.get("payload")
    if not isinstance(payload, dict):
        raise MalformedProofError("Credential is missing payload")

    credential_id = data.get("id")
    payload_type = payload.get("type")
    signature = payload.get("signature")
    for name, value in (("id", credential_id), ("payload.type", payload_type), ("payload.signature", signature)):
        if not isinstance(value, str) or not value:
            raise MalformedProofError(f"Credential is missing {name}")

    source = data.get("source")
    return PaymentCredential(
        id=credential_id,
        payload=PaymentPayload(type=payload_type, signature=signature),
        source=source if isinstance(source, str) else None,
    )


def format_receipt(receipt: PaymentReceipt) -> str:
    """Render ``status=…; method=…; timestamp=…; reference=…[; blockNumber=…]``."""
    parts = [
        f"status={receipt.status}",
        f"method={receipt.method}",
        f"timestamp={receipt.timestamp}",
        f"reference={receipt.reference}",
    ]
    if receipt.block_number is not None:
        parts.append(f"blockNumber={receipt.block_number}")
    return "; ".join(parts)


def parse_receipt(header: str) -> PaymentReceipt:
    fields: dict[str, str] = {}
    for part in header.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep:
            fields[name] = value
    try:
        return PaymentReceipt(
            status=fields["status"],  # type: ignore[arg-type]
            method=fields["method"],
            timestamp=fields["timestamp"],
            reference=fields["reference"],
            block_number=fields.get("blockNumber"),
        )
    except KeyError as exc:
        raise ValueError(f"invalid_payment_receipt: missing {exc.args[0]}") from exc


__all__ = [
    "PAYMENT_SCHEME",
    "TEMPO_SCHEME",
    "WWW_AUTHENTICATE_HEADER",
    "AUTHORIZATION_HEADER",
    "PAYMENT_RECEIPT_HEADER",
    "MAX_CREDENTIAL_LENGTH",
    "base64url_encode",
    "base64url_decode",
    "encode_json",
    "decode_json",
    "generate_challenge_id",
    "is_valid_tx_hash",
    "format_www_authenticate",
    "parse_www_authenticate",
    "format_authorization",
    "parse_authorization",
    "format_receipt",
    "parse_receipt",
]
