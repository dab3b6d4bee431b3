"""Tests for the Payment header codec."""
import json

import pytest

from paymentauth.encoding import (
    MAX_CREDENTIAL_LENGTH,
    base64url_decode,
    base64url_encode,
    decode_json,
    encode_json,
    format_authorization,
    format_receipt,
    format_www_authenticate,
    generate_challenge_id,
    is_valid_tx_hash,
    parse_authorization,
    parse_receipt,
    parse_www_authenticate,
)
from paymentauth.exceptions import MalformedProofError
from paymentauth.types import (
    ChargeRequest,
    PaymentChallenge,
    PaymentCredential,
    PaymentPayload,
    PaymentReceipt,
)

pytestmark = [pytest.mark.protocol_conformance]


def _make_challenge(**overrides) -> PaymentChallenge:
    defaults = {
        "id": "kM9xPqWvT2nJrHsY4aDfEb",
        "realm": "api.example.com",
        "method": "tempo",
        "intent": "charge",
        "request": ChargeRequest(
            amount="1000000",
            asset="0x20c0000000000000000000000000000000000001",
            destination="0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb0",
            expires="2025-01-15T12:05:00.000Z",
        ),
        "expires": "2025-01-15T12:05:00.000Z",
    }
    defaults.update(overrides)
    return PaymentChallenge(**defaults)


class TestBase64Url:
    def test_no_padding_in_output(self):
        assert "=" not in base64url_encode(b"ab")
        assert base64url_decode(base64url_encode(b"ab")) == b"ab"

    def test_uses_url_safe_alphabet(self):
        encoded = base64url_encode(b"\xfb\xff\xfe")
        assert "+" not in encoded and "/" not in encoded
        assert base64url_decode(encoded) == b"\xfb\xff\xfe"

    def test_rejects_characters_outside_alphabet(self):
        with pytest.raises(ValueError):
            base64url_decode("abc$")

    def test_json_is_compact(self):
        encoded = encode_json({"a": 1, "b": "x"})
        assert base64url_decode(encoded) == b'{"a":1,"b":"x"}'
        assert decode_json(encoded) == {"a": 1, "b": "x"}


class TestChallengeId:
    def test_has_128_bits(self):
        # 16 bytes -> 22 base64url characters
        assert len(generate_challenge_id()) == 22

    def test_unique(self):
        ids = {generate_challenge_id() for _ in range(1000)}
        assert len(ids) == 1000


class TestTxHash:
    def test_valid(self):
        assert is_valid_tx_hash("0x" + "aB" * 32)

    @pytest.mark.parametrize("value", ["", "0x", "0x" + "a" * 63, "0x" + "a" * 65, "ab" * 33, "0x" + "g" * 64])
    def test_invalid(self, value):
        assert not is_valid_tx_hash(value)


class TestWwwAuthenticate:
    def test_exact_format(self):
        challenge = _make_challenge()
        request = encode_json(challenge.request.to_dict())
        assert format_www_authenticate(challenge) == (
            'Payment id="kM9xPqWvT2nJrHsY4aDfEb", realm="api.example.com", method="tempo", '
            f'intent="charge", request="{request}", expires="2025-01-15T12:05:00.000Z"'
        )

    def test_request_param_holds_charge_request(self):
        challenge = _make_challenge()
        header = format_www_authenticate(challenge)
        encoded = header.split('request="')[1].split('"')[0]
        assert json.loads(base64url_decode(encoded)) == {
            "amount": "1000000",
            "asset": "0x20c0000000000000000000000000000000000001",
            "destination": "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb0",
            "expires": "2025-01-15T12:05:00.000Z",
        }

    def test_description_appended_last(self):
        header = format_www_authenticate(_make_challenge(description="Premium data"))
        assert header.endswith('expires="2025-01-15T12:05:00.000Z", description="Premium data"')

    def test_description_quotes_escaped(self):
        challenge = _make_challenge(description='say "hi"')
        header = format_www_authenticate(challenge)
        assert 'description="say \\"hi\\""' in header
        assert parse_www_authenticate(header).description == 'say "hi"'

    def test_deterministic(self):
        challenge = _make_challenge()
        assert format_www_authenticate(challenge) == format_www_authenticate(challenge)

    def test_parse(self):
        challenge = _make_challenge(description="Premium data")
        parsed = parse_www_authenticate(format_www_authenticate(challenge))
        assert parsed == challenge

    def test_parse_rejects_other_scheme(self):
        with pytest.raises(ValueError, match="invalid_www_authenticate"):
            parse_www_authenticate('Bearer realm="api"')

    def test_parse_rejects_missing_params(self):
        with pytest.raises(ValueError, match="missing"):
            parse_www_authenticate('Payment id="abc", realm="api"')


class TestAuthorization:
    def test_parse(self):
        credential = PaymentCredential(
            id="challenge-1",
            payload=PaymentPayload(type="transaction", signature="0xdeadbeef"),
            source="did:pkh:eip155:4217:0xabc",
        )
        parsed = parse_authorization(format_authorization(credential))
        assert parsed.id == "challenge-1"
        assert parsed.payload.type == "transaction"
        assert parsed.payload.signature == "0xdeadbeef"
        assert parsed.source == "did:pkh:eip155:4217:0xabc"

    def test_unknown_payload_type_is_structurally_valid(self):
        header = "Payment " + encode_json({"id": "c", "payload": {"type": "other", "signature": "0x01"}})
        assert parse_authorization(header).payload.type == "other"

    def test_missing_prefix(self):
        with pytest.raises(MalformedProofError):
            parse_authorization("Bearer abc")

    def test_oversized_token_rejected_before_decoding(self):
        header = "Payment " + base64url_encode(b"[" * 100_000)
        with pytest.raises(MalformedProofError, match="Invalid Authorization header format"):
            parse_authorization(header)

    def test_token_at_length_limit_is_decoded(self):
        data = {"id": "c", "payload": {"type": "transaction", "signature": "0x01"}}
        token = encode_json(data)
        padded = token + "A" * (MAX_CREDENTIAL_LENGTH - len(token))
        # within the limit the token reaches the decoder and fails on content
        with pytest.raises(MalformedProofError) as exc_info:
            parse_authorization("Payment " + padded)
        assert exc_info.value.__cause__ is not None

    def test_not_base64(self):
        with pytest.raises(MalformedProofError) as exc_info:
            parse_authorization("Payment not-base64")
        assert exc_info.value.error_code == "MALFORMED_PROOF"

    def test_not_json_object(self):
        with pytest.raises(MalformedProofError):
            parse_authorization("Payment " + encode_json(["id"]))

    @pytest.mark.parametrize(
        "data",
        [
            {"payload": {"type": "transaction", "signature": "0x01"}},
            {"id": "c"},
            {"id": "c", "payload": {"signature": "0x01"}},
            {"id": "c", "payload": {"type": "transaction"}},
            {"id": "", "payload": {"type": "transaction", "signature": "0x01"}},
        ],
    )
    def test_missing_fields(self, data):
        with pytest.raises(MalformedProofError, match="missing"):
            parse_authorization("Payment " + encode_json(data))


class TestReceipt:
    def test_format(self):
        receipt = PaymentReceipt(
            status="success",
            method="tempo",
            timestamp="2025-01-15T12:00:00.000Z",
            reference="0xabc",
        )
        assert format_receipt(receipt) == (
            "status=success; method=tempo; timestamp=2025-01-15T12:00:00.000Z; reference=0xabc"
        )

    def test_format_with_block_number(self):
        receipt = PaymentReceipt(
            status="success",
            method="tempo",
            timestamp="2025-01-15T12:00:00.000Z",
            reference="0xabc",
            block_number="42",
        )
        assert format_receipt(receipt).endswith("; reference=0xabc; blockNumber=42")
        assert parse_receipt(format_receipt(receipt)) == receipt

    def test_parse_rejects_incomplete(self):
        with pytest.raises(ValueError, match="invalid_payment_receipt"):
            parse_receipt("status=success; method=tempo")
