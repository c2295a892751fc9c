"""Unit tests for the token codec.

Tests for:
- Access/refresh issuance and verification
- Secret separation between token kinds
- Signature, algorithm and schema rejection
- Expiry handling
"""

import base64
import json

import pytest

from clinauth.service.tokens import (
    AccessClaims,
    ExpiredToken,
    MalformedToken,
    RefreshClaims,
    TokenCodec,
    _encode_segment,
    _sign,
    verify_token,
)

ACCESS_SECRET = "unit-access-secret-0123456789abcdefghijklmnop"
REFRESH_SECRET = "unit-refresh-secret-0123456789abcdefghijklmno"


def _forge(payload: dict, secret: str, header: dict | None = None) -> str:
    header_enc = _encode_segment(json.dumps(header or {"alg": "HS256", "typ": "JWT"}).encode())
    payload_enc = _encode_segment(json.dumps(payload).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_encode_segment(_sign(secret, signing_input))}"


class TestIssueAndVerify:
    def test_access_token_carries_typed_claims(self, codec):
        token, issued = codec.issue_access("user-1", "nurse", "sess-1", ["read:patients"])

        claims = codec.verify_access(token)

        assert isinstance(claims, AccessClaims)
        assert claims.user_id == "user-1"
        assert claims.role == "nurse"
        assert claims.session_id == "sess-1"
        assert claims.permissions == ["read:patients"]
        assert claims.exp - claims.iat == 900
        assert claims.jti == issued.jti

    def test_wire_payload_uses_camel_case_claim_names(self, codec):
        token, _ = codec.issue_refresh("user-1", "sess-1", 3)
        payload_b64 = token.split(".")[1]
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + "=" * (-len(payload_b64) % 4)))

        assert payload["userId"] == "user-1"
        assert payload["sessionId"] == "sess-1"
        assert payload["tokenVersion"] == 3
        assert payload["typ"] == "refresh"

    def test_each_token_gets_a_unique_id(self, codec):
        _, first = codec.issue_access("user-1", "patient", "sess-1", [])
        _, second = codec.issue_access("user-1", "patient", "sess-1", [])

        assert first.jti != second.jti


class TestSecretSeparation:
    def test_codec_refuses_identical_secrets(self):
        with pytest.raises(ValueError):
            TokenCodec(
                ACCESS_SECRET,
                ACCESS_SECRET,
                issuer="clinauth",
                audience="clinauth-clients",
                access_ttl_seconds=900,
                refresh_ttl_seconds=3600,
            )

    def test_refresh_token_is_not_accepted_as_access_token(self, codec):
        token, _ = codec.issue_refresh("user-1", "sess-1", 1)

        with pytest.raises(MalformedToken):
            codec.verify_access(token)

    def test_access_token_is_not_accepted_as_refresh_token(self, codec):
        token, _ = codec.issue_access("user-1", "admin", "sess-1", [])

        with pytest.raises(MalformedToken):
            codec.verify_refresh(token)

    def test_access_claims_under_refresh_schema_are_rejected(self, codec):
        """Even with the right secret, the closed schema rejects the wrong token kind."""
        token, _ = codec.issue_access("user-1", "admin", "sess-1", [])

        with pytest.raises(MalformedToken):
            verify_token(token, ACCESS_SECRET, RefreshClaims)


class TestRejection:
    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "###.###.###"])
    def test_structurally_invalid_tokens(self, codec, token):
        with pytest.raises(MalformedToken):
            codec.verify_access(token)

    def test_tampered_payload_fails_signature_check(self, codec):
        token, claims = codec.issue_access("user-1", "patient", "sess-1", [])
        header, _, signature = token.split(".")
        forged_payload = claims.model_dump(by_alias=True)
        forged_payload["role"] = "admin"
        forged = f"{header}.{_encode_segment(json.dumps(forged_payload).encode())}.{signature}"

        with pytest.raises(MalformedToken):
            codec.verify_access(forged)

    def test_algorithm_is_pinned(self, codec):
        _, claims = codec.issue_access("user-1", "patient", "sess-1", [])
        token = _forge(
            claims.model_dump(by_alias=True),
            ACCESS_SECRET,
            header={"alg": "none", "typ": "JWT"},
        )

        with pytest.raises(MalformedToken):
            codec.verify_access(token)

    def test_unknown_claims_are_rejected(self, codec):
        _, claims = codec.issue_access("user-1", "patient", "sess-1", [])
        payload = claims.model_dump(by_alias=True)
        payload["isAdmin"] = True

        with pytest.raises(MalformedToken):
            codec.verify_access(_forge(payload, ACCESS_SECRET))

    def test_missing_claims_are_rejected(self, codec):
        _, claims = codec.issue_access("user-1", "patient", "sess-1", [])
        payload = claims.model_dump(by_alias=True)
        del payload["sessionId"]

        with pytest.raises(MalformedToken):
            codec.verify_access(_forge(payload, ACCESS_SECRET))

    def test_foreign_issuer_is_rejected(self, codec, clock):
        other = TokenCodec(
            ACCESS_SECRET,
            REFRESH_SECRET,
            issuer="someone-else",
            audience="clinauth-clients",
            access_ttl_seconds=900,
            refresh_ttl_seconds=3600,
            clock=clock,
        )
        token, _ = other.issue_access("user-1", "patient", "sess-1", [])

        with pytest.raises(MalformedToken):
            codec.verify_access(token)


class TestExpiry:
    def test_access_token_expires_after_ttl(self, codec, clock):
        token, _ = codec.issue_access("user-1", "patient", "sess-1", [])

        clock.advance(seconds=900)
        assert codec.verify_access(token).user_id == "user-1"

        clock.advance(seconds=1)
        with pytest.raises(ExpiredToken):
            codec.verify_access(token)

    def test_expired_refresh_token_is_readable_when_allowed(self, codec, clock):
        token, _ = codec.issue_refresh("user-1", "sess-1", 1)
        clock.advance(days=8)

        with pytest.raises(ExpiredToken) as exc_info:
            codec.verify_refresh(token)
        assert exc_info.value.claims.session_id == "sess-1"

        claims = codec.verify_refresh(token, allow_expired=True)
        assert claims.session_id == "sess-1"

    def test_expired_token_with_bad_signature_is_malformed(self, codec, clock):
        token, _ = codec.issue_refresh("user-1", "sess-1", 1)
        clock.advance(days=8)
        header, payload, _ = token.split(".")

        with pytest.raises(MalformedToken):
            codec.verify_refresh(f"{header}.{payload}.AAAA", allow_expired=True)
