"""Tests for Ed25519 token signing and verification."""

from datetime import timedelta

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from idgate.config import Settings
from idgate.service.errors import InvalidTokenError
from idgate.service.tokens import TokenSigner, load_private_key
from idgate.storage.models import TokenClaims, TokenKind, utcnow


@pytest.fixture
def private_key():
    return Ed25519PrivateKey.generate()


@pytest.fixture
def signer(private_key):
    return TokenSigner(
        private_key, timedelta(minutes=15), timedelta(days=7), key_id="test-key"
    )


def _claims(kind=TokenKind.ACCESS):
    return TokenClaims(token_id="tok-1", user_id="user-1", kind=kind)


class TestSignVerify:
    def test_round_trip_preserves_claims(self, signer):
        for kind in TokenKind:
            claims = _claims(kind)
            token = signer.sign(claims, utcnow() + timedelta(minutes=5))
            assert signer.verify(token) == claims

    def test_header_carries_algorithm_and_key_id(self, signer):
        token = signer.sign(_claims(), utcnow() + timedelta(minutes=5))
        header = jwt.get_unverified_header(token)
        assert header["alg"] == "EdDSA"
        assert header["kid"] == "test-key"

    def test_payload_fields(self, signer):
        expiration = utcnow() + timedelta(minutes=5)
        token = signer.sign(_claims(), expiration)
        payload = jwt.decode(token, options={"verify_signature": False})
        assert payload["jti"] == "tok-1"
        assert payload["sub"] == "user-1"
        assert payload["type"] == "access"
        assert payload["exp"] == int(expiration.timestamp())
        assert "iat" in payload

    def test_expired_exp_does_not_fail_verification(self, signer):
        token = signer.sign(_claims(), utcnow() - timedelta(hours=1))
        assert signer.verify(token) == _claims()

    def test_every_single_character_mutation_fails(self, signer):
        token = signer.sign(_claims(), utcnow() + timedelta(minutes=5))
        for index, original in enumerate(token):
            replacement = "A" if original != "A" else "B"
            mutated = token[:index] + replacement + token[index + 1 :]
            with pytest.raises(InvalidTokenError):
                signer.verify(mutated)

    def test_signature_from_other_key_rejected(self, signer):
        other = TokenSigner(
            Ed25519PrivateKey.generate(), timedelta(minutes=15), timedelta(days=7)
        )
        token = other.sign(_claims(), utcnow() + timedelta(minutes=5))
        with pytest.raises(InvalidTokenError):
            signer.verify(token)

    @pytest.mark.parametrize(
        "token", ["", "not-a-token", "a.b", "a.b.c", "a.b.c.d", "..."]
    )
    def test_malformed_tokens_rejected(self, signer, token):
        with pytest.raises(InvalidTokenError):
            signer.verify(token)

    def test_hmac_token_rejected(self, signer):
        token = jwt.encode(
            {"jti": "tok-1", "sub": "user-1", "type": "access"},
            "shared-secret",
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError):
            signer.verify(token)

    def test_unknown_kind_rejected(self, signer, private_key):
        token = jwt.encode(
            {"jti": "tok-1", "sub": "user-1", "type": "session"},
            private_key,
            algorithm="EdDSA",
        )
        with pytest.raises(InvalidTokenError):
            signer.verify(token)

    def test_missing_claims_rejected(self, signer, private_key):
        token = jwt.encode({"sub": "user-1", "type": "access"}, private_key, algorithm="EdDSA")
        with pytest.raises(InvalidTokenError):
            signer.verify(token)


class TestIssue:
    def test_issue_returns_pair_and_details(self, signer):
        before = utcnow()
        pair, access, refresh = signer.issue("user-1")

        assert access.kind is TokenKind.ACCESS
        assert refresh.kind is TokenKind.REFRESH
        assert access.user_id == refresh.user_id == "user-1"
        assert access.token_id != refresh.token_id
        assert pair.expires_at == access.expiration
        assert access.expiration - before >= timedelta(minutes=15) - timedelta(seconds=1)
        assert refresh.expiration - before >= timedelta(days=7) - timedelta(seconds=1)

        assert signer.verify(pair.access_token) == TokenClaims(
            access.token_id, "user-1", TokenKind.ACCESS
        )
        assert signer.verify(pair.refresh_token) == TokenClaims(
            refresh.token_id, "user-1", TokenKind.REFRESH
        )

    def test_identifiers_unique_per_issuance(self, signer):
        ids = set()
        for _ in range(20):
            _, access, refresh = signer.issue("user-1")
            ids.update({access.token_id, refresh.token_id})
        assert len(ids) == 40


class TestKeys:
    def test_public_key_exposed_read_only(self, signer, private_key):
        expected = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        assert signer.public_key_bytes() == expected
        assert signer.public_key_pem().startswith("-----BEGIN PUBLIC KEY-----")
        with pytest.raises(AttributeError):
            signer.public_key = None

    def test_load_seed_and_expanded_forms(self, private_key):
        seed = private_key.private_bytes_raw()
        public = private_key.public_key().public_bytes_raw()
        from_seed = load_private_key(seed.hex())
        from_expanded = load_private_key((seed + public).hex())
        assert from_seed.public_key().public_bytes_raw() == public
        assert from_expanded.public_key().public_bytes_raw() == public

    def test_load_rejects_mismatched_public_half(self, private_key):
        seed = private_key.private_bytes_raw()
        other_public = Ed25519PrivateKey.generate().public_key().public_bytes_raw()
        with pytest.raises(ValueError):
            load_private_key((seed + other_public).hex())

    def test_from_settings_uses_configured_key_and_ttls(self, private_key):
        settings = Settings(
            signing_private_key=private_key.private_bytes_raw().hex(),
            signing_key_id="key-9",
            access_token_ttl_minutes=5,
            refresh_token_ttl_days=2,
        )
        signer = TokenSigner.from_settings(settings)
        assert signer.key_id == "key-9"
        assert signer.access_ttl == timedelta(minutes=5)
        assert signer.refresh_ttl == timedelta(days=2)
        assert signer.public_key_bytes() == private_key.public_key().public_bytes_raw()
