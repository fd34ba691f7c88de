"""Unit tests for token minting, validation and the token ledger."""

import base64
import json
from datetime import timedelta

import pytest

from deckexc.config import Settings
from deckexc.service.errors import (
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
    TokenRevokedError,
)
from deckexc.service.tokens import TokenService
from deckexc.storage.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!", jwt_ttl_minutes=60
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def tokens(memory_store, settings):
    return TokenService(memory_store, settings)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(
        "ana@example.com", "Ana", "hash", "pais", "answer-hash"
    )


def _payload(token):
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestMint:
    def test_payload_claims(self, tokens, user):
        token = tokens.mint(user.id)
        payload = _payload(token)
        assert set(payload) == {"id", "jti", "exp"}
        assert payload["id"] == user.id
        assert len(payload["jti"]) == 36

    def test_mint_records_ledger_entry(self, tokens, memory_store, user):
        token = tokens.mint(user.id)
        jti = _payload(token)["jti"]
        record = memory_store.get_token_record(user.id, jti)
        assert record is not None
        assert record.user_id == user.id

    def test_each_mint_gets_distinct_jti(self, tokens, user):
        first = _payload(tokens.mint(user.id))["jti"]
        second = _payload(tokens.mint(user.id))["jti"]
        assert first != second


class TestValidate:
    def test_valid_token(self, tokens, user):
        claims = tokens.validate(tokens.mint(user.id))
        assert claims.user_id == user.id

    def test_revoked_token_rejected(self, tokens, user):
        token = tokens.mint(user.id)
        tokens.revoke(user.id, _payload(token)["jti"])
        with pytest.raises(TokenRevokedError):
            tokens.validate(token)

    def test_expired_token_removes_ledger_record(self, tokens, memory_store, user):
        token = tokens.mint(user.id)
        jti = _payload(token)["jti"]
        later = tokens._now() + timedelta(minutes=61)
        tokens._now = lambda: later
        with pytest.raises(TokenExpiredError):
            tokens.validate(token)
        assert memory_store.get_token_record(user.id, jti) is None

    def test_tampered_signature(self, tokens, user):
        token = tokens.mint(user.id)
        header, payload, signature = token.split(".")
        with pytest.raises(InvalidTokenError):
            tokens.validate(f"{header}.{payload}.{signature[:-2]}xx")

    def test_other_secret_rejected(self, tokens, memory_store, user):
        other = TokenService(
            memory_store, Settings(jwt_secret="a-completely-different-secret-value-1234567")
        )
        with pytest.raises(InvalidTokenError):
            tokens.validate(other.mint(user.id))

    def test_alg_none_rejected(self, tokens, user):
        token = tokens.mint(user.id)
        _, payload, _ = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        with pytest.raises(InvalidTokenError):
            tokens.validate(f"{header}.{payload}.")

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "é.b.c"])
    def test_malformed(self, tokens, garbage):
        with pytest.raises(InvalidTokenError):
            tokens.validate(garbage)

    def test_non_ascii_signature_rejected(self, tokens, user):
        header, payload, _ = tokens.mint(user.id).split(".")
        with pytest.raises(InvalidTokenError):
            tokens.validate(f"{header}.{payload}.é")


class TestRevoke:
    def test_revoke_is_not_idempotent(self, tokens, user):
        jti = _payload(tokens.mint(user.id))["jti"]
        tokens.revoke(user.id, jti)
        with pytest.raises(NotFoundError):
            tokens.revoke(user.id, jti)

    def test_is_revoked_reflects_ledger(self, tokens, user):
        jti = _payload(tokens.mint(user.id))["jti"]
        assert tokens.is_revoked(user.id, jti) is False
        tokens.revoke(user.id, jti)
        assert tokens.is_revoked(user.id, jti) is True

    def test_unknown_pair_counts_as_revoked(self, tokens, user):
        assert tokens.is_revoked(user.id, "00000000-0000-0000-0000-000000000000")


@pytest.mark.parametrize(
    "header,expected",
    [
        (None, None),
        ("", None),
        ("Token abc", None),
        ("Bearer abc", "abc"),
        ("bearer abc", "abc"),
        ("Bearer ", None),
    ],
)
def test_extract_bearer(header, expected):
    assert TokenService.extract_bearer(header) == expected
