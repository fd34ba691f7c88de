"""Unit tests for the auth service.

Tests for:
- Registration and duplicate email handling
- Login with progressive lockout
- Password reset via security answer
- Security question lookup
- Bearer authentication and role checks
"""

import asyncio
from datetime import timedelta

import pytest

from deckexc.config import Settings
from deckexc.service.auth import AuthService, remaining_seconds
from deckexc.service.errors import (
    AccountLockedError,
    AuthenticationError,
    DuplicateEmailError,
    ForbiddenError,
    InvalidAnswerError,
    InvalidCredentialsError,
    NotFoundError,
    TokenRevokedError,
)
from deckexc.service.tokens import TokenService
from deckexc.storage.memory import MemoryStore
from deckexc.storage.models import SecurityQuestion

PASSWORD = "Secret1!"


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        lockout_threshold=3,
        lockout_minutes=3,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def token_service(memory_store, settings):
    return TokenService(memory_store, settings)


@pytest.fixture
def auth_service(memory_store, token_service, settings):
    return AuthService(memory_store, token_service, settings)


@pytest.fixture
def registered_user(auth_service):
    async def _register():
        return await auth_service.register(
            email="ana@example.com",
            name="Ana",
            password=PASSWORD,
            question=SecurityQuestion.PAIS,
            answer="Chile",
        )

    return asyncio.run(_register())


def _freeze(auth_service, moment):
    auth_service._now = lambda: moment


class TestRegistration:
    async def test_register_stores_hashes_not_plaintext(self, auth_service, memory_store):
        user = await auth_service.register(
            email="  Bob@Example.com ",
            name="Bob",
            password=PASSWORD,
            question="comida",
            answer="Pizza",
        )
        stored = memory_store.get_user(user.id)
        assert stored.email == "bob@example.com"
        assert stored.password_hash != PASSWORD
        assert stored.answer_hash != "Pizza"
        assert stored.roles == ["user"]
        assert stored.failed_login_attempts == 0
        assert stored.account_locked_until is None

    async def test_register_does_not_issue_token(self, auth_service, memory_store):
        user = await auth_service.register(
            email="bob@example.com", name="Bob", password=PASSWORD, question="pais", answer="Peru"
        )
        assert not [k for k in memory_store.tokens if k[0] == user.id]

    async def test_duplicate_email_rejected(self, auth_service, registered_user):
        with pytest.raises(DuplicateEmailError):
            await auth_service.register(
                email="ANA@example.com",
                name="Other",
                password=PASSWORD,
                question="pais",
                answer="Chile",
            )


class TestLogin:
    async def test_login_returns_token_for_user(self, auth_service, token_service, registered_user):
        result = await auth_service.login("ana@example.com", PASSWORD)
        assert result.email == "ana@example.com"
        claims = token_service.validate(result.token)
        assert claims.user_id == registered_user.id

    async def test_unknown_email_is_invalid_credentials(self, auth_service):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("nobody@example.com", PASSWORD)

    async def test_email_lookup_is_exact(self, auth_service, registered_user):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("ANA@example.com", PASSWORD)

    async def test_wrong_password_increments_counter(self, auth_service, memory_store, registered_user):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("ana@example.com", "Wrong1!")
        stored = memory_store.get_user(registered_user.id)
        assert stored.failed_login_attempts == 1
        assert stored.account_locked_until is None

    async def test_threshold_failure_locks_account(self, auth_service, memory_store, registered_user):
        start = auth_service._now()
        _freeze(auth_service, start)
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("ana@example.com", "Wrong1!")
        stored = memory_store.get_user(registered_user.id)
        assert stored.failed_login_attempts == 3
        assert stored.account_locked_until == start + timedelta(minutes=3)

        with pytest.raises(AccountLockedError) as exc_info:
            await auth_service.login("ana@example.com", "Wrong1!")
        assert exc_info.value.remaining_seconds == 180
        assert memory_store.get_user(registered_user.id).failed_login_attempts == 3

    async def test_correct_password_rejected_while_locked(self, auth_service, registered_user):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("ana@example.com", "Wrong1!")
        with pytest.raises(AccountLockedError) as exc_info:
            await auth_service.login("ana@example.com", PASSWORD)
        assert 0 < exc_info.value.remaining_seconds <= 180

    async def test_login_succeeds_after_window_and_resets_state(
        self, auth_service, memory_store, registered_user
    ):
        start = auth_service._now()
        _freeze(auth_service, start)
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("ana@example.com", "Wrong1!")

        _freeze(auth_service, start + timedelta(minutes=3, seconds=1))
        result = await auth_service.login("ana@example.com", PASSWORD)
        assert result.token
        stored = memory_store.get_user(registered_user.id)
        assert stored.failed_login_attempts == 0
        assert stored.account_locked_until is None

    async def test_wrong_password_after_window_starts_fresh_count(
        self, auth_service, memory_store, registered_user
    ):
        start = auth_service._now()
        _freeze(auth_service, start)
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("ana@example.com", "Wrong1!")

        _freeze(auth_service, start + timedelta(minutes=3, seconds=1))
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("ana@example.com", "Wrong1!")
        stored = memory_store.get_user(registered_user.id)
        assert stored.failed_login_attempts == 1
        assert stored.account_locked_until is None

    async def test_remaining_seconds_counts_down(self, auth_service, registered_user):
        start = auth_service._now()
        _freeze(auth_service, start)
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("ana@example.com", "Wrong1!")
        _freeze(auth_service, start + timedelta(seconds=100))
        with pytest.raises(AccountLockedError) as exc_info:
            await auth_service.login("ana@example.com", PASSWORD)
        assert exc_info.value.remaining_seconds == 80

    async def test_success_resets_partial_failures(self, auth_service, memory_store, registered_user):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("ana@example.com", "Wrong1!")
        await auth_service.login("ana@example.com", PASSWORD)
        assert memory_store.get_user(registered_user.id).failed_login_attempts == 0

    async def test_threshold_is_configurable(self, memory_store, token_service, registered_user):
        settings = Settings(
            jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!", lockout_threshold=1
        )
        service = AuthService(memory_store, token_service, settings)
        with pytest.raises(InvalidCredentialsError):
            await service.login("ana@example.com", "Wrong1!")
        with pytest.raises(AccountLockedError):
            await service.login("ana@example.com", PASSWORD)


def test_remaining_seconds_rounds_up(auth_service):
    now = auth_service._now()
    assert remaining_seconds(now + timedelta(seconds=1, milliseconds=1), now) == 2
    assert remaining_seconds(now + timedelta(milliseconds=1), now) == 1


class TestPasswordReset:
    async def test_reset_with_correct_answer(self, auth_service, registered_user):
        await auth_service.reset_password("ana@example.com", "Chile", "Changed2?")
        result = await auth_service.login("ana@example.com", "Changed2?")
        assert result.token
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("ana@example.com", PASSWORD)

    async def test_reset_with_wrong_answer(self, auth_service, registered_user):
        with pytest.raises(InvalidAnswerError):
            await auth_service.reset_password("ana@example.com", "Peru", "Changed2?")
        assert (await auth_service.login("ana@example.com", PASSWORD)).token

    async def test_reset_unknown_email(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.reset_password("ghost@example.com", "Chile", "Changed2?")

    async def test_reset_does_not_clear_lock(self, auth_service, memory_store, registered_user):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("ana@example.com", "Wrong1!")
        await auth_service.reset_password("ana@example.com", "Chile", "Changed2?")
        with pytest.raises(AccountLockedError):
            await auth_service.login("ana@example.com", "Changed2?")


class TestSecurityQuestion:
    def test_returns_question(self, auth_service, registered_user):
        assert auth_service.get_security_question("ana@example.com") is SecurityQuestion.PAIS

    def test_unknown_email(self, auth_service):
        with pytest.raises(NotFoundError):
            auth_service.get_security_question("ghost@example.com")


class TestAuthenticate:
    async def test_bearer_resolves_context(self, auth_service, registered_user):
        result = await auth_service.login("ana@example.com", PASSWORD)
        ctx = auth_service.authenticate(f"Bearer {result.token}")
        assert ctx.user_id == registered_user.id
        assert ctx.roles == ["user"]
        assert len(ctx.jti) == 36

    def test_missing_header(self, auth_service):
        with pytest.raises(AuthenticationError):
            auth_service.authenticate(None)
        with pytest.raises(AuthenticationError):
            auth_service.authenticate("Basic abc")

    async def test_admin_role_required(self, auth_service, registered_user):
        result = await auth_service.login("ana@example.com", PASSWORD)
        with pytest.raises(ForbiddenError):
            auth_service.authenticate(f"Bearer {result.token}", required_role="admin")
        auth_service.grant_role(registered_user.id, "admin")
        ctx = auth_service.authenticate(f"Bearer {result.token}", required_role="admin")
        assert "admin" in ctx.roles

    async def test_logout_revokes_presented_token(self, auth_service, registered_user):
        result = await auth_service.login("ana@example.com", PASSWORD)
        ctx = auth_service.authenticate(f"Bearer {result.token}")
        auth_service.logout(ctx)
        with pytest.raises(TokenRevokedError):
            auth_service.authenticate(f"Bearer {result.token}")

    async def test_check_auth_status_mints_new_token(self, auth_service, registered_user):
        result = await auth_service.login("ana@example.com", PASSWORD)
        ctx = auth_service.authenticate(f"Bearer {result.token}")
        refreshed = auth_service.check_auth_status(ctx)
        assert refreshed.token != result.token
        assert auth_service.authenticate(f"Bearer {refreshed.token}").user_id == ctx.user_id
