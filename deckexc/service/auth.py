from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from deckexc.config import Settings
from deckexc.logging import get_logger
from deckexc.service.captcha import CaptchaVerifier
from deckexc.service.errors import (
    AccountLockedError,
    AuthenticationError,
    DuplicateEmailError,
    ForbiddenError,
    InvalidAnswerError,
    InvalidCredentialsError,
    NotFoundError,
)
from deckexc.service.hashing import SecretHasher
from deckexc.service.tokens import TokenService
from deckexc.storage.errors import ConstraintViolation
from deckexc.storage.models import SecurityQuestion, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        password_hash: str,
        security_question: SecurityQuestion | str,
        answer_hash: str,
        *,
        roles: Optional[List[str]] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def set_login_state(
        self, user_id: str, failed_attempts: int, locked_until: Optional[datetime]
    ) -> Optional[User]: ...

    def update_credentials(
        self,
        user_id: str,
        *,
        password_hash: Optional[str] = None,
        answer_hash: Optional[str] = None,
    ) -> Optional[User]: ...

    def update_user_roles(self, user_id: str, roles: List[str]) -> Optional[User]: ...


@dataclass
class AuthContext:
    """Authenticated caller attached to a request by the bearer dependency."""

    user_id: str
    email: str
    jti: str
    roles: List[str] = field(default_factory=list)

    def allows(self, required_role: str) -> bool:
        return required_role in self.roles or "admin" in self.roles


@dataclass
class LoginResult:
    user_id: str
    email: str
    token: str


def remaining_seconds(locked_until: datetime, now: datetime) -> int:
    """Whole seconds left on a lock, rounded up so a live lock never reports 0."""
    return max(1, math.ceil((locked_until - now).total_seconds()))


class AuthService:
    """Registration, login with progressive lockout, and password reset."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        settings: Settings,
        *,
        captcha: Optional[CaptchaVerifier] = None,
        hasher: Optional[SecretHasher] = None,
    ) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self.settings = settings
        self.captcha = captcha
        self.hasher = hasher or SecretHasher()
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    @property
    def lockout_window(self) -> timedelta:
        return timedelta(minutes=self.settings.lockout_minutes)

    async def register(
        self,
        email: str,
        name: str,
        password: str,
        question: SecurityQuestion | str,
        answer: str,
    ) -> User:
        """Create an account. No token is issued; the user logs in afterwards."""
        try:
            user = self.store.create_user(
                email=email,
                name=name,
                password_hash=self.hasher.hash(password),
                security_question=SecurityQuestion(question),
                answer_hash=self.hasher.hash(answer),
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise DuplicateEmailError("email is already registered") from exc
            raise
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def login(
        self, email: str, password: str, captcha_token: Optional[str] = None
    ) -> LoginResult:
        """Authenticate by email and password.

        Lock state is checked before the password. An expired lock starts a
        fresh count. A wrong password bumps the failure counter and, once it
        reaches ``lockout_threshold``, locks the account for
        ``lockout_minutes``; the attempt itself still fails with the generic
        credentials error and only later attempts see the lock. The new state
        is stored before the error is raised. Success resets the counter and
        mints a token.
        """
        if self.captcha is not None:
            await self.captcha.verify(captcha_token)

        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.warning("login_unknown_email")
            raise InvalidCredentialsError("invalid credentials")

        now = self._now()
        locked_until = user.account_locked_until
        if locked_until and locked_until > now:
            self.logger.warning("login_while_locked", user_id=user.id)
            raise AccountLockedError(remaining_seconds(locked_until, now))

        # Lock window has elapsed: Locked(until) -> Unlocked(0)
        prior_attempts = 0 if locked_until else user.failed_login_attempts

        if not self.hasher.verify(user.password_hash, password):
            attempts = prior_attempts + 1
            if attempts >= self.settings.lockout_threshold:
                self.store.set_login_state(user.id, attempts, now + self.lockout_window)
                self.logger.warning(
                    "account_locked", user_id=user.id, failed_attempts=attempts
                )
            else:
                self.store.set_login_state(user.id, attempts, None)
                self.logger.warning(
                    "login_failed", user_id=user.id, failed_attempts=attempts
                )
            raise InvalidCredentialsError("invalid credentials")

        if user.failed_login_attempts or user.account_locked_until:
            self.store.set_login_state(user.id, 0, None)
        token = self.tokens.mint(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(user_id=user.id, email=user.email, token=token)

    async def reset_password(self, email: str, answer: str, new_password: str) -> None:
        """Replace the password after a correct security answer.

        Lockout state is left alone; a locked account stays locked.
        """
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("user not found")
        if not self.hasher.verify(user.answer_hash, answer):
            self.logger.warning("reset_answer_mismatch", user_id=user.id)
            raise InvalidAnswerError("security answer is incorrect")
        self.store.update_credentials(user.id, password_hash=self.hasher.hash(new_password))
        self.logger.info("password_reset", user_id=user.id)

    def get_security_question(self, email: str) -> SecurityQuestion:
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("user not found")
        return user.security_question

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    def grant_role(self, user_id: str, role: str) -> User:
        user = self.get_user(user_id)
        if role in user.roles:
            return user
        updated = self.store.update_user_roles(user_id, [*user.roles, role])
        self.logger.info("role_granted", user_id=user_id, role=role)
        return updated or user

    def check_auth_status(self, ctx: AuthContext) -> LoginResult:
        """Issue a fresh token for an already authenticated caller."""
        user = self.get_user(ctx.user_id)
        return LoginResult(user_id=user.id, email=user.email, token=self.tokens.mint(user.id))

    def authenticate(
        self, authorization: Optional[str], *, required_role: Optional[str] = None
    ) -> AuthContext:
        token = self.tokens.extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.tokens.validate(token)
        user = self.store.get_user(claims.user_id)
        if not user:
            raise AuthenticationError("user no longer exists")
        ctx = AuthContext(
            user_id=user.id, email=user.email, jti=claims.jti, roles=list(user.roles)
        )
        if required_role and not ctx.allows(required_role):
            raise ForbiddenError(f"{required_role} role required")
        return ctx

    def logout(self, ctx: AuthContext) -> None:
        self.tokens.revoke(ctx.user_id, ctx.jti)
