from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query

from deckexc.api.schemas import (
    AuthStatusResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PaymentDetailRequest,
    PaymentDetailResponse,
    PaymentDetailUpdateRequest,
    QuestionResponse,
    RegisterRequest,
    ResetPasswordRequest,
    TokenCheckRequest,
    TokenCheckResponse,
    UserResponse,
)
from deckexc.logging import get_logger
from deckexc.service.auth import AuthContext
from deckexc.service.errors import ForbiddenError, ValidationError
from deckexc.service.payments import PaymentDetailView
from deckexc.service.runtime import get_runtime
from deckexc.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/auth")

REGISTERED_MESSAGE = "User registered successfully"
PASSWORD_UPDATED_MESSAGE = "Password has been successfully updated."
PAYMENT_DELETED_MESSAGE = "Payment detail successfully deleted"
TOKEN_REMOVED_MESSAGE = "Token successfully revoked"
LOGGED_OUT_MESSAGE = "Logged out"


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer token into the calling user."""
    return get_runtime().auth.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().auth.authenticate(authorization, required_role="admin")


def _require_self_or_admin(principal: AuthContext, user_id: str) -> None:
    if principal.user_id != user_id and not principal.allows("admin"):
        logger.warning(
            "cross_user_access_denied", user_id=principal.user_id, target_user_id=user_id
        )
        raise ForbiddenError("cannot access another user's data")


def _parse_user_id(raw: str) -> str:
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        raise ValidationError("user id must be a valid UUID", detail={"field": "user_id"})


def _payment_data(view: PaymentDetailView) -> dict:
    return PaymentDetailResponse(
        id=view.id,
        user_id=view.user_id,
        card_number=view.card_number,
        cvc=view.cvc,
        expiration_date=view.expiration_date,
    ).model_dump(by_alias=True, exclude_none=True)


def _user_data(user: User) -> dict:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        roles=list(user.roles),
        question=user.security_question,
    ).model_dump(mode="json")


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account. The caller must log in afterwards to get a token.

    Raises:
        400: duplicate email or invalid fields
    """
    await get_runtime().auth.register(
        email=body.email,
        name=body.name,
        password=body.password,
        question=body.question,
        answer=body.answer,
    )
    return Envelope(status="ok", data=MessageResponse(message=REGISTERED_MESSAGE).model_dump())


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password and receive a bearer token.

    Raises:
        400: captcha missing or rejected (when captcha is enabled)
        401: invalid credentials, or the account is locked
        502/504: captcha verifier unavailable or timed out
    """
    result = await get_runtime().auth.login(
        email=body.email, password=body.password, captcha_token=body.captcha_token
    )
    return Envelope(
        status="ok",
        data=LoginResponse(email=result.email, token=result.token).model_dump(),
    )


@router.post("/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    await get_runtime().auth.reset_password(
        email=body.email, answer=body.answer, new_password=body.new_password
    )
    return Envelope(
        status="ok", data=MessageResponse(message=PASSWORD_UPDATED_MESSAGE).model_dump()
    )


@router.get("/question/{email}", response_model=Envelope, tags=["auth"])
async def security_question(email: str = Path(..., max_length=254)):
    question = get_runtime().auth.get_security_question(email)
    return Envelope(
        status="ok", data=QuestionResponse(question=question).model_dump(mode="json")
    )


@router.post("/payment", response_model=Envelope, status_code=201, tags=["payment"])
async def create_payment_detail(
    body: PaymentDetailRequest, principal: AuthContext = Depends(get_user)
):
    _require_self_or_admin(principal, body.user_id)
    view = get_runtime().payments.create(
        body.user_id, body.card_number, body.cvc, body.expiration_date
    )
    return Envelope(status="ok", data=_payment_data(view))


@router.get("/payment/{user_id}", response_model=Envelope, tags=["payment"])
async def read_payment_detail(
    user_id: str = Path(...), principal: AuthContext = Depends(get_user)
):
    user_id = _parse_user_id(user_id)
    _require_self_or_admin(principal, user_id)
    view = get_runtime().payments.read(user_id)
    return Envelope(status="ok", data=_payment_data(view))


@router.patch("/payment", response_model=Envelope, tags=["payment"])
async def update_payment_detail(
    body: PaymentDetailUpdateRequest, principal: AuthContext = Depends(get_user)
):
    _require_self_or_admin(principal, body.user_id)
    view = get_runtime().payments.update(
        body.user_id,
        card_number=body.card_number,
        cvc=body.cvc,
        expiration_date=body.expiration_date,
    )
    return Envelope(status="ok", data=_payment_data(view))


@router.delete("/payment/{user_id}", response_model=Envelope, tags=["payment"])
async def delete_payment_detail(
    user_id: str = Path(...), principal: AuthContext = Depends(get_user)
):
    user_id = _parse_user_id(user_id)
    _require_self_or_admin(principal, user_id)
    get_runtime().payments.delete(user_id)
    return Envelope(
        status="ok", data=MessageResponse(message=PAYMENT_DELETED_MESSAGE).model_dump()
    )


@router.post("/check", response_model=Envelope, tags=["tokens"])
async def check_token(body: TokenCheckRequest):
    """Report whether ``(userId, jti)`` is absent from the token ledger."""
    revoked = get_runtime().tokens.is_revoked(body.user_id, body.jti)
    return Envelope(
        status="ok",
        data=TokenCheckResponse(is_revoked=revoked).model_dump(by_alias=True),
    )


@router.post("/remove", response_model=Envelope, tags=["tokens"])
async def remove_token(body: TokenCheckRequest):
    """Revoke a token by deleting its ledger record.

    Raises:
        404: no ledger record for ``(userId, jti)``
    """
    get_runtime().tokens.revoke(body.user_id, body.jti)
    return Envelope(
        status="ok", data=MessageResponse(message=TOKEN_REMOVED_MESSAGE).model_dump()
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    get_runtime().auth.logout(principal)
    return Envelope(
        status="ok", data=MessageResponse(message=LOGGED_OUT_MESSAGE).model_dump()
    )


@router.get("/status", response_model=Envelope, tags=["auth"])
async def auth_status(principal: AuthContext = Depends(get_user)):
    """Return the caller's profile with a freshly minted token."""
    runtime = get_runtime()
    result = runtime.auth.check_auth_status(principal)
    user = runtime.auth.get_user(result.user_id)
    return Envelope(
        status="ok",
        data=AuthStatusResponse(
            id=user.id,
            email=user.email,
            name=user.name,
            roles=list(user.roles),
            token=result.token,
        ).model_dump(),
    )


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    users = get_runtime().auth.list_users(limit=limit)
    return Envelope(status="ok", data={"users": [_user_data(u) for u in users]})


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(
    user_id: str = Path(...), principal: AuthContext = Depends(get_user)
):
    user_id = _parse_user_id(user_id)
    _require_self_or_admin(principal, user_id)
    user = get_runtime().auth.get_user(user_id)
    return Envelope(status="ok", data=_user_data(user))
