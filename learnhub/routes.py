"""
HTTP routes for the API.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from starlette.concurrency import run_in_threadpool

from learnhub import __version__
from learnhub.auth import AUTH_COOKIE_NAME, PrivyTokenVerifier, extract_token
from learnhub.config import Settings, get_settings
from learnhub.db import DbClient, UserRecord
from learnhub.dependencies import (
    get_current_user,
    get_db_client,
    get_payments_client,
    get_token_verifier,
)
from learnhub.errors import AuthenticationError, WebhookVerificationError
from learnhub.payments import PaymentsClient, apply_stripe_event, verify_webhook
from learnhub.schemas import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    HealthResponse,
    LessonListResponse,
    LessonResponse,
    LoginRequest,
    LogoutResponse,
    ProgressListResponse,
    ProgressResponse,
    ProgressUpdateRequest,
    SubscriptionResponse,
    SubscriptionStatusResponse,
    UserResponse,
    UserUpdateRequest,
    WebhookResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

ACTIVE_SUBSCRIPTION_STATUSES = {"active", "trialing"}


@router.get("/health", response_model=HealthResponse)
def health_check():
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
    )


@router.post("/auth/login", response_model=UserResponse)
def login(
    response: Response,
    payload: Optional[LoginRequest] = None,
    authorization: Optional[str] = Header(default=None),
    db: DbClient = Depends(get_db_client),
    verifier: PrivyTokenVerifier = Depends(get_token_verifier),
    settings: Settings = Depends(get_settings),
):
    """
    Exchange a Privy access token for a user row and an auth cookie. The
    user is created on first login.
    """
    token = extract_token(authorization, payload.access_token if payload else None)
    if not token:
        raise HTTPException(status_code=401, detail="Missing access token")
    try:
        claims = verifier.verify(token)
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=401, detail=str(exc), headers={"WWW-Authenticate": "Bearer"}
        ) from exc

    user = db.upsert_user(
        claims.user_id,
        email=payload.email if payload else None,
        display_name=payload.display_name if payload else None,
    )
    max_age = None
    if claims.expires_at:
        max_age = max(0, int(claims.expires_at - time.time()))
    response.set_cookie(
        AUTH_COOKIE_NAME,
        token,
        max_age=max_age,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    logger.info("User %s logged in", user.id)
    return UserResponse.model_validate(user)


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(response: Response, settings: Settings = Depends(get_settings)):
    response.delete_cookie(
        AUTH_COOKIE_NAME, httponly=True, secure=settings.is_production, samesite="lax"
    )
    return LogoutResponse()


@router.get("/auth/me", response_model=UserResponse)
def me(user: UserRecord = Depends(get_current_user)):
    return UserResponse.model_validate(user)


def _require_self(user_id: str, current: UserRecord) -> None:
    if user_id != current.id:
        raise HTTPException(status_code=403, detail="Cannot access another user")


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    user_id: str,
    current: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_self(user_id, current)
    user = db.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return UserResponse.model_validate(user)


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    user_id: str,
    payload: UserUpdateRequest,
    current: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_self(user_id, current)
    changes = payload.model_dump(exclude_unset=True)
    user = db.update_user(user_id, **changes) if changes else db.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return UserResponse.model_validate(user)


@router.get("/lessons", response_model=LessonListResponse)
def list_lessons(db: DbClient = Depends(get_db_client)):
    lessons = [LessonResponse.model_validate(lesson) for lesson in db.list_lessons()]
    return LessonListResponse(lessons=lessons, count=len(lessons))


@router.get("/progress", response_model=ProgressListResponse)
def list_progress(
    lesson_id: Optional[str] = Query(None, max_length=128),
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    records = db.list_progress(user.id, lesson_id=lesson_id)
    items = [ProgressResponse.model_validate(record) for record in records]
    return ProgressListResponse(progress=items, count=len(items))


@router.post("/progress", response_model=ProgressResponse)
def update_progress(
    payload: ProgressUpdateRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if not db.get_lesson(payload.lesson_id):
        raise HTTPException(status_code=404, detail="Lesson not found")
    record = db.record_progress(
        user.id,
        payload.lesson_id,
        status=payload.status,
        progress_percent=payload.progress_percent,
        score=payload.score,
    )
    return ProgressResponse.model_validate(record)


@router.post("/stripe/create-checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: Optional[CheckoutSessionRequest] = None,
    user: UserRecord = Depends(get_current_user),
    payments: PaymentsClient = Depends(get_payments_client),
    settings: Settings = Depends(get_settings),
):
    price_id = (payload.price_id if payload else None) or settings.stripe_price_id
    if not price_id:
        raise HTTPException(status_code=400, detail="No price configured for checkout")
    # Stripe substitutes {CHECKOUT_SESSION_ID} itself.
    success_url = f"{settings.app_url}/?payment=success&session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = f"{settings.app_url}/?payment=cancelled"
    try:
        session = payments.create_checkout_session(
            user=user,
            price_id=price_id,
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except stripe.StripeError as exc:
        logger.error("Stripe checkout failed for user %s: %s", user.id, exc)
        raise HTTPException(status_code=502, detail="Payment provider error") from exc
    return CheckoutSessionResponse(session_id=session.id, url=session.url)


@router.get("/stripe/subscription", response_model=SubscriptionStatusResponse)
def get_subscription(
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    record = db.get_latest_subscription(user.id)
    if not record:
        return SubscriptionStatusResponse(subscription=None)
    return SubscriptionStatusResponse(
        subscription=SubscriptionResponse(
            id=record.id,
            status=record.status,
            price_id=record.price_id,
            current_period_end=record.current_period_end,
            is_active=record.status in ACTIVE_SUBSCRIPTION_STATUSES,
        )
    )


@router.post("/stripe/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    """
    Stripe event delivery. The signature is checked against the raw body
    before anything is read from it.
    """
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=503, detail="Webhook secret not configured")
    payload = await request.body()
    try:
        event = verify_webhook(payload, stripe_signature, settings.stripe_webhook_secret)
    except WebhookVerificationError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    applied = await run_in_threadpool(apply_stripe_event, db, event)
    return WebhookResponse(received=True, duplicate=not applied)
