"""FastAPI dependency injection."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.config import get_settings
from storefront.database import get_session_factory
from storefront.models import User

from api.repositories.idempotency import IdempotencyRecordRepository
from api.repositories.unit_of_work import Repositories
from api.services.checkout import CheckoutSessionManager
from api.services.idempotency_store import IdempotencyStore
from api.services.notifications import Notifier
from api.services.payment_intents import PaymentIntentManager
from api.services.stripe_gateway import StripeGateway
from api.services.subscriptions import SubscriptionLifecycleManager
from api.services.webhook_processor import WebhookEventProcessor

USER_AUTH_COOKIE_NAME = "storefront_token"
IDEMPOTENCY_HEADERS = ("idempotency-key", "x-idempotency-key")


def _safe_token_version(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return 0
        try:
            return int(stripped)
        except ValueError:
            return 0
    return 0


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def _extract_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        token = auth[7:].strip()
        return token or None
    return None


def _decode_token(request: Request) -> dict:
    """Decode JWT from Authorization header or auth cookie."""
    settings = get_settings()
    raw_token = _extract_bearer_token(request) or (
        request.cookies.get(USER_AUTH_COOKIE_NAME, "").strip() or None
    )
    if not raw_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    try:
        payload = jwt.decode(raw_token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return payload


async def get_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
    payload = _decode_token(request)
    user_id = payload.get("sub", "")
    user = await db.get(User, user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    token_version = _safe_token_version(payload.get("tv", 0))
    if _safe_token_version(getattr(user, "token_version", 0)) != token_version:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token is no longer valid",
        )
    return user


def get_idempotency_key(request: Request) -> str | None:
    for header in IDEMPOTENCY_HEADERS:
        value = request.headers.get(header, "").strip()
        if value:
            return value
    return None


def get_repositories(db: AsyncSession = Depends(get_db)) -> Repositories:
    return Repositories.for_session(db)


def get_gateway() -> StripeGateway:
    return StripeGateway.from_settings(get_settings())


def get_notifier() -> Notifier:
    return Notifier.from_settings(get_settings())


def get_idempotency_store() -> IdempotencyStore:
    return IdempotencyStore.from_settings(
        IdempotencyRecordRepository(get_session_factory()), get_settings()
    )


def get_payment_intent_manager(
    repos: Repositories = Depends(get_repositories),
    gateway: StripeGateway = Depends(get_gateway),
) -> PaymentIntentManager:
    return PaymentIntentManager(repos, gateway)


def get_checkout_manager(
    repos: Repositories = Depends(get_repositories),
    gateway: StripeGateway = Depends(get_gateway),
    store: IdempotencyStore = Depends(get_idempotency_store),
) -> CheckoutSessionManager:
    return CheckoutSessionManager(repos, gateway, store, settings=get_settings())


def get_subscription_manager(
    repos: Repositories = Depends(get_repositories),
    gateway: StripeGateway = Depends(get_gateway),
    store: IdempotencyStore = Depends(get_idempotency_store),
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(repos, gateway, store, settings=get_settings())


def get_webhook_processor(
    repos: Repositories = Depends(get_repositories),
    gateway: StripeGateway = Depends(get_gateway),
    checkout: CheckoutSessionManager = Depends(get_checkout_manager),
    subscriptions: SubscriptionLifecycleManager = Depends(get_subscription_manager),
    notifier: Notifier = Depends(get_notifier),
) -> WebhookEventProcessor:
    return WebhookEventProcessor(
        repos,
        gateway,
        checkout=checkout,
        subscriptions=subscriptions,
        notifier=notifier,
    )
