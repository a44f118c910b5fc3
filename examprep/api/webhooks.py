import asyncio
import logging
import secrets

from fastapi import APIRouter, Depends, Header, Request

from examprep.api.deps import get_container
from examprep.core.container import Container
from examprep.core.errors import EngineError, InvalidWebhook

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/billing")
async def billing_webhook(
    request: Request,
    stripe_signature: str = Header(default=None, alias="Stripe-Signature"),
    container: Container = Depends(get_container),
):
    """Verify, translate and apply one billing event.

    Business mismatches answer 200 so the provider stops redelivering;
    store failures answer 503 so it tries again.
    """
    payload = await request.body()
    event = container.billing.parse_event(payload, stripe_signature)
    outcome = await asyncio.to_thread(container.subscriptions.apply_billing_event, event)
    return {"received": True, "outcome": outcome.value}


@router.post("/identity")
async def identity_webhook(
    request: Request,
    webhook_secret: str = Header(default=None, alias="X-Webhook-Secret"),
    container: Container = Depends(get_container),
):
    settings = container.settings
    expected = settings.IDENTITY_WEBHOOK_SECRET
    if expected is None:
        if settings.is_production():
            raise EngineError("Identity webhook secret not configured")
        logger.info("Identity webhook accepted without verification (no secret configured)")
    elif not webhook_secret or not secrets.compare_digest(webhook_secret, expected.get_secret_value()):
        raise InvalidWebhook("invalid signature")

    try:
        event = await request.json()
    except ValueError as e:
        raise InvalidWebhook("invalid payload") from e
    if not isinstance(event, dict):
        raise InvalidWebhook("invalid payload")

    user = await asyncio.to_thread(container.users.handle_identity_event, event)
    return {"received": True, "user_id": user.id if user else None}
