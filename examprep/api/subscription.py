from fastapi import APIRouter, Depends

from examprep.api.deps import get_container, get_current_user_id
from examprep.core.container import Container
from examprep.core.errors import ValidationFailed

router = APIRouter()


@router.get("/status")
def subscription_status(user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)):
    return container.entitlements.snapshot(user_id).to_dict()


@router.post("/checkout")
def start_checkout(user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)):
    user = container.users.get_settings(user_id)
    return {"url": container.billing.start_checkout(user_id, user.email)}


@router.post("/portal")
def open_portal(user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)):
    user = container.users.get_settings(user_id)
    if not user.stripe_customer_id:
        raise ValidationFailed("No billing account found", field="stripe_customer_id")
    return {"url": container.billing.open_billing_portal(user.stripe_customer_id)}
