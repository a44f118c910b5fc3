from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from examprep.api.deps import get_container, get_current_user_id
from examprep.core.container import Container
from examprep.models.records import UserRecord

router = APIRouter()


def require_admin(user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)) -> str:
    container.admin.require_admin(user_id)
    return user_id


class AdminUserOut(BaseModel):
    id: str
    email: str
    name: str
    subscription_status: str
    stripe_customer_id: Optional[str] = None
    created_at: Optional[datetime] = None
    test_count: Optional[int] = None


class AdminUserPage(BaseModel):
    users: List[AdminUserOut]
    total: int
    limit: int
    offset: int


class SubscriberPage(BaseModel):
    subscribers: List[AdminUserOut]
    total: int
    cancelled: int
    monthly_revenue: int


def to_admin_user_out(user: UserRecord, test_count: Optional[int] = None) -> AdminUserOut:
    return AdminUserOut(
        id=user.id,
        email=user.email,
        name=user.name,
        subscription_status=user.subscription_status.value,
        stripe_customer_id=user.stripe_customer_id,
        created_at=user.created_at,
        test_count=test_count,
    )


@router.get("/stats", dependencies=[Depends(require_admin)])
def platform_stats(container: Container = Depends(get_container)):
    return container.admin.stats().to_dict()


@router.get("/users", response_model=AdminUserPage, dependencies=[Depends(require_admin)])
def list_users(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    container: Container = Depends(get_container),
):
    rows, total = container.admin.list_users(limit=limit, offset=offset)
    return AdminUserPage(
        users=[to_admin_user_out(r.user, r.test_count) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/subscriptions", response_model=SubscriberPage, dependencies=[Depends(require_admin)])
def list_subscriptions(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    container: Container = Depends(get_container),
):
    overview = container.admin.list_subscribers(limit=limit, offset=offset)
    return SubscriberPage(
        subscribers=[to_admin_user_out(u) for u in overview.subscribers],
        total=overview.total,
        cancelled=overview.cancelled,
        monthly_revenue=overview.monthly_revenue,
    )
