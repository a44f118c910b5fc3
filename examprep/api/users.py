from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from examprep.api.deps import get_container, get_current_user_id
from examprep.core.container import Container
from examprep.models.records import Preferences, UserRecord

router = APIRouter()


class SettingsUpdate(BaseModel):
    name: Optional[str] = None
    preferences: Optional[Preferences] = None


class SettingsOut(BaseModel):
    name: str
    email: str
    preferences: Preferences


def to_settings_out(user: UserRecord) -> SettingsOut:
    return SettingsOut(name=user.name, email=user.email, preferences=user.preferences)


@router.get("/me/settings", response_model=SettingsOut)
def get_settings(user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)):
    return to_settings_out(container.users.get_settings(user_id))


@router.post("/me/settings", response_model=SettingsOut)
def update_settings(
    payload: SettingsUpdate,
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    user = container.users.update_settings(user_id, name=payload.name, preferences=payload.preferences)
    return to_settings_out(user)
