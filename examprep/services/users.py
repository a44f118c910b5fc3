"""
User directory: idempotent creation and user-owned settings.
"""
from typing import Any, Mapping, Optional, Tuple
import logging

from examprep.core.errors import NotFound, ValidationFailed
from examprep.models.records import Preferences, UserRecord
from examprep.stores.base import Store

logger = logging.getLogger(__name__)


def profile_from_identity(data: Mapping[str, Any]) -> Tuple[str, str]:
    """(email, name) from an identity provider user payload."""
    addresses = data.get("email_addresses") or []
    email = ""
    if addresses and isinstance(addresses[0], Mapping):
        email = addresses[0].get("email_address") or ""
    name = " ".join(p for p in (data.get("first_name"), data.get("last_name")) if p)
    return email, name or email.split("@")[0]


class UserDirectory:

    def __init__(self, store: Store):
        self.store = store

    def ensure_user(self, user_id: str, email: str = "", name: str = "") -> UserRecord:
        user, created = self.store.create_user(user_id, email=email, name=name)
        if created:
            logger.info(f"Created user {user_id}")
        return user

    def handle_identity_event(self, event: Mapping[str, Any]) -> Optional[UserRecord]:
        event_type = event.get("type")
        if event_type != "user.created":
            logger.info(f"Ignoring identity event {event_type}")
            return None
        data = event.get("data") or {}
        user_id = data.get("id")
        if not user_id:
            raise ValidationFailed("Identity event carries no user id", field="data.id")
        email, name = profile_from_identity(data)
        return self.ensure_user(user_id, email=email, name=name)

    def get_settings(self, user_id: str) -> UserRecord:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound("user", user_id)
        return user

    def update_settings(
        self,
        user_id: str,
        name: Optional[str] = None,
        preferences: Optional[Preferences] = None,
    ) -> UserRecord:
        if name is not None:
            name = name.strip()
            if not name or len(name) > 255:
                raise ValidationFailed("Name must be between 1 and 255 characters", field="name")
        user = self.store.update_profile(user_id, name=name, preferences=preferences)
        if user is None:
            raise NotFound("user", user_id)
        return user
