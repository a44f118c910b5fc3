import secrets

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials

from examprep.api.deps import bearer, get_container
from examprep.core.container import Container
from examprep.core.errors import EngineError, Unauthorized

router = APIRouter()


@router.post("/delete-expired")
def delete_expired_uploads(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
    container: Container = Depends(get_container),
):
    """Scheduled job: drop expired uploads of non-subscribers."""
    settings = container.settings
    expected = settings.CRON_SECRET
    if expected is None:
        if settings.is_production():
            raise EngineError("Cron secret not configured")
    elif creds is None or not secrets.compare_digest(creds.credentials, expected.get_secret_value()):
        raise Unauthorized()

    deleted = container.uploads.delete_expired()
    return {"success": True, "deleted": deleted}
