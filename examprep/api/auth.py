from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from examprep.api.deps import get_container
from examprep.core.auth import create_token
from examprep.core.container import Container

router = APIRouter()


class MockLogin(BaseModel):
    user_id: str
    email: str = ""
    name: str = ""


@router.post("/mock-login")
def mock_login(payload: MockLogin, container: Container = Depends(get_container)):
    settings = container.settings
    if settings.is_production():
        raise HTTPException(status_code=404, detail="Not found")
    container.users.ensure_user(payload.user_id, email=payload.email, name=payload.name)
    token = create_token(
        payload.user_id,
        settings.SECRET_KEY.get_secret_value(),
        algorithm=settings.ALGORITHM,
        ttl_minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES,
        email=payload.email,
        name=payload.name,
    )
    return {"access_token": token, "token_type": "bearer", "user_id": payload.user_id}
