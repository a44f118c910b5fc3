from fastapi import APIRouter, Depends

from examprep.api.deps import get_container, get_current_user_id
from examprep.core.container import Container

router = APIRouter()


@router.get("/categories")
def category_performance(user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)):
    return [c.to_dict() for c in container.performance.get_category_performance(user_id)]


@router.get("/stats")
def user_stats(user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)):
    return container.performance.get_user_stats(user_id).to_dict()
