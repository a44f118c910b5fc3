from datetime import datetime
from typing import List, Optional
import asyncio

from fastapi import APIRouter, Depends, File, Query, UploadFile
from pydantic import BaseModel, Field

from examprep.api.deps import ai_rate_limit, get_container, get_current_user_id
from examprep.api.tests import TestOut, to_test_out
from examprep.core.container import Container
from examprep.models.records import UploadRecord
from examprep.services.lifecycle import UploadSource

router = APIRouter()


class UploadOut(BaseModel):
    id: str
    filename: str
    file_size: int
    status: str
    error_message: Optional[str] = None
    content_preview: str = ""
    created_at: datetime
    expires_at: Optional[datetime] = None


class UploadPage(BaseModel):
    uploads: List[UploadOut]
    total: int
    limit: int
    offset: int


class GenerateFromUpload(BaseModel):
    count: int = Field(default=20)


def to_upload_out(upload: UploadRecord) -> UploadOut:
    return UploadOut(
        id=upload.id,
        filename=upload.filename,
        file_size=upload.file_size,
        status=upload.status.value,
        error_message=upload.error_message,
        content_preview=(upload.extracted_content or "")[:500],
        created_at=upload.created_at,
        expires_at=upload.expires_at,
    )


@router.get("/entitlement")
def upload_entitlement(user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)):
    return container.entitlements.can_upload_file(user_id).to_dict()


@router.post("", response_model=UploadOut, status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    user_id: str = Depends(ai_rate_limit),
    container: Container = Depends(get_container),
):
    data = await file.read()
    # extraction and the store write block; keep them off the event loop
    upload = await asyncio.to_thread(container.uploads.upload, user_id, file.filename or "", data)
    return to_upload_out(upload)


@router.get("", response_model=UploadPage)
def list_uploads(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    uploads, total = container.uploads.list_uploads(user_id, limit=limit, offset=offset)
    return UploadPage(uploads=[to_upload_out(u) for u in uploads], total=total, limit=limit, offset=offset)


@router.get("/{upload_id}", response_model=UploadOut)
def get_upload(upload_id: str, user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)):
    return to_upload_out(container.uploads.get_upload(user_id, upload_id))


@router.delete("/{upload_id}")
def delete_upload(upload_id: str, user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)):
    container.uploads.delete_upload(user_id, upload_id)
    return {"success": True}


@router.post("/{upload_id}/tests", response_model=TestOut, status_code=201)
async def generate_from_upload(
    upload_id: str,
    payload: Optional[GenerateFromUpload] = None,
    user_id: str = Depends(ai_rate_limit),
    container: Container = Depends(get_container),
):
    count = payload.count if payload else 20
    test = await container.lifecycle.start_test(user_id, UploadSource(upload_id=upload_id, count=count))
    return to_test_out(test)
