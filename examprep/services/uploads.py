"""
Course-material uploads: quota check, validation, extraction, storage.
"""
from datetime import datetime, timedelta
from typing import Callable, List, Sequence, Tuple
from uuid import uuid4
import logging
import os

from examprep.core.errors import NotFound, QuotaExceeded, ValidationFailed
from examprep.models.base import utcnow
from examprep.models.records import UploadRecord, UploadStatus
from examprep.services.entitlements import EntitlementResolver
from examprep.services.extraction import ExtractionError, extract_text
from examprep.services.storage import ObjectStorage
from examprep.stores.base import Store

logger = logging.getLogger(__name__)


class UploadService:

    def __init__(
        self,
        store: Store,
        storage: ObjectStorage,
        entitlements: EntitlementResolver,
        allowed_extensions: Sequence[str] = (".pdf", ".pptx", ".txt", ".md"),
        max_size: int = 25 * 1024 * 1024,
        expiry_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.storage = storage
        self.entitlements = entitlements
        self.allowed_extensions = {e.lower() for e in allowed_extensions}
        self.max_size = max_size
        self.expiry_days = expiry_days
        self.clock = clock

    def _validate(self, filename: str, data: bytes) -> None:
        if not filename:
            raise ValidationFailed("No file provided", field="file")
        ext = os.path.splitext(filename)[1].lower()
        if ext not in self.allowed_extensions:
            allowed = ", ".join(sorted(self.allowed_extensions))
            raise ValidationFailed(f"Invalid file type. Allowed: {allowed}", field="file")
        if not data:
            raise ValidationFailed("File is empty", field="file")
        if len(data) > self.max_size:
            raise ValidationFailed(
                f"File too large. Maximum size is {self.max_size // (1024 * 1024)}MB", field="file"
            )

    def upload(self, user_id: str, filename: str, data: bytes) -> UploadRecord:
        check = self.entitlements.can_upload_file(user_id)
        if not check.allowed:
            raise QuotaExceeded("uploads", check.used, check.limit, check.reason)

        self._validate(filename, data)
        try:
            content = extract_text(filename, data)
        except ExtractionError as e:
            raise ValidationFailed(str(e), field="file") from e
        if not content:
            raise ValidationFailed("No readable text found in file", field="file")

        self.store.create_user(user_id)
        path = self.storage.put(user_id, filename, data)
        now = self.clock()
        try:
            upload = self.store.insert_upload(UploadRecord(
                id=str(uuid4()),
                user_id=user_id,
                filename=filename,
                file_path=path,
                file_size=len(data),
                extracted_content=content,
                status=UploadStatus.READY,
                created_at=now,
                expires_at=now + timedelta(days=self.expiry_days),
            ))
        except Exception:
            self.storage.delete(path)
            raise

        self.entitlements.record_upload(user_id)
        logger.info(f"User {user_id} uploaded {filename} ({len(data)} bytes) as {upload.id}")
        return upload

    def get_upload(self, user_id: str, upload_id: str) -> UploadRecord:
        upload = self.store.get_upload(upload_id, user_id)
        if upload is None:
            raise NotFound("upload", upload_id)
        return upload

    def list_uploads(self, user_id: str, limit: int = 50, offset: int = 0) -> Tuple[List[UploadRecord], int]:
        return self.store.list_uploads(user_id, limit=limit, offset=offset)

    def delete_upload(self, user_id: str, upload_id: str) -> None:
        upload = self.get_upload(user_id, upload_id)
        self.store.delete_upload(upload_id, user_id)
        self.storage.delete(upload.file_path)
        logger.info(f"Deleted upload {upload_id} for user {user_id}")

    def delete_expired(self, limit: int = 500) -> int:
        """Remove expired uploads of users without an active subscription. Returns how many went."""
        deleted = 0
        for upload in self.store.list_expired_uploads(self.clock(), limit=limit):
            try:
                self.storage.delete(upload.file_path)
            except OSError as e:
                logger.error(f"Could not remove stored object {upload.file_path}: {e}")
                continue
            if self.store.delete_upload(upload.id, upload.user_id):
                deleted += 1
        logger.info(f"Auto-delete removed {deleted} expired uploads")
        return deleted
