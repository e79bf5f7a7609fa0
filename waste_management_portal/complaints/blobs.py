import logging
import uuid

from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage

from .exceptions import NotFound, StorageFault

logger = logging.getLogger(__name__)


class DjangoStorageBlobStore:
    """Stores evidence images as opaque blobs in a Django storage backend.

    References returned by ``put`` are storage names; callers must treat them
    as opaque and only hand them back to ``get``.
    """

    def __init__(self, storage=None, prefix=None):
        self.storage = storage or default_storage
        self.prefix = (prefix or settings.EVIDENCE_UPLOAD_DIR).strip("/")

    def put(self, data: bytes, extension: str = "") -> str:
        extension = extension.lower()
        if extension and not extension.startswith("."):
            extension = f".{extension}"
        name = f"{self.prefix}/{uuid.uuid4().hex}{extension}"
        try:
            return self.storage.save(name, ContentFile(data))
        except OSError as exc:
            logger.exception("Failed to store evidence blob", extra={"blob_name": name})
            raise StorageFault("Could not store evidence image.") from exc

    def get(self, reference: str) -> bytes:
        if not reference:
            raise NotFound("Evidence not found.")
        try:
            with self.storage.open(reference, "rb") as handle:
                return handle.read()
        except FileNotFoundError:
            raise NotFound("Evidence not found.")
        except OSError as exc:
            logger.exception("Failed to read evidence blob", extra={"blob_name": reference})
            raise StorageFault("Could not read evidence image.") from exc
