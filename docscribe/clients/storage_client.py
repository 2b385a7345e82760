"""
Object storage client (Supabase Storage REST API).

Paths are always namespaced as ``{user_id}/{document_id}/...``.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import quote

import requests

from docscribe.config import config
from docscribe.errors import StorageError, StorageUnavailableError

logger = logging.getLogger(__name__)


def original_path(user_id: str, document_id: str, kind: str) -> str:
    """Canonical storage path of an uploaded original"""
    suffix = ".pdf" if kind == "pdf" else ""
    return f"{user_id}/{document_id}/original{suffix}"


def page_path(user_id: str, document_id: str, page_number: int) -> str:
    """Canonical storage path of a rendered page image"""
    return f"{user_id}/{document_id}/pages/page-{page_number}.jpg"


class ObjectStorage(ABC):
    """Binary storage interface consumed by the core"""

    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def public_url(self, path: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def download(self, path: str) -> bytes:
        raise NotImplementedError


class SupabaseStorageClient(ObjectStorage):
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        bucket: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or config.SUPABASE_URL).rstrip("/")
        self.api_key = api_key or config.SUPABASE_SERVICE_KEY
        self.bucket = bucket or config.STORAGE_BUCKET
        self.timeout = timeout or config.STORAGE_TIMEOUT
        self.session = session or requests.Session()
        if not self.base_url:
            raise ValueError("SUPABASE_URL environment variable not set")

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "apikey": self.api_key or "",
        }
        if extra:
            headers.update(extra)
        return headers

    def _object_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(path)}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.error("Storage unreachable (%s %s): %s", method, url, e)
            raise StorageUnavailableError(f"Storage unreachable: {e}") from e

        if response.status_code >= 400:
            detail = response.text[:200] if response.text else response.reason
            logger.error("Storage %s %s failed: %s %s", method, url, response.status_code, detail)
            raise StorageError(f"Storage request failed ({response.status_code}): {detail}")
        return response

    def upload(self, path, data, content_type):
        self._request(
            "POST",
            self._object_url(path),
            data=data,
            headers=self._headers({
                "Content-Type": content_type,
                "cache-control": "3600",
                "x-upsert": "true",
            }),
        )
        logger.info("Uploaded %d bytes to %s", len(data), path)
        return self.public_url(path)

    def public_url(self, path):
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{quote(path)}"

    def download(self, path):
        return self._request("GET", self._object_url(path), headers=self._headers()).content
