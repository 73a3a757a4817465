"""
Radio Generator — Program storage

Uploads finished programs and returns the public URL stored on the job.
Two backends: Bunny.net storage (CDN) and Supabase Storage.
"""

import logging
import os
import secrets
import time
from email.utils import formatdate

import httpx

from jobs import get_supabase

logger = logging.getLogger(__name__)

STORAGE_BACKEND = os.environ.get("STORAGE_BACKEND", "bunny")
STORAGE_BUCKET = os.environ.get("STORAGE_BUCKET", "radio-programs")

_BUNNY_STORAGE_HOST = "https://storage.bunnycdn.com"
_UPLOAD_TIMEOUT_S = 60


class UploadError(RuntimeError):
    pass


class BunnyUploader:
    """PUT to a Bunny.net storage zone, served from its pull zone URL."""

    def __init__(
        self,
        api_key: str | None = None,
        storage_zone: str | None = None,
        cdn_url: str | None = None,
        http: httpx.Client | None = None,
    ):
        self.api_key = api_key or os.environ.get("BUNNY_API_KEY")
        self.storage_zone = storage_zone or os.environ.get("BUNNY_STORAGE_ZONE")
        self.cdn_url = cdn_url or os.environ.get("BUNNY_CDN_URL")
        missing = [
            name for name, value in (
                ("BUNNY_API_KEY", self.api_key),
                ("BUNNY_STORAGE_ZONE", self.storage_zone),
                ("BUNNY_CDN_URL", self.cdn_url),
            ) if not value
        ]
        if missing:
            raise RuntimeError(f"Bunny storage not configured: missing {', '.join(missing)}")
        self._http = http or httpx.Client(timeout=_UPLOAD_TIMEOUT_S)

    def upload(self, data: bytes, path: str, content_type: str = "audio/mpeg") -> str:
        path = path.lstrip("/")
        url = f"{_BUNNY_STORAGE_HOST}/{self.storage_zone}/{path}"
        logger.info("Uploading %d bytes to Bunny: /%s", len(data), path)
        try:
            resp = self._http.put(url, content=data, headers={
                "AccessKey": self.api_key,
                "Content-Type": content_type,
                "Cache-Control": "no-cache, no-store, must-revalidate, max-age=0",
                "Pragma": "no-cache",
                "Expires": "0",
                "Last-Modified": formatdate(usegmt=True),
            })
        except httpx.HTTPError as exc:
            raise UploadError(f"Upload of {path} failed: {exc}") from exc
        if resp.status_code not in (200, 201):
            raise UploadError(f"Upload of {path} failed with status: {resp.status_code}")

        base = self.cdn_url.rstrip("/")
        if not base.startswith("http"):
            base = f"https://{base}"
        # programs are overwritten in place, so bust CDN and browser caches
        public_url = f"{base}/{path}?v={int(time.time() * 1000)}&cb={secrets.token_hex(4)}"
        logger.info("Upload successful: %s", public_url)
        return public_url


class SupabaseUploader:
    """Upload into a public Supabase Storage bucket."""

    def __init__(self, client=None, bucket: str = STORAGE_BUCKET):
        self._client = client
        self.bucket = bucket

    def upload(self, data: bytes, path: str, content_type: str = "audio/mpeg") -> str:
        client = self._client or get_supabase()
        path = path.lstrip("/")
        logger.info("Uploading %d bytes to Supabase Storage: %s/%s", len(data), self.bucket, path)
        try:
            client.storage.from_(self.bucket).upload(
                path,
                data,
                file_options={"content-type": content_type, "upsert": "true"},
            )
        except Exception as exc:
            raise UploadError(f"Upload of {path} failed: {exc}") from exc
        return client.storage.from_(self.bucket).get_public_url(path)


def get_uploader(backend: str = STORAGE_BACKEND):
    if backend == "bunny":
        return BunnyUploader()
    if backend == "supabase":
        return SupabaseUploader()
    raise ValueError(f"Unknown STORAGE_BACKEND: {backend}")
