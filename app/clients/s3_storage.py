from __future__ import annotations

import mimetypes
import re
import uuid
from typing import Dict

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

_R2_HOST = re.compile(r"r2\.cloudflarestorage\.com/(.+)$")


class S3StorageClient:
    """S3-compatible object store that publishes generated media.

    Without credentials objects are kept in process memory so the service
    stays usable in development and tests.
    """

    def __init__(
        self,
        bucket: str,
        access_key: str | None,
        secret_key: str | None,
        endpoint_url: str | None = None,
        region_name: str | None = None,
        public_url: str | None = None,
        prefix: str = "",
        addressing_style: str | None = None,
    ) -> None:
        self.bucket = (bucket or "").strip()
        self.access_key = (access_key or "").strip()
        self.secret_key = (secret_key or "").strip()
        self.endpoint_url = (endpoint_url or "").rstrip("/") or None
        self.region_name = (region_name or "").strip() or None
        self.public_url_base = (public_url or "").rstrip("/")
        self.prefix = self._normalize_path(prefix)
        self._memory: Dict[str, bytes] = {}
        self._client = None
        if self.is_configured():
            session = boto3.session.Session(
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                region_name=self.region_name,
            )
            config = BotoConfig(
                s3={"addressing_style": (addressing_style or "virtual").lower()}
            )
            self._client = session.client("s3", endpoint_url=self.endpoint_url, config=config)

    def is_configured(self) -> bool:
        return bool(self.bucket and self.access_key and self.secret_key)

    def upload(self, data: bytes, content_type: str = "application/octet-stream", folder: str = "") -> str:
        extension = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ".bin"
        key = self._normalize_path(f"{self.prefix}/{folder}/{uuid.uuid4().hex}{extension}")
        return self.upload_bytes(key, data, content_type)

    def upload_bytes(
        self,
        path: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        key = self._normalize_path(path)
        if not self.is_configured() or self._client is None:
            self._memory[key] = content
            return self.public_url(key)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover - AWS error surface
            raise ValueError(f"S3 upload failed: {exc}") from exc
        return self.public_url(key)

    def download(self, key: str) -> bytes:
        key = self._normalize_path(key)
        if not self.is_configured() or self._client is None:
            if key not in self._memory:
                raise ValueError("object not found in memory storage")
            return self._memory[key]
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            body = response.get("Body")
            if body is None:
                return b""
            return body.read()
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover
            raise ValueError(f"S3 download failed: {exc}") from exc

    def extract_key(self, url: str) -> str | None:
        """Return the object key for a URL this store issued, else None."""
        if not url:
            return None
        base = self.public_url("").rstrip("/")
        if url.startswith(base + "/"):
            return self._normalize_path(url[len(base) + 1:].split("?", 1)[0]) or None
        match = _R2_HOST.search(url.split("?", 1)[0])
        if match:
            key = match.group(1)
            if self.bucket and key.startswith(self.bucket + "/"):
                key = key[len(self.bucket) + 1:]
            return self._normalize_path(key) or None
        return None

    def public_url(self, path: str) -> str:
        clean = self._normalize_path(path)
        if self.public_url_base:
            return f"{self.public_url_base}/{clean}"
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}/{clean}"
        return f"/{self.bucket}/{clean}"

    def _normalize_path(self, path: str | None) -> str:
        if not path:
            return ""
        return "/".join(part for part in path.strip().split("/") if part)
