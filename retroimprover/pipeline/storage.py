"""
Artifact Store — uniform "where is this file" for the pipeline.

Every artifact gets a local working copy under UPLOAD_DIR first. When R2 is
configured the copy is then published there; if that upload fails for any
reason the local reference is returned instead, so generation never fails
just because object storage is down.

Layout:
  UPLOAD_DIR/{logical_name}          — working copies (served at /uploads)
  UPLOAD_DIR/.scratch/               — downloads of remote artifacts
  R2: {logical_name}                 — published copies
"""

import asyncio
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx

from .. import config
from .errors import ArtifactMissing, ArtifactUnavailable
from .jobs import Done
from .models import ArtifactRef

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 30  # seconds

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
}


def content_type_for(name: str) -> str:
    ext = Path(name).suffix.lower()
    return CONTENT_TYPES.get(ext) or mimetypes.guess_type(name)[0] or "application/octet-stream"


def extension_for(mime_type: str, default: str = ".bin") -> str:
    for ext, known in CONTENT_TYPES.items():
        if known == mime_type:
            return ".jpg" if ext == ".jpeg" else ext
    return default


def artifact_name(folder: str, owner: str, ext: str) -> str:
    """Unique logical name, e.g. ``restored/{owner}/{hex}.png``."""
    if not ext.startswith("."):
        ext = f".{ext}"
    return f"{folder}/{owner}/{uuid.uuid4().hex}{ext}"


# ═════════════════════════════════════════════════════════════════════════════
# R2 bucket (S3 API)
# ═════════════════════════════════════════════════════════════════════════════

class R2Bucket:
    """Thin boto3 wrapper for a Cloudflare R2 bucket."""

    def __init__(
        self,
        account_id: str,
        access_key_id: str,
        secret_access_key: str,
        bucket: str,
        public_url: str = "",
    ):
        import boto3
        from botocore.config import Config as BotoConfig

        self.bucket = bucket
        self.public_base = (
            public_url.rstrip("/")
            if public_url
            else f"https://{account_id}.r2.cloudflarestorage.com/{bucket}"
        )
        self._s3 = boto3.client(
            "s3",
            endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )

    @classmethod
    def from_env(cls) -> Optional["R2Bucket"]:
        if not config.r2_configured():
            logger.warning("R2 credentials not set — artifacts will be served locally.")
            return None
        return cls(
            config.R2_ACCOUNT_ID,
            config.R2_ACCESS_KEY_ID,
            config.R2_SECRET_ACCESS_KEY,
            config.R2_BUCKET_NAME,
            config.R2_PUBLIC_URL,
        )

    def url_for(self, key: str) -> str:
        return f"{self.public_base}/{key}"

    def key_for(self, url: str) -> Optional[str]:
        prefix = f"{self.public_base}/"
        if url.startswith(prefix):
            return url[len(prefix):]
        return None

    def put(self, key: str, path: Path, content_type: str) -> str:
        with open(path, "rb") as fh:
            self._s3.put_object(Bucket=self.bucket, Key=key, Body=fh, ContentType=content_type)
        return self.url_for(key)

    def delete(self, key: str):
        self._s3.delete_object(Bucket=self.bucket, Key=key)


# ═════════════════════════════════════════════════════════════════════════════
# Artifact Store
# ═════════════════════════════════════════════════════════════════════════════

class ArtifactStore:
    def __init__(
        self,
        local_dir: str,
        public_base_url: str = "",
        remote: Optional[R2Bucket] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.root = Path(local_dir).resolve()
        self.scratch = self.root / ".scratch"
        self.public_base_url = public_base_url.rstrip("/")
        self.remote = remote
        self._http = http_client
        self.root.mkdir(parents=True, exist_ok=True)
        self.scratch.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls) -> "ArtifactStore":
        return cls(config.UPLOAD_DIR, config.PUBLIC_BASE_URL, R2Bucket.from_env())

    # ── Helpers ──────────────────────────────────────────────────────────

    def _local_path(self, logical_name: str) -> Path:
        path = (self.root / logical_name).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Artifact name escapes the upload dir: {logical_name}")
        return path

    def _client(self) -> httpx.AsyncClient:
        return self._http or httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)

    async def _download(self, url: str, headers: Optional[dict] = None) -> bytes:
        client = self._client()
        try:
            resp = await client.get(url, headers=headers or {})
            resp.raise_for_status()
            return resp.content
        except httpx.HTTPError as e:
            logger.error(f"Download failed for {url}: {e}")
            raise ArtifactUnavailable(f"Could not fetch artifact: {e}")
        finally:
            if client is not self._http:
                await client.aclose()

    def public_url(self, ref: Optional[ArtifactRef]) -> Optional[str]:
        if ref is None:
            return None
        if not ref.is_local:
            return ref.location
        try:
            relative = Path(ref.location).resolve().relative_to(self.root).as_posix()
        except ValueError:
            relative = Path(ref.location).name
        return f"{self.public_base_url}/uploads/{relative}"

    # ── Resolve ──────────────────────────────────────────────────────────

    async def resolve_to_local(self, ref: ArtifactRef) -> Path:
        """Local path holding the artifact's bytes, downloading remote ones."""
        if ref.is_local:
            path = Path(ref.location)
            if not path.is_file():
                raise ArtifactMissing(f"Local artifact not found: {ref.location}")
            return path

        data = await self._download(ref.location)
        suffix = Path(urlparse(ref.location).path).suffix or ".bin"
        path = self.scratch / f"{uuid.uuid4().hex}{suffix}"
        path.write_bytes(data)
        logger.info(f"Fetched remote artifact {ref.location} → {path}")
        return path

    async def read_bytes(self, ref: ArtifactRef) -> bytes:
        if ref.is_local:
            return (await self.resolve_to_local(ref)).read_bytes()
        return await self._download(ref.location)

    # ── Persist ──────────────────────────────────────────────────────────

    def save_local(self, data: bytes, logical_name: str) -> Path:
        path = self._local_path(logical_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    async def publish(self, local_path: Path, logical_name: str) -> ArtifactRef:
        """
        Upload to R2 if configured. Any failure degrades to a local reference.
        """
        local_ref = ArtifactRef.local(str(local_path))
        if self.remote is None:
            return local_ref

        try:
            url = await asyncio.to_thread(
                self.remote.put, logical_name, Path(local_path), content_type_for(logical_name)
            )
        except Exception as e:
            logger.warning(f"R2 publish failed for {logical_name}, serving locally: {e}")
            return local_ref

        logger.info(f"Published to R2: {url}")
        return ArtifactRef.remote(url)

    async def persist(self, data: bytes, logical_name: str) -> ArtifactRef:
        if not data:
            raise ArtifactMissing(f"Refusing to persist empty artifact {logical_name}")
        path = self.save_local(data, logical_name)
        return await self.publish(path, logical_name)

    async def ingest(self, done: Done, logical_name: str) -> ArtifactRef:
        """Persist a provider result, fetching it first when it is a URI."""
        data = done.data
        if data is None:
            if not done.uri:
                raise ArtifactMissing("Provider result carried neither bytes nor a URI")
            data = await self._download(done.uri, done.headers)
        return await self.persist(data, logical_name)

    # ── Release ──────────────────────────────────────────────────────────

    async def release(self, ref: Optional[ArtifactRef]):
        """Best-effort delete. Never raises."""
        if ref is None:
            return
        try:
            if ref.is_local:
                Path(ref.location).unlink(missing_ok=True)
                logger.info(f"Released local artifact {ref.location}")
                return

            key = self.remote.key_for(ref.location) if self.remote else None
            if key is None:
                logger.warning(f"Cannot release {ref.location}: not in the configured bucket")
                return
            await asyncio.to_thread(self.remote.delete, key)
            # The local working copy may still be around from publish()
            self._local_path(key).unlink(missing_ok=True)
            logger.info(f"Released R2 artifact {key}")
        except Exception as e:
            logger.error(f"Failed to release artifact {ref.location}: {e}")
