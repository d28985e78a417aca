"""
Blob storage for page images.

Paths are namespaced {source_id}/batch-{n}/page-{k}-{original_name};
putting to an existing path overwrites it.
"""
import logging
import re
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from arborkb.config import settings

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def build_image_path(source_id: str, batch_index: int, page: int, original_name: str) -> str:
    name = _UNSAFE_NAME_RE.sub("_", Path(original_name or "page").name) or "page"
    return f"{source_id}/batch-{batch_index}/page-{page}-{name}"


def is_absolute_url(uri: str) -> bool:
    return uri.startswith("http://") or uri.startswith("https://")


class ObjectStore:
    """put / public_url / remove. remove() returns the paths it could not delete."""

    def put(self, path: str, data: bytes, content_type: str | None = None) -> None:
        raise NotImplementedError

    def public_url(self, path: str) -> str:
        raise NotImplementedError

    def remove(self, paths: list[str]) -> list[str]:
        raise NotImplementedError

    def resolve_url(self, uri: str) -> str:
        """Absolute URLs pass through; storage-relative paths get the public base."""
        return uri if is_absolute_url(uri) else self.public_url(uri)


class LocalObjectStore(ObjectStore):
    def __init__(self, root: Path, public_base_url: str):
        self.root = root
        self.public_base_url = public_base_url.rstrip("/")

    def _abspath(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"path escapes storage root: {path}")
        return target

    def put(self, path: str, data: bytes, content_type: str | None = None) -> None:
        target = self._abspath(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(target)

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{path.lstrip('/')}"

    def remove(self, paths: list[str]) -> list[str]:
        failed = []
        for path in paths:
            try:
                self._abspath(path).unlink(missing_ok=True)
            except (OSError, ValueError) as e:
                logger.warning("Could not remove %s from local store: %s", path, e)
                failed.append(path)
        return failed


class S3ObjectStore(ObjectStore):
    def __init__(self, bucket: str, endpoint_url: str | None = None, region: str | None = None, client=None):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.region = region
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3", endpoint_url=self.endpoint_url, region_name=self.region)
        return self._client

    def put(self, path: str, data: bytes, content_type: str | None = None) -> None:
        extra = {"ContentType": content_type} if content_type else {}
        self.client.put_object(Bucket=self.bucket, Key=path, Body=data, **extra)

    def public_url(self, path: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{path}"
        return f"https://{self.bucket}.s3.amazonaws.com/{path}"

    def remove(self, paths: list[str]) -> list[str]:
        if not paths:
            return []
        try:
            response = self.client.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": p} for p in paths], "Quiet": True},
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning("S3 delete_objects failed for %d paths: %s", len(paths), e)
            return list(paths)
        failed = [err["Key"] for err in response.get("Errors", [])]
        for err in response.get("Errors", []):
            logger.warning("S3 could not delete %s: %s", err.get("Key"), err.get("Message"))
        return failed


_store: ObjectStore | None = None


def get_object_store() -> ObjectStore:
    global _store
    if _store is None:
        if settings.storage_backend == "s3":
            _store = S3ObjectStore(settings.s3_bucket, settings.s3_endpoint_url, settings.s3_region)
        else:
            _store = LocalObjectStore(Path(settings.storage_root), settings.storage_public_base_url)
    return _store
