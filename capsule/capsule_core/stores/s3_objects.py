"""
S3 object store for uploaded media.

Objects live in one bucket with one folder per group id:

    s3://<bucket>/<group_id>/<uuid>-<filename>

Access descriptors are presigned GET URLs. Presigning is a local operation,
so the object is checked with HEAD first; a missing or forbidden object
fails with ResolutionError instead of yielding a URL that cannot load.

Invariants:
    - Uploads never overwrite an existing key (If-None-Match: *)
    - Presigned URLs are never logged
    - Backend failures surface as TransientIOError

How to change safely:
    - Works against AWS S3 and MinIO (set S3_ENDPOINT); test both
    - Keep the folder-per-group layout, storage policies depend on it
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..config import S3Config
from ..errors import AuthorizationDenied, CapsuleError, ResolutionError, TransientIOError
from ..gate import Clock, SystemClock
from ..models import AccessDescriptor

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_DENIED_CODES = {"403", "AccessDenied", "Forbidden"}
_EXISTS_CODES = {"412", "PreconditionFailed"}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3ObjectStore:
    """ObjectStore backed by S3 via aiobotocore.

    Example:
        >>> async with S3ObjectStore(S3Config.from_env()) as objects:
        ...     await objects.upload("g1/abc-photo.png", data, "image/png")
        ...     descriptor = await objects.issue_access_descriptor("g1/abc-photo.png", 600)
    """

    def __init__(self, s3_config: S3Config, clock: Optional[Clock] = None) -> None:
        """Initialize the store.

        Args:
            s3_config: Bucket, region, endpoint and credentials
            clock: Clock used to compute descriptor expiry
        """
        self.s3_config = s3_config
        self._clock = clock or SystemClock()
        self._session = None
        self._s3_ctx: Any = None
        self._s3_client: Any = None

    @property
    def is_connected(self) -> bool:
        return self._s3_client is not None

    async def connect(self) -> None:
        """Create the S3 client."""
        if self._s3_client is not None:
            return
        self._session = get_session()

        client_kwargs = {
            "region_name": self.s3_config.region,
        }

        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()
        logger.info(
            "S3 object store connected",
            extra={"bucket": self.s3_config.bucket, "endpoint": self.s3_config.endpoint_url},
        )

    async def close(self) -> None:
        """Close the S3 client."""
        if self._s3_client is not None:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None
            self._s3_ctx = None

    async def __aenter__(self) -> S3ObjectStore:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> None:
        """Store `data` under `path` in the bucket.

        Raises:
            CapsuleError: If the key already exists (code OBJECT_EXISTS)
            AuthorizationDenied: If the bucket policy refuses the write
            TransientIOError: On any other S3 failure
        """
        client = self._require_client("upload")
        kwargs: dict[str, Any] = {
            "Bucket": self.s3_config.bucket,
            "Key": path,
            "Body": data,
            "IfNoneMatch": "*",
        }
        if content_type:
            kwargs["ContentType"] = content_type

        try:
            await client.put_object(**kwargs)
        except ClientError as e:
            code = _error_code(e)
            if code in _EXISTS_CODES:
                raise CapsuleError(
                    f"Object already exists: {path}",
                    code="OBJECT_EXISTS",
                    details={"path": path},
                ) from e
            if code in _DENIED_CODES:
                raise AuthorizationDenied(f"Upload denied: {path}", resource=path) from e
            raise TransientIOError(f"Upload failed: {code or e}", operation="upload") from e
        except BotoCoreError as e:
            raise TransientIOError(f"Upload failed: {e}", operation="upload") from e

        logger.debug("Object uploaded", extra={"key": path, "bytes": len(data)})

    async def issue_access_descriptor(self, path: str, ttl: int) -> AccessDescriptor:
        """Presign a GET URL for `path` valid for `ttl` seconds.

        Raises:
            ResolutionError: If the object is missing or access is denied
            TransientIOError: On any other S3 failure
        """
        client = self._require_client("issue_access_descriptor")
        params = {"Bucket": self.s3_config.bucket, "Key": path}

        try:
            await client.head_object(**params)
        except ClientError as e:
            code = _error_code(e)
            if code in _NOT_FOUND_CODES:
                raise ResolutionError(path, "object not found") from e
            if code in _DENIED_CODES:
                raise ResolutionError(path, "access denied") from e
            raise TransientIOError(f"Object lookup failed: {code or e}", operation="head") from e
        except BotoCoreError as e:
            raise TransientIOError(f"Object lookup failed: {e}", operation="head") from e

        try:
            url = await client.generate_presigned_url(
                "get_object",
                Params=params,
                ExpiresIn=ttl,
            )
        except (BotoCoreError, ClientError) as e:
            raise TransientIOError(f"Presigning failed: {e}", operation="presign") from e

        return AccessDescriptor(
            reference=path,
            url=url,
            expires_at=self._clock.now() + timedelta(seconds=ttl),
        )

    def _require_client(self, operation: str) -> Any:
        if self._s3_client is None:
            raise TransientIOError("S3 object store not connected", operation=operation)
        return self._s3_client
