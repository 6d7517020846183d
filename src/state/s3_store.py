from __future__ import annotations

from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken

from .keyed_store import KeyedStore, QuotaExceededError, UnreadableEntryError


_MISSING_CODES = ("NoSuchKey", "404", "NotFound")
_QUOTA_CODES = ("EntityTooLarge", "QuotaExceeded", "ServiceQuotaExceededException")


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


def _error_code(e: ClientError) -> Optional[str]:
    return e.response.get("Error", {}).get("Code")


class S3KeyedStore(KeyedStore):
    """
    Keyed medium on S3: one object per key, Fernet-encrypted at rest.

    Layout
    - Object key: `{prefix}{key}`, e.g. "grasp/state/grasp-question-bank-state".
    - Body: Fernet token of the UTF-8 JSON text.

    Semantics
    - Missing objects read as absent.
    - Bodies that fail to decrypt (wrong key, tampering) read as absent;
      eviction sees them as unreadable and deletes them.
    - `quota_bytes` caps the plaintext size of a single entry; S3's own
      size errors are reported the same way.
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        prefix: str = "",
        fernet_key: str | bytes,
        quota_bytes: Optional[int] = None,
        region_name: Optional[str] = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket is required")
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._prefix = prefix
        self._fernet = _to_fernet(fernet_key)
        self._quota = quota_bytes

    def _object_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    # -------- Primitives --------
    def _get_text(self, key: str) -> Optional[str]:
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=self._object_key(key))
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return None
            raise

        body = resp["Body"].read()
        try:
            plaintext = self._fernet.decrypt(body)
        except InvalidToken as e:
            raise UnreadableEntryError(
                f"cannot decrypt s3://{self._bucket}/{self._object_key(key)}"
            ) from e
        return plaintext.decode("utf-8")

    def _set_text(self, key: str, text: str) -> None:
        plaintext = text.encode("utf-8")
        if self._quota and len(plaintext) > self._quota:
            raise QuotaExceededError(f"{len(plaintext)} bytes exceeds quota of {self._quota}")
        try:
            self._s3.put_object(
                Bucket=self._bucket,
                Key=self._object_key(key),
                Body=self._fernet.encrypt(plaintext),
                ContentType="application/octet-stream",
            )
        except ClientError as e:
            if _error_code(e) in _QUOTA_CODES:
                raise QuotaExceededError(str(e)) from e
            raise

    def _delete(self, key: str) -> None:
        # S3 DeleteObject is already idempotent
        self._s3.delete_object(Bucket=self._bucket, Key=self._object_key(key))

    def keys(self) -> List[str]:
        out: List[str] = []
        kwargs: Dict[str, Any] = {"Bucket": self._bucket, "Prefix": self._prefix}
        while True:
            resp = self._s3.list_objects_v2(**kwargs)
            for obj in resp.get("Contents", []):
                name = obj["Key"]
                out.append(name[len(self._prefix):])
            if not resp.get("IsTruncated"):
                break
            kwargs["ContinuationToken"] = resp["NextContinuationToken"]
        return out


__all__ = ["S3KeyedStore"]
