from __future__ import annotations

from common.config import PersistenceSettings

from .keyed_store import JsonFileStore, KeyedStore, MemoryStore


def store_from_settings(settings: PersistenceSettings) -> KeyedStore:
    """Build the keyed medium selected by `settings.backend`."""
    quota = settings.quota_bytes or None
    if settings.backend == "memory":
        return MemoryStore(quota_bytes=quota)
    if settings.backend == "file":
        return JsonFileStore(settings.path, quota_bytes=quota)
    if settings.backend == "s3":
        # Imported lazily so boto3 is only loaded when S3 is configured
        from .s3_store import S3KeyedStore

        return S3KeyedStore(
            bucket=settings.bucket or "",
            prefix=settings.prefix,
            fernet_key=settings.fernet_key or "",
            quota_bytes=quota,
        )
    raise RuntimeError(f"Unsupported state backend: {settings.backend}")
