"""The user-facing document list ("Data Source" list) used for renumbering."""

from __future__ import annotations

from typing import Any, Iterable, Protocol

import structlog
from botocore.exceptions import BotoCoreError, ClientError

from .models import CatalogEntry

log = structlog.get_logger()


class DocumentCatalog(Protocol):
    def entries(self) -> list[CatalogEntry]: ...


class StaticCatalog:
    """A fixed, ordered list of document names."""

    def __init__(self, names: Iterable[str]) -> None:
        self._names = list(names)

    def entries(self) -> list[CatalogEntry]:
        return [CatalogEntry(name=n, position=i) for i, n in enumerate(self._names, start=1)]


def _is_document(obj: dict[str, Any], min_size_bytes: int) -> bool:
    key = obj.get("Key", "")
    return (
        bool(key)
        and not key.startswith(".")
        and "$folder$" not in key
        and not key.endswith("/")
        and obj.get("Size", 0) > min_size_bytes
    )


class S3DocumentCatalog:
    """Documents in the knowledge base's source bucket, largest first."""

    def __init__(self, client: Any, bucket: str | None, min_size_bytes: int = 1024) -> None:
        self._s3 = client
        self._bucket = bucket
        self._min_size_bytes = min_size_bytes

    def entries(self) -> list[CatalogEntry]:
        if not self._bucket:
            log.warning("catalog_bucket_not_configured")
            return []

        try:
            paginator = self._s3.get_paginator("list_objects_v2")
            objects = [
                obj
                for page in paginator.paginate(Bucket=self._bucket)
                for obj in page.get("Contents", [])
            ]
        except (BotoCoreError, ClientError):
            log.exception("catalog_list_failed", bucket=self._bucket)
            return []

        documents = [o for o in objects if _is_document(o, self._min_size_bytes)]
        documents.sort(key=lambda o: o["Size"], reverse=True)

        log.debug("catalog_listed", bucket=self._bucket, documents=len(documents))
        return [
            CatalogEntry(name=o["Key"].split("/")[-1], position=i)
            for i, o in enumerate(documents, start=1)
        ]
