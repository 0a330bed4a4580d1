"""
Dependency wiring for the FastAPI app.

``build_services`` constructs every store once, at process start, around a
single database handle. The app keeps the result on ``app.state`` and the
``get_*`` dependencies below hand the pieces to request handlers.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Optional, Union

from fastapi import Depends, Header, HTTPException, Request

from showcase.config import Settings, get_settings
from showcase.db import Database, InMemoryDatabase
from showcase.documents import DocumentStore, InMemoryDocumentStore, SqlDocumentStore
from showcase.ledger import InMemoryReferenceLedger, ReferenceLedger, SqlReferenceLedger
from showcase.mutators import MediaAwareDocuments
from showcase.reclaimer import OrphanReclaimer
from showcase.storage import BlobStore, InMemoryBlobStore, S3BlobStore, SqlBlobStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    database: Union[Database, InMemoryDatabase]
    documents: DocumentStore
    store: BlobStore
    ledger: ReferenceLedger
    reclaimer: OrphanReclaimer
    media_docs: MediaAwareDocuments

    def close(self) -> None:
        self.database.dispose()


def build_services(settings: Optional[Settings] = None) -> Services:
    settings = settings or get_settings()

    if settings.use_in_memory_backends or not settings.database_url:
        logger.info("Using in-memory backends")
        database = InMemoryDatabase()
        documents = InMemoryDocumentStore(database)
        ledger = InMemoryReferenceLedger(database)
        store = InMemoryBlobStore(database, max_upload_bytes=settings.max_upload_bytes)
    else:
        database = Database(settings.database_url)
        documents = SqlDocumentStore(database)
        ledger = SqlReferenceLedger(database)
        store = SqlBlobStore(
            database,
            chunk_size=settings.media_chunk_size,
            max_upload_bytes=settings.max_upload_bytes,
        )

    if settings.blob_backend == "s3":
        if not settings.s3_bucket:
            raise ValueError("S3_BUCKET is required when BLOB_BACKEND is s3")
        store = S3BlobStore(
            bucket=settings.s3_bucket,
            ledger=ledger,
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            prefix=settings.s3_prefix,
            max_upload_bytes=settings.max_upload_bytes,
        )

    reclaimer = OrphanReclaimer(store, ledger)
    return Services(
        settings=settings,
        database=database,
        documents=documents,
        store=store,
        ledger=ledger,
        reclaimer=reclaimer,
        media_docs=MediaAwareDocuments(documents, ledger, reclaimer),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_blob_store(services: Services = Depends(get_services)) -> BlobStore:
    return services.store


def get_ledger(services: Services = Depends(get_services)) -> ReferenceLedger:
    return services.ledger


def get_reclaimer(services: Services = Depends(get_services)) -> OrphanReclaimer:
    return services.reclaimer


def get_document_store(services: Services = Depends(get_services)) -> DocumentStore:
    return services.documents


def get_media_documents(
    services: Services = Depends(get_services),
) -> MediaAwareDocuments:
    return services.media_docs


def require_admin_token(
    x_admin_token: Optional[str] = Header(None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Operator endpoints check ``X-Admin-Token`` when a token is configured."""
    expected = settings.admin_api_token
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
