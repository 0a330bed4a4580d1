"""
Document storage for projects and users.

Documents are schemaless JSON payloads keyed by ``(collection, doc_id)``.
Nothing here knows about blobs; reference bookkeeping lives in
``showcase.mutators``.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Optional, Protocol

from sqlalchemy import select

from showcase.db import Database, DocumentRow, InMemoryDatabase
from showcase.types import Collection

RESERVED_FIELDS = ("id", "created_at", "updated_at")


class DocumentStore(Protocol):
    """Interface for project/user persistence."""

    def new_id(self) -> str:
        ...

    def insert(self, collection: Collection, doc_id: str, data: dict) -> dict:
        ...

    def get(self, collection: Collection, doc_id: str) -> Optional[dict]:
        ...

    def update(self, collection: Collection, doc_id: str, updates: dict) -> Optional[dict]:
        ...

    def delete(self, collection: Collection, doc_id: str) -> bool:
        ...

    def list_documents(
        self,
        collection: Collection,
        limit: int = 100,
        skip: int = 0,
        published_only: bool = False,
    ) -> list[dict]:
        ...

    def find_by_field(self, collection: Collection, field: str, value: Any) -> list[dict]:
        ...


def _strip_reserved(data: dict) -> dict:
    return {key: value for key, value in data.items() if key not in RESERVED_FIELDS}


def apply_updates(data: dict, updates: dict) -> dict:
    """Merge ``updates`` into ``data``; a None value removes the field."""
    merged = dict(data)
    for key, value in _strip_reserved(updates).items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def _serialize(doc_id: str, data: dict, created_at: float, updated_at: float) -> dict:
    return {**data, "id": doc_id, "created_at": created_at, "updated_at": updated_at}


def _is_published(data: dict) -> bool:
    return data.get("is_published") is not False


class InMemoryDocumentStore:
    """Simple in-memory document store for development and tests."""

    def __init__(self, database: InMemoryDatabase):
        self.database = database

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def insert(self, collection: Collection, doc_id: str, data: dict) -> dict:
        now = time.time()
        doc = _serialize(doc_id, _strip_reserved(data), now, now)
        with self.database.lock:
            key = (Collection(collection).value, doc_id)
            if key in self.database.documents:
                raise KeyError(f"duplicate document id {doc_id}")
            self.database.documents[key] = doc
        return dict(doc)

    def get(self, collection: Collection, doc_id: str) -> Optional[dict]:
        with self.database.lock:
            doc = self.database.documents.get((Collection(collection).value, doc_id))
            return dict(doc) if doc else None

    def update(self, collection: Collection, doc_id: str, updates: dict) -> Optional[dict]:
        key = (Collection(collection).value, doc_id)
        with self.database.lock:
            doc = self.database.documents.get(key)
            if doc is None:
                return None
            data = apply_updates(_strip_reserved(doc), updates)
            updated = _serialize(doc_id, data, doc["created_at"], time.time())
            self.database.documents[key] = updated
            return dict(updated)

    def delete(self, collection: Collection, doc_id: str) -> bool:
        with self.database.lock:
            return (
                self.database.documents.pop((Collection(collection).value, doc_id), None)
                is not None
            )

    def _all(self, collection: Collection) -> list[dict]:
        name = Collection(collection).value
        with self.database.lock:
            docs = [
                dict(doc)
                for (doc_collection, _), doc in self.database.documents.items()
                if doc_collection == name
            ]
        return sorted(docs, key=lambda doc: doc["created_at"])

    def list_documents(
        self,
        collection: Collection,
        limit: int = 100,
        skip: int = 0,
        published_only: bool = False,
    ) -> list[dict]:
        docs = self._all(collection)
        if published_only:
            docs = [doc for doc in docs if _is_published(doc)]
        return docs[skip : skip + limit]

    def find_by_field(self, collection: Collection, field: str, value: Any) -> list[dict]:
        return [doc for doc in self._all(collection) if doc.get(field) == value]


class SqlDocumentStore:
    """SQLAlchemy-backed document store (JSON column per document)."""

    def __init__(self, database: Database):
        self.database = database

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def _to_doc(self, row: DocumentRow) -> dict:
        return _serialize(row.doc_id, dict(row.data or {}), row.created_at, row.updated_at)

    def insert(self, collection: Collection, doc_id: str, data: dict) -> dict:
        now = time.time()
        with self.database.Session() as session:
            row = DocumentRow(
                collection=Collection(collection).value,
                doc_id=doc_id,
                data=_strip_reserved(data),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            return self._to_doc(row)

    def get(self, collection: Collection, doc_id: str) -> Optional[dict]:
        with self.database.Session() as session:
            row = session.get(DocumentRow, (Collection(collection).value, doc_id))
            return self._to_doc(row) if row else None

    def update(self, collection: Collection, doc_id: str, updates: dict) -> Optional[dict]:
        with self.database.Session() as session:
            row = session.get(DocumentRow, (Collection(collection).value, doc_id))
            if not row:
                return None
            # Assign a fresh dict so the JSON column is marked dirty.
            row.data = apply_updates(dict(row.data or {}), updates)
            row.updated_at = time.time()
            session.commit()
            return self._to_doc(row)

    def delete(self, collection: Collection, doc_id: str) -> bool:
        with self.database.Session() as session:
            row = session.get(DocumentRow, (Collection(collection).value, doc_id))
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True

    def _all(self, collection: Collection) -> list[dict]:
        with self.database.Session() as session:
            rows = session.execute(
                select(DocumentRow)
                .where(DocumentRow.collection == Collection(collection).value)
                .order_by(DocumentRow.created_at.asc())
            ).scalars()
            return [self._to_doc(row) for row in rows]

    def list_documents(
        self,
        collection: Collection,
        limit: int = 100,
        skip: int = 0,
        published_only: bool = False,
    ) -> list[dict]:
        docs = self._all(collection)
        if published_only:
            docs = [doc for doc in docs if _is_published(doc)]
        return docs[skip : skip + limit]

    def find_by_field(self, collection: Collection, field: str, value: Any) -> list[dict]:
        return [doc for doc in self._all(collection) if doc.get(field) == value]


CONTRIBUTOR_SNAPSHOT_FIELDS = ("name", "avatar_url", "profile_url")
CONTRIBUTOR_IMAGE_FIELDS = ("avatar_url", "profile_url")


def refresh_contributor_snapshots(
    documents: DocumentStore,
    user: dict,
    fields: tuple[str, ...] = CONTRIBUTOR_SNAPSHOT_FIELDS,
) -> int:
    """
    Copy a user's display fields into every project that embeds them as a
    contributor. Fields the user lacks are removed from the snapshot.
    Returns the number of projects rewritten.
    """
    updated = 0
    for project in documents.list_documents(Collection.PROJECTS, limit=10_000):
        contributors = project.get("contributors") or []
        if not any(c.get("id") == user["id"] for c in contributors if isinstance(c, dict)):
            continue
        refreshed = []
        for contributor in contributors:
            if isinstance(contributor, dict) and contributor.get("id") == user["id"]:
                contributor = dict(contributor)
                for key in fields:
                    if user.get(key) is None:
                        contributor.pop(key, None)
                    else:
                        contributor[key] = user[key]
            refreshed.append(contributor)
        documents.update(Collection.PROJECTS, project["id"], {"contributors": refreshed})
        updated += 1
    return updated


def clear_contributor_images(documents: DocumentStore, user_id: str) -> int:
    """
    Drop a deleted user's image URLs from project contributor snapshots.
    Snapshots are copies and hold no ledger entries, so they must not outlive
    the blobs they name.
    """
    return refresh_contributor_snapshots(
        documents, {"id": user_id}, fields=CONTRIBUTOR_IMAGE_FIELDS
    )
