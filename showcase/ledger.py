"""
Reference ledger: which document field currently points at which blob.

Every write is idempotent. Adding an entry that already exists and removing
one that does not are both no-ops, which lets concurrent request handlers,
the reclaimer and the sweep race on the same rows without locking.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from showcase.db import Database, FileReferenceRow, InMemoryDatabase
from showcase.types import OwnerFieldKind


@dataclass(frozen=True)
class ReferenceEntry:
    blob_id: str
    owner_id: str
    kind: OwnerFieldKind
    created_at: float = field(default_factory=lambda: time.time(), compare=False)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.blob_id, self.owner_id, self.kind.value)

    def as_dict(self) -> dict:
        return {
            "blob_id": self.blob_id,
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "created_at": self.created_at,
        }


class ReferenceLedger(Protocol):
    """Interface for reference bookkeeping."""

    def add_reference(self, blob_id: str, owner_id: str, kind: OwnerFieldKind) -> bool:
        ...

    def remove_reference(
        self, blob_id: str, owner_id: str, kind: OwnerFieldKind
    ) -> bool:
        ...

    def remove_all_for_owner(self, owner_id: str) -> set[str]:
        ...

    def remove_all_for_blob(self, blob_id: str) -> int:
        ...

    def has_any_reference(self, blob_id: str) -> bool:
        ...

    def references_for(self, blob_id: str) -> list[ReferenceEntry]:
        ...

    def list_blob_ids(self) -> set[str]:
        ...

    def list_entries(self) -> list[ReferenceEntry]:
        ...


class InMemoryReferenceLedger:
    """Simple in-memory ledger for development and tests."""

    def __init__(self, database: InMemoryDatabase):
        self.database = database

    def add_reference(self, blob_id: str, owner_id: str, kind: OwnerFieldKind) -> bool:
        entry = ReferenceEntry(blob_id=blob_id, owner_id=owner_id, kind=OwnerFieldKind(kind))
        with self.database.lock:
            if entry.key in self.database.references:
                return False
            self.database.references[entry.key] = entry
            return True

    def remove_reference(
        self, blob_id: str, owner_id: str, kind: OwnerFieldKind
    ) -> bool:
        key = (blob_id, owner_id, OwnerFieldKind(kind).value)
        with self.database.lock:
            return self.database.references.pop(key, None) is not None

    def remove_all_for_owner(self, owner_id: str) -> set[str]:
        with self.database.lock:
            keys = [key for key in self.database.references if key[1] == owner_id]
            for key in keys:
                del self.database.references[key]
        return {key[0] for key in keys}

    def remove_all_for_blob(self, blob_id: str) -> int:
        with self.database.lock:
            keys = [key for key in self.database.references if key[0] == blob_id]
            for key in keys:
                del self.database.references[key]
        return len(keys)

    def has_any_reference(self, blob_id: str) -> bool:
        with self.database.lock:
            return any(key[0] == blob_id for key in self.database.references)

    def references_for(self, blob_id: str) -> list[ReferenceEntry]:
        with self.database.lock:
            return [
                entry
                for key, entry in self.database.references.items()
                if key[0] == blob_id
            ]

    def list_blob_ids(self) -> set[str]:
        with self.database.lock:
            return {key[0] for key in self.database.references}

    def list_entries(self) -> list[ReferenceEntry]:
        with self.database.lock:
            return list(self.database.references.values())


class SqlReferenceLedger:
    """
    SQLAlchemy-backed ledger. Uniqueness of ``(blob_id, owner_id, kind)`` is
    enforced by the table, so a duplicate insert from a concurrent request
    surfaces as an IntegrityError and is treated as already present.
    """

    def __init__(self, database: Database):
        self.database = database

    def _to_entry(self, row: FileReferenceRow) -> ReferenceEntry:
        return ReferenceEntry(
            blob_id=row.blob_id,
            owner_id=row.owner_id,
            kind=OwnerFieldKind(row.kind),
            created_at=row.created_at,
        )

    def _match(self, blob_id: str, owner_id: str, kind: OwnerFieldKind):
        return (
            FileReferenceRow.blob_id == blob_id,
            FileReferenceRow.owner_id == owner_id,
            FileReferenceRow.kind == OwnerFieldKind(kind).value,
        )

    def add_reference(self, blob_id: str, owner_id: str, kind: OwnerFieldKind) -> bool:
        with self.database.Session() as session:
            existing = session.execute(
                select(FileReferenceRow.id).where(*self._match(blob_id, owner_id, kind))
            ).first()
            if existing:
                return False
            session.add(
                FileReferenceRow(
                    blob_id=blob_id,
                    owner_id=owner_id,
                    kind=OwnerFieldKind(kind).value,
                    created_at=time.time(),
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def remove_reference(
        self, blob_id: str, owner_id: str, kind: OwnerFieldKind
    ) -> bool:
        with self.database.Session() as session:
            result = session.execute(
                delete(FileReferenceRow).where(*self._match(blob_id, owner_id, kind))
            )
            session.commit()
            return bool(result.rowcount)

    def remove_all_for_owner(self, owner_id: str) -> set[str]:
        with self.database.Session() as session:
            blob_ids = set(
                session.execute(
                    select(FileReferenceRow.blob_id).where(
                        FileReferenceRow.owner_id == owner_id
                    )
                ).scalars()
            )
            session.execute(
                delete(FileReferenceRow).where(FileReferenceRow.owner_id == owner_id)
            )
            session.commit()
            return blob_ids

    def remove_all_for_blob(self, blob_id: str) -> int:
        with self.database.Session() as session:
            result = session.execute(
                delete(FileReferenceRow).where(FileReferenceRow.blob_id == blob_id)
            )
            session.commit()
            return result.rowcount or 0

    def has_any_reference(self, blob_id: str) -> bool:
        with self.database.Session() as session:
            row = session.execute(
                select(FileReferenceRow.id)
                .where(FileReferenceRow.blob_id == blob_id)
                .limit(1)
            ).first()
            return row is not None

    def references_for(self, blob_id: str) -> list[ReferenceEntry]:
        with self.database.Session() as session:
            rows = session.execute(
                select(FileReferenceRow)
                .where(FileReferenceRow.blob_id == blob_id)
                .order_by(FileReferenceRow.created_at.asc())
            ).scalars()
            return [self._to_entry(row) for row in rows]

    def list_blob_ids(self) -> set[str]:
        with self.database.Session() as session:
            return set(
                session.execute(select(FileReferenceRow.blob_id).distinct()).scalars()
            )

    def list_entries(self) -> list[ReferenceEntry]:
        with self.database.Session() as session:
            rows = session.execute(
                select(FileReferenceRow).order_by(FileReferenceRow.created_at.asc())
            ).scalars()
            return [self._to_entry(row) for row in rows]
