"""
Shared enumerations for documents and the reference ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Collection(str, Enum):
    PROJECTS = "projects"
    USERS = "users"


class OwnerFieldKind(str, Enum):
    """Which document field a ledger entry says is using a blob."""

    PROJECT_POSTER = "project_poster"
    PROJECT_THUMBNAIL = "project_thumbnail"
    PROJECT_SHOWCASE_PHOTO = "project_showcase_photo"
    USER_AVATAR = "user_avatar"
    USER_PROFILE_IMAGE = "user_profile_image"


@dataclass(frozen=True)
class FieldBinding:
    """Maps a document field to the owner kind its blob references carry."""

    collection: Collection
    field: str
    kind: OwnerFieldKind
    many: bool = False


PROJECT_FIELDS: tuple[FieldBinding, ...] = (
    FieldBinding(Collection.PROJECTS, "poster", OwnerFieldKind.PROJECT_POSTER),
    FieldBinding(Collection.PROJECTS, "thumbnail", OwnerFieldKind.PROJECT_THUMBNAIL),
    FieldBinding(
        Collection.PROJECTS,
        "showcase_photos",
        OwnerFieldKind.PROJECT_SHOWCASE_PHOTO,
        many=True,
    ),
)

USER_FIELDS: tuple[FieldBinding, ...] = (
    FieldBinding(Collection.USERS, "avatar_url", OwnerFieldKind.USER_AVATAR),
    FieldBinding(Collection.USERS, "profile_url", OwnerFieldKind.USER_PROFILE_IMAGE),
)

FIELD_BINDINGS: dict[Collection, tuple[FieldBinding, ...]] = {
    Collection.PROJECTS: PROJECT_FIELDS,
    Collection.USERS: USER_FIELDS,
}


def bindings_for(collection: Collection) -> tuple[FieldBinding, ...]:
    return FIELD_BINDINGS[collection]


def binding_for_kind(kind: OwnerFieldKind) -> FieldBinding:
    for bindings in FIELD_BINDINGS.values():
        for binding in bindings:
            if binding.kind == kind:
                return binding
    raise KeyError(kind)


def binding_for_field(collection: Collection, field: str) -> FieldBinding:
    for binding in FIELD_BINDINGS[collection]:
        if binding.field == field:
            return binding
    raise KeyError(f"{collection.value}.{field} does not hold blob references")
