"""
Pydantic schemas for the showcase FastAPI backend.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class UploadResponse(BaseModel):
    blobId: str
    contentType: str
    filename: str
    length: int


class DeleteMediaRequest(BaseModel):
    blobId: str = Field(..., max_length=64)


class DeleteMediaResponse(BaseModel):
    blobId: str
    referencesDeleted: int


class ReclaimRequest(BaseModel):
    blobId: str = Field(..., max_length=64)


class ReclaimResponse(BaseModel):
    blobId: str
    deleted: bool


class CleanupResponse(BaseModel):
    blobsDeleted: int
    blobsScanned: int
    referencesRemoved: int
    orphanIds: list[str]
    errors: list[str]
    dryRun: bool


class ReferenceInfo(BaseModel):
    blob_id: str
    owner_id: str
    kind: str
    created_at: float


class BlobReferencesResponse(BaseModel):
    blobId: str
    references: list[ReferenceInfo]


class MediaLink(BaseModel):
    """External video link. Uploaded files belong in the tracked image fields."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["youtube", "gdrive", "onedrive"]
    url: Optional[str] = None
    youtube_id: Optional[str] = None


class ProjectContributor(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    profile_url: Optional[str] = None
    project_role: Optional[
        Literal["mentor", "team-leader", "team-member", "project-head"]
    ] = None


class ProjectCreate(BaseModel):
    title: str = Field(..., max_length=200)
    description: str
    short_description: Optional[str] = None
    tech_stack: list[str] = Field(default_factory=list)
    poster: Optional[str] = None
    thumbnail: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    media: Optional[MediaLink] = None
    showcase_photos: list[str] = Field(default_factory=list)
    contributors: list[ProjectContributor] = Field(default_factory=list)
    is_published: bool = True
    order: Optional[int] = None


class ProjectUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    short_description: Optional[str] = None
    tech_stack: Optional[list[str]] = None
    poster: Optional[str] = None
    thumbnail: Optional[str] = None
    tags: Optional[list[str]] = None
    media: Optional[MediaLink] = None
    showcase_photos: Optional[list[str]] = None
    contributors: Optional[list[ProjectContributor]] = None
    is_published: Optional[bool] = None
    order: Optional[int] = None


class UserCreate(BaseModel):
    email: str = Field(..., max_length=320)
    name: str = Field(..., max_length=200)
    role: Literal["admin", "contributor", "both"] = "contributor"
    contributor_type: Optional[Literal["student", "staff"]] = None
    branch: Optional[Literal["IT", "ADS"]] = None
    staff_title: Optional[str] = None
    year_of_passing: Optional[str] = None
    register_no: Optional[str] = Field(None, pattern=r"^\d{14}$")
    avatar_url: Optional[str] = None
    profile_url: Optional[str] = None


class UserUpdate(BaseModel):
    email: Optional[str] = Field(None, max_length=320)
    name: Optional[str] = Field(None, max_length=200)
    role: Optional[Literal["admin", "contributor", "both"]] = None
    contributor_type: Optional[Literal["student", "staff"]] = None
    branch: Optional[Literal["IT", "ADS"]] = None
    staff_title: Optional[str] = None
    year_of_passing: Optional[str] = None
    register_no: Optional[str] = Field(None, pattern=r"^\d{14}$")
    avatar_url: Optional[str] = None
    profile_url: Optional[str] = None


class DocumentResponse(BaseModel):
    """A stored project or user; every stored field is passed through."""

    model_config = ConfigDict(extra="allow")

    id: str
    created_at: float
    updated_at: float


class ListProjectsResponse(BaseModel):
    projects: list[DocumentResponse]


class AdjacentProjectsResponse(BaseModel):
    prev: Optional[str] = None
    next: Optional[str] = None


class ListUsersResponse(BaseModel):
    users: list[DocumentResponse]


class DeleteResponse(BaseModel):
    ok: Literal[True] = True
