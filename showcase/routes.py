"""
HTTP routes for the showcase backend API.
"""

from __future__ import annotations

import json
import logging
import re
import time
from datetime import timedelta
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response
from pydantic import ValidationError
from starlette.datastructures import UploadFile as StarletteUploadFile

from showcase.config import Settings
from showcase.dependencies import (
    get_app_settings,
    get_blob_store,
    get_document_store,
    get_ledger,
    get_media_documents,
    get_reclaimer,
    require_admin_token,
)
from showcase.documents import (
    DocumentStore,
    clear_contributor_images,
    refresh_contributor_snapshots,
)
from showcase.errors import BlobNotFoundError
from showcase.ledger import ReferenceLedger
from showcase.media_urls import validate_blob_id
from showcase.mutators import MediaAwareDocuments
from showcase.reclaimer import OrphanReclaimer
from showcase.schemas import (
    AdjacentProjectsResponse,
    BlobReferencesResponse,
    CleanupResponse,
    DeleteMediaRequest,
    DeleteMediaResponse,
    DeleteResponse,
    DocumentResponse,
    ListProjectsResponse,
    ListUsersResponse,
    ProjectCreate,
    ProjectUpdate,
    ReclaimRequest,
    ReclaimResponse,
    ReferenceInfo,
    UploadResponse,
    UserCreate,
    UserUpdate,
)
from showcase.storage import (
    DEFAULT_CONTENT_TYPE,
    BlobStore,
    guess_type_from_filename,
    resolve_content_type,
)
from showcase.transactions import PendingUpload, create_with_blobs, update_with_blobs
from showcase.types import Collection

logger = logging.getLogger(__name__)

router = APIRouter()
media_router = APIRouter()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
VIDEO_LINK_KINDS = ("youtube", "gdrive", "onedrive")


def _default_filename() -> str:
    return f"upload-{int(time.time() * 1000)}"


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


@router.post("/media/upload", response_model=UploadResponse)
async def upload_media(
    request: Request,
    store: BlobStore = Depends(get_blob_store),
):
    """
    Store one file. Accepts multipart form data with a ``file`` field, or a
    raw body whose name comes from the ``x-filename`` header.
    """
    header_type = request.headers.get("content-type", "")
    if header_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if not isinstance(upload, StarletteUploadFile):
            raise HTTPException(status_code=400, detail="No file in form")
        data = await upload.read()
        filename = upload.filename or _default_filename()
        content_type = upload.content_type or None
    else:
        data = await request.body()
        filename = request.headers.get("x-filename") or _default_filename()
        content_type = header_type or None

    if not data:
        raise HTTPException(status_code=400, detail="No body")

    blob_id = await run_in_threadpool(store.upload, data, filename, content_type)
    logger.info("Stored upload %s (%s, %d bytes)", blob_id, filename, len(data))
    return UploadResponse(
        blobId=blob_id,
        contentType=content_type
        or guess_type_from_filename(filename)
        or DEFAULT_CONTENT_TYPE,
        filename=filename,
        length=len(data),
    )


@router.delete("/media/delete", response_model=DeleteMediaResponse)
def delete_media(
    payload: DeleteMediaRequest,
    store: BlobStore = Depends(get_blob_store),
    ledger: ReferenceLedger = Depends(get_ledger),
):
    """
    Explicit delete. Wins over reference bookkeeping: any ledger entries for
    the blob are purged along with it.
    """
    blob_id = validate_blob_id(payload.blobId)
    if not store.exists(blob_id):
        raise HTTPException(status_code=404, detail="File not found")
    references_deleted = ledger.remove_all_for_blob(blob_id)
    try:
        store.delete(blob_id)
    except BlobNotFoundError:
        logger.info("Blob %s was removed concurrently", blob_id)
    logger.info(
        "Deleted blob %s and %d reference(s)", blob_id, references_deleted
    )
    return DeleteMediaResponse(blobId=blob_id, referencesDeleted=references_deleted)


@router.post("/media/reclaim", response_model=ReclaimResponse)
def reclaim_media(
    payload: ReclaimRequest,
    reclaimer: OrphanReclaimer = Depends(get_reclaimer),
):
    """Delete a blob only if nothing references it (e.g. an abandoned form upload)."""
    blob_id = validate_blob_id(payload.blobId)
    return ReclaimResponse(blobId=blob_id, deleted=reclaimer.reclaim_if_orphaned(blob_id))


@router.post(
    "/media/cleanup",
    response_model=CleanupResponse,
    dependencies=[Depends(require_admin_token)],
)
def cleanup_media(
    older_than_minutes: Optional[int] = Query(None, ge=0, le=60 * 24 * 365),
    dry_run: bool = Query(False),
    reclaimer: OrphanReclaimer = Depends(get_reclaimer),
    settings: Settings = Depends(get_app_settings),
):
    if older_than_minutes is None:
        older_than_minutes = settings.sweep_older_than_minutes
    report = reclaimer.sweep(
        older_than=timedelta(minutes=older_than_minutes), dry_run=dry_run
    )
    return CleanupResponse(
        blobsDeleted=report.blobs_deleted,
        blobsScanned=report.blobs_scanned,
        referencesRemoved=report.references_removed,
        orphanIds=report.orphan_ids,
        errors=report.errors,
        dryRun=report.dry_run,
    )


@router.get("/media/{blob_id}/references", response_model=BlobReferencesResponse)
def list_media_references(
    blob_id: str,
    ledger: ReferenceLedger = Depends(get_ledger),
):
    blob_id = validate_blob_id(blob_id)
    references = [
        ReferenceInfo(**entry.as_dict()) for entry in ledger.references_for(blob_id)
    ]
    return BlobReferencesResponse(blobId=blob_id, references=references)


@media_router.get("/media/{blob_id}")
def download_media(
    blob_id: str,
    store: BlobStore = Depends(get_blob_store),
):
    """Serve blob bytes at the URL stored in documents (``/media/<blobId>``)."""
    try:
        blob = store.download(validate_blob_id(blob_id))
    except BlobNotFoundError:
        raise HTTPException(status_code=404, detail="Not found")
    info = blob.info
    headers = {
        "cache-control": "public, max-age=31536000, immutable",
        "etag": f'"{info.checksum}"',
    }
    if info.filename:
        headers["content-disposition"] = f'inline; filename="{quote(info.filename)}"'
    return Response(
        content=blob.data,
        media_type=resolve_content_type(info),
        headers=headers,
    )


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def _validate_project(data: dict, pending_fields: tuple[str, ...] = ()) -> None:
    required = (
        ("title", "Title"),
        ("short_description", "Short Description"),
        ("description", "Description"),
        ("poster", "Poster Image"),
    )
    for key, label in required:
        if key in pending_fields:
            continue
        value = data.get(key)
        if not value or (isinstance(value, str) and not value.strip()):
            raise HTTPException(status_code=400, detail=f"{label} is required")
    if not data.get("tech_stack"):
        raise HTTPException(status_code=400, detail="At least one tech stack is required")
    if not data.get("contributors"):
        raise HTTPException(status_code=400, detail="At least one contributor is required")
    media = data.get("media") or {}
    if media.get("kind") not in VIDEO_LINK_KINDS or not media.get("url"):
        raise HTTPException(status_code=400, detail="At least one video link is required")
    if not data.get("showcase_photos") and "showcase_photos" not in pending_fields:
        raise HTTPException(
            status_code=400, detail="At least one showcase photo is required"
        )


@router.get("/projects", response_model=ListProjectsResponse)
def list_projects(
    limit: int = Query(24, ge=1, le=100),
    skip: int = Query(0, ge=0),
    documents: DocumentStore = Depends(get_document_store),
):
    projects = documents.list_documents(
        Collection.PROJECTS, limit=limit, skip=skip, published_only=True
    )
    return ListProjectsResponse(projects=projects)


@router.get("/projects/{project_id}", response_model=DocumentResponse)
def get_project(
    project_id: str,
    media_docs: MediaAwareDocuments = Depends(get_media_documents),
):
    return media_docs.get(Collection.PROJECTS, project_id)


@router.get("/projects/{project_id}/adjacent", response_model=AdjacentProjectsResponse)
def get_adjacent_projects(
    project_id: str,
    documents: DocumentStore = Depends(get_document_store),
):
    ids = [
        doc["id"]
        for doc in documents.list_documents(
            Collection.PROJECTS, limit=10_000, published_only=True
        )
    ]
    if project_id not in ids:
        return AdjacentProjectsResponse()
    index = ids.index(project_id)
    return AdjacentProjectsResponse(
        prev=ids[index - 1] if index > 0 else None,
        next=ids[index + 1] if index < len(ids) - 1 else None,
    )


@router.post("/projects", response_model=DocumentResponse, status_code=201)
def create_project(
    payload: ProjectCreate,
    media_docs: MediaAwareDocuments = Depends(get_media_documents),
):
    data = payload.model_dump(exclude_none=True)
    _validate_project(data)
    return media_docs.create(Collection.PROJECTS, data)


def _pending_uploads(
    poster: Optional[UploadFile],
    thumbnail: Optional[UploadFile],
    showcase_photos: Optional[list[UploadFile]],
) -> list[PendingUpload]:
    uploads = []
    for field, files in (
        ("poster", [poster] if poster else []),
        ("thumbnail", [thumbnail] if thumbnail else []),
        ("showcase_photos", showcase_photos or []),
    ):
        for upload in files:
            uploads.append(
                PendingUpload(
                    field=field,
                    content=upload.file,
                    filename=upload.filename or _default_filename(),
                    content_type=upload.content_type or None,
                )
            )
    return uploads


@router.post("/projects/with-files", response_model=DocumentResponse, status_code=201)
def create_project_with_files(
    project: str = Form(..., description="Project fields as JSON"),
    poster: Optional[UploadFile] = File(None),
    thumbnail: Optional[UploadFile] = File(None),
    showcase_photos: Optional[list[UploadFile]] = File(None),
    media_docs: MediaAwareDocuments = Depends(get_media_documents),
    store: BlobStore = Depends(get_blob_store),
):
    """
    Create a project and upload its images in one call. If the insert fails,
    every file uploaded by this request is deleted again.
    """
    try:
        payload = ProjectCreate.model_validate(json.loads(project))
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid project payload: {exc}")

    uploads = _pending_uploads(poster, thumbnail, showcase_photos)
    data = payload.model_dump(exclude_none=True)
    _validate_project(data, pending_fields=tuple(upload.field for upload in uploads))
    return create_with_blobs(media_docs, store, Collection.PROJECTS, data, uploads)


@router.put("/projects/{project_id}/with-files", response_model=DocumentResponse)
def update_project_with_files(
    project_id: str,
    project: str = Form("{}", description="Changed project fields as JSON"),
    poster: Optional[UploadFile] = File(None),
    thumbnail: Optional[UploadFile] = File(None),
    showcase_photos: Optional[list[UploadFile]] = File(None),
    media_docs: MediaAwareDocuments = Depends(get_media_documents),
    store: BlobStore = Depends(get_blob_store),
):
    """
    Update a project and upload replacement images in one call. New showcase
    photos are appended; a new poster or thumbnail replaces the old blob,
    which is reclaimed once the update is stored.
    """
    try:
        payload = ProjectUpdate.model_validate(json.loads(project))
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid project payload: {exc}")

    uploads = _pending_uploads(poster, thumbnail, showcase_photos)
    updates = payload.model_dump(exclude_unset=True)
    return update_with_blobs(
        media_docs, store, Collection.PROJECTS, project_id, updates, uploads
    )


@router.put("/projects/{project_id}", response_model=DocumentResponse)
def update_project(
    project_id: str,
    payload: ProjectUpdate,
    media_docs: MediaAwareDocuments = Depends(get_media_documents),
):
    """Fields sent as ``null`` are removed from the project."""
    updates = payload.model_dump(exclude_unset=True)
    return media_docs.update(Collection.PROJECTS, project_id, updates)


@router.delete("/projects/{project_id}", response_model=DeleteResponse)
def delete_project(
    project_id: str,
    media_docs: MediaAwareDocuments = Depends(get_media_documents),
):
    if not media_docs.delete(Collection.PROJECTS, project_id):
        raise HTTPException(status_code=404, detail="Not found")
    return DeleteResponse()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _check_email(documents: DocumentStore, email: str, user_id: Optional[str] = None) -> str:
    email = email.strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise HTTPException(status_code=400, detail="Please enter a valid email address")
    for existing in documents.find_by_field(Collection.USERS, "email", email):
        if existing["id"] != user_id:
            raise HTTPException(
                status_code=400, detail="A user with this email already exists"
            )
    return email


def _validate_user_type(data: dict) -> None:
    role = data.get("role")
    contributor_type = data.get("contributor_type")
    if role in ("contributor", "both") and not contributor_type:
        raise HTTPException(status_code=400, detail="User type is required")
    if contributor_type == "student":
        if not data.get("branch"):
            raise HTTPException(status_code=400, detail="Branch is required for students")
        if not data.get("year_of_passing"):
            raise HTTPException(
                status_code=400, detail="Year of passing is required for students"
            )
    if contributor_type == "staff" and not data.get("staff_title"):
        raise HTTPException(
            status_code=400, detail="Staff title is required for staff members"
        )


@router.get("/users", response_model=ListUsersResponse)
def list_users(
    role: Optional[str] = Query(None),
    documents: DocumentStore = Depends(get_document_store),
):
    users = documents.list_documents(Collection.USERS, limit=10_000)
    if role:
        users = [user for user in users if user.get("role") in (role, "both")]
    return ListUsersResponse(users=users)


@router.get("/users/{user_id}", response_model=DocumentResponse)
def get_user(
    user_id: str,
    media_docs: MediaAwareDocuments = Depends(get_media_documents),
):
    return media_docs.get(Collection.USERS, user_id)


@router.post("/users", response_model=DocumentResponse, status_code=201)
def create_user(
    payload: UserCreate,
    documents: DocumentStore = Depends(get_document_store),
    media_docs: MediaAwareDocuments = Depends(get_media_documents),
):
    data = payload.model_dump(exclude_none=True)
    if not data["name"].strip():
        raise HTTPException(status_code=400, detail="Name is required")
    data["email"] = _check_email(documents, data["email"])
    _validate_user_type(data)
    return media_docs.create(Collection.USERS, data)


@router.put("/users/{user_id}", response_model=DocumentResponse)
def update_user(
    user_id: str,
    payload: UserUpdate,
    documents: DocumentStore = Depends(get_document_store),
    media_docs: MediaAwareDocuments = Depends(get_media_documents),
):
    """
    Update a user. Empty strings or ``null`` clear the avatar/profile image;
    project contributor snapshots are refreshed afterwards.
    """
    current = media_docs.get(Collection.USERS, user_id)
    updates = payload.model_dump(exclude_unset=True)
    if "name" in updates and not (updates["name"] or "").strip():
        raise HTTPException(status_code=400, detail="Name is required")
    if updates.get("email"):
        updates["email"] = _check_email(documents, updates["email"], user_id)
    _validate_user_type({**current, **updates})

    user = media_docs.update(Collection.USERS, user_id, updates)
    try:
        refresh_contributor_snapshots(documents, user)
    except Exception:
        logger.exception("Failed to refresh contributor snapshots for %s", user_id)
    return user


@router.delete("/users/{user_id}", response_model=DeleteResponse)
def delete_user(
    user_id: str,
    documents: DocumentStore = Depends(get_document_store),
    media_docs: MediaAwareDocuments = Depends(get_media_documents),
):
    if not media_docs.delete(Collection.USERS, user_id):
        raise HTTPException(status_code=404, detail="User not found")
    try:
        clear_contributor_images(documents, user_id)
    except Exception:
        logger.exception("Failed to clear contributor images for %s", user_id)
    return DeleteResponse()
