"""
Version history routes: list, snapshot, inspect, diff, restore.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user
from app.api.documents import actor
from app.core.errors import InvalidRequestError, NotFoundError
from app.core.logging import api_logger, log_operation, documents_logger
from app.db.database import get_db
from app.db.enums import AccessLevel, VersionSource
from app.db.models import DocumentVersion, User
from app.realtime.socket import CollaborationHub
from app.services.documents import get_document_for_user
from app.services.versions import create_version, get_version, list_versions, unified_diff


class VersionCreate(BaseModel):
    label: Optional[str] = Field(default=None, max_length=200)


class VersionResponse(BaseModel):
    id: int
    document_id: int
    version_number: int
    title: str
    revision: int
    source: VersionSource
    label: Optional[str] = None
    created_by_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class VersionDetailResponse(VersionResponse):
    content: str


class DiffResponse(BaseModel):
    version_id: int
    against: Optional[int] = None
    diff: str


class RestoreResponse(BaseModel):
    document_id: int
    revision: int
    restored_from: int
    version: VersionResponse


def build_router(hub: CollaborationHub) -> APIRouter:
    router = APIRouter()

    async def load_version(db: AsyncSession, version_id: int, user: User, required: AccessLevel):
        version = await get_version(db, version_id)
        document, access = await get_document_for_user(db, version.document_id, user.id, required)
        return version, document, access

    @router.get("/document/{document_id}", response_model=List[VersionResponse])
    async def history(
        document_id: int,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        await get_document_for_user(db, document_id, current_user.id)
        return await list_versions(db, document_id)

    @router.post("/document/{document_id}", response_model=VersionResponse, status_code=status.HTTP_201_CREATED)
    async def snapshot(
        document_id: int,
        request: VersionCreate,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        document, _ = await get_document_for_user(db, document_id, current_user.id, AccessLevel.editor)
        async with hub.persist_lock(document_id):
            session = hub.get_session(document_id)
            if session is None:
                version = await create_version(
                    db,
                    document.id,
                    document.title,
                    document.content,
                    document.revision,
                    VersionSource.manual,
                    current_user.id,
                    label=request.label,
                    max_versions=hub.settings.MAX_VERSIONS_PER_DOCUMENT,
                )
                await db.commit()

        if session is not None:
            version = await hub.record_version(session, VersionSource.manual, current_user.id, request.label)
            if version is None:
                raise NotFoundError("Document not found")
            return version

        await hub.broadcast_version(document_id, version)
        return version

    @router.get("/{version_id}", response_model=VersionDetailResponse)
    async def get(
        version_id: int,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        version, _, _ = await load_version(db, version_id, current_user, AccessLevel.viewer)
        return version

    @router.get("/{version_id}/diff", response_model=DiffResponse)
    async def diff(
        version_id: int,
        against: Optional[int] = Query(default=None, description="Version to compare with; default is the current content"),
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        version, document, _ = await load_version(db, version_id, current_user, AccessLevel.viewer)
        if against is None:
            session = hub.get_session(document.id)
            target = session.content if session else document.content
            target_label = "current"
        else:
            other = await get_version(db, against)
            if other.document_id != version.document_id:
                raise InvalidRequestError("Versions belong to different documents")
            target = other.content
            target_label = f"version {other.version_number}"

        return DiffResponse(
            version_id=version.id,
            against=against,
            diff=unified_diff(version.content, target, f"version {version.version_number}", target_label),
        )

    @router.post("/{version_id}/restore", response_model=RestoreResponse)
    @log_operation("restore_version", documents_logger)
    async def restore(
        version_id: int,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        version, document, _ = await load_version(db, version_id, current_user, AccessLevel.editor)
        label = f"Restored from version {version.version_number}"
        renamed = version.title != document.title

        async with hub.persist_lock(document.id):
            session = hub.get_session(document.id)
            if renamed:
                document.title = version.title
            if session is None:
                if version.content != document.content:
                    document.content = version.content
                    document.revision = (document.revision or 0) + 1
                    document.last_edited_by_id = current_user.id
                restored = await create_version(
                    db,
                    document.id,
                    document.title,
                    document.content,
                    document.revision,
                    VersionSource.restore,
                    current_user.id,
                    label=label,
                    max_versions=hub.settings.MAX_VERSIONS_PER_DOCUMENT,
                )
            await db.commit()

        if session is None:
            if renamed:
                await hub.rename(document.id, document.title)
            await hub.broadcast_version(document.id, restored)
            revision = document.revision
        else:
            if renamed:
                await hub.rename(document.id, document.title)
            await hub.apply_content(session, version.content, actor(current_user))
            restored = await hub.record_version(session, VersionSource.restore, current_user.id, label)
            if restored is None:
                raise NotFoundError("Document not found")
            revision = restored.revision

        api_logger.info(
            "Version restored",
            document_id=document.id,
            version_number=version.version_number,
            user_id=current_user.id,
        )
        return RestoreResponse(
            document_id=document.id,
            revision=revision,
            restored_from=version.version_number,
            version=VersionResponse.model_validate(restored),
        )

    @router.delete("/{version_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete(
        version_id: int,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        version, _, _ = await load_version(db, version_id, current_user, AccessLevel.owner)
        await db.delete(version)
        await db.commit()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return router
