"""
Document routes.

Content changes made here go through the live collaboration session when the
document is open, so connected editors receive them as regular operations.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user
from app.core.logging import api_logger
from app.db.database import get_db
from app.db.enums import AccessLevel, CollaboratorRole
from app.db.models import Document, User
from app.realtime.socket import CollaborationHub
from app.services.documents import (
    add_collaborator,
    create_document,
    delete_document,
    get_document_for_user,
    list_collaborators,
    list_documents_for_user,
    remove_collaborator,
)


class DocumentCreate(BaseModel):
    title: str = Field(default="Untitled document", min_length=1, max_length=255)
    content: str = ""


class DocumentUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    content: Optional[str] = None


class DocumentResponse(BaseModel):
    id: int
    title: str
    owner_id: int
    revision: int
    access: AccessLevel
    live: bool
    last_edited_by_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DocumentDetailResponse(DocumentResponse):
    content: str


class CollaboratorCreate(BaseModel):
    username: str
    role: CollaboratorRole = CollaboratorRole.editor


class CollaboratorResponse(BaseModel):
    user_id: int
    username: str
    display_name: Optional[str] = None
    role: CollaboratorRole


class ParticipantResponse(BaseModel):
    user_id: int
    username: str
    display_name: Optional[str] = None
    connections: int


def actor(user: User) -> dict:
    return {"user_id": user.id, "username": user.username, "display_name": user.display_name}


def document_payload(hub: CollaborationHub, document: Document, access: AccessLevel, with_content: bool = True) -> dict:
    """Stored fields, overlaid with the live session state when the document is open."""
    session = hub.get_session(document.id)
    payload = {
        "id": document.id,
        "title": session.title if session else document.title,
        "owner_id": document.owner_id,
        "revision": session.version if session else document.revision,
        "access": access,
        "live": session is not None,
        "last_edited_by_id": document.last_edited_by_id,
        "created_at": document.created_at,
        "updated_at": document.updated_at,
    }
    if with_content:
        payload["content"] = session.content if session else document.content
    return payload


def build_router(hub: CollaborationHub) -> APIRouter:
    router = APIRouter()

    @router.get("/", response_model=List[DocumentResponse])
    async def list_documents(
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        listing = await list_documents_for_user(db, current_user.id)
        return [document_payload(hub, document, access, with_content=False) for document, access in listing]

    @router.post("/", response_model=DocumentDetailResponse, status_code=status.HTTP_201_CREATED)
    async def create(
        request: DocumentCreate,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        document = await create_document(db, current_user.id, request.title, request.content)
        await db.commit()
        await db.refresh(document)
        return document_payload(hub, document, AccessLevel.owner)

    @router.get("/{document_id}", response_model=DocumentDetailResponse)
    async def get_document(
        document_id: int,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        document, access = await get_document_for_user(db, document_id, current_user.id)
        return document_payload(hub, document, access)

    @router.patch("/{document_id}", response_model=DocumentDetailResponse)
    async def update(
        document_id: int,
        request: DocumentUpdate,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        document, access = await get_document_for_user(db, document_id, current_user.id, AccessLevel.editor)

        async with hub.persist_lock(document_id):
            session = hub.get_session(document_id)
            if request.title is not None:
                document.title = request.title
            if request.content is not None and session is None:
                if request.content != document.content:
                    document.content = request.content
                    document.revision = (document.revision or 0) + 1
                    document.last_edited_by_id = current_user.id
            await db.commit()

        # A session opened while we were writing is brought up to date like any live one
        if session is None:
            session = hub.get_session(document_id)

        # The live session writes through its own connection, after ours is committed
        if request.title is not None:
            await hub.rename(document_id, request.title)
        if request.content is not None and session is not None:
            await hub.apply_content(session, request.content, actor(current_user))

        await db.refresh(document)
        api_logger.info("Document updated", document_id=document_id, user_id=current_user.id)
        return document_payload(hub, document, access)

    @router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete(
        document_id: int,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        document, _ = await get_document_for_user(db, document_id, current_user.id, AccessLevel.owner)
        await delete_document(db, document)
        await db.commit()
        await hub.close_document(document_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.get("/{document_id}/collaborators", response_model=List[CollaboratorResponse])
    async def collaborators(
        document_id: int,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        await get_document_for_user(db, document_id, current_user.id)
        return [
            CollaboratorResponse(
                user_id=user.id,
                username=user.username,
                display_name=user.display_name,
                role=collaborator.role,
            )
            for collaborator, user in await list_collaborators(db, document_id)
        ]

    @router.post(
        "/{document_id}/collaborators",
        response_model=CollaboratorResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def share(
        document_id: int,
        request: CollaboratorCreate,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        document, _ = await get_document_for_user(db, document_id, current_user.id, AccessLevel.owner)
        collaborator, user = await add_collaborator(db, document, request.username, request.role)
        await db.commit()
        await hub.update_access(document_id, user.id, AccessLevel(request.role.value))
        return CollaboratorResponse(
            user_id=user.id,
            username=user.username,
            display_name=user.display_name,
            role=collaborator.role,
        )

    @router.delete("/{document_id}/collaborators/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def unshare(
        document_id: int,
        user_id: int,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        document, _ = await get_document_for_user(db, document_id, current_user.id, AccessLevel.owner)
        await remove_collaborator(db, document, user_id)
        await db.commit()
        await hub.update_access(document_id, user_id, AccessLevel.none)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.get("/{document_id}/participants", response_model=List[ParticipantResponse])
    async def participants(
        document_id: int,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ):
        await get_document_for_user(db, document_id, current_user.id)
        return hub.participants(document_id)

    return router
