"""
Document store: access control, CRUD and sharing.

Shared by the REST routes and the real-time hub so both apply the same
access rules.
"""
from typing import List, Optional, Tuple

from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ForbiddenError, InvalidRequestError, NotFoundError
from app.core.logging import documents_logger
from app.db.enums import AccessLevel, CollaboratorRole
from app.db.models import Document, DocumentCollaborator, DocumentVersion, User


async def get_access_level(db: AsyncSession, document: Document, user_id: int) -> AccessLevel:
    if document.owner_id == user_id:
        return AccessLevel.owner
    result = await db.execute(
        select(DocumentCollaborator.role).where(
            DocumentCollaborator.document_id == document.id,
            DocumentCollaborator.user_id == user_id,
        )
    )
    role = result.scalar_one_or_none()
    if role is None:
        return AccessLevel.none
    return AccessLevel(CollaboratorRole(role).value)


async def get_document_for_user(
    db: AsyncSession,
    document_id: int,
    user_id: int,
    required: AccessLevel = AccessLevel.viewer,
) -> Tuple[Document, AccessLevel]:
    """
    Load a document and check the caller's access.

    Documents the caller cannot see at all are reported as not found.
    """
    document = await db.get(Document, document_id)
    if document is None:
        raise NotFoundError("Document not found")

    access = await get_access_level(db, document, user_id)
    if access == AccessLevel.none:
        raise NotFoundError("Document not found")
    if not access.allows(required):
        raise ForbiddenError(f"{required.value.capitalize()} access required")
    return document, access


async def list_documents_for_user(db: AsyncSession, user_id: int) -> List[Tuple[Document, AccessLevel]]:
    """Documents the user owns or collaborates on, most recently updated first."""
    shared = select(DocumentCollaborator.document_id).where(DocumentCollaborator.user_id == user_id)
    result = await db.execute(
        select(Document)
        .where(or_(Document.owner_id == user_id, Document.id.in_(shared)))
        .order_by(Document.updated_at.desc(), Document.id.desc())
    )
    documents = list(result.scalars().all())

    roles_result = await db.execute(
        select(DocumentCollaborator.document_id, DocumentCollaborator.role).where(
            DocumentCollaborator.user_id == user_id
        )
    )
    roles = {doc_id: role for doc_id, role in roles_result.all()}

    listing = []
    for document in documents:
        if document.owner_id == user_id:
            listing.append((document, AccessLevel.owner))
        else:
            listing.append((document, AccessLevel(CollaboratorRole(roles[document.id]).value)))
    return listing


async def create_document(db: AsyncSession, owner_id: int, title: str, content: str = "") -> Document:
    document = Document(title=title, content=content, owner_id=owner_id, revision=0, last_edited_by_id=owner_id)
    db.add(document)
    await db.flush()
    await db.refresh(document)
    documents_logger.info("Document created", document_id=document.id, owner_id=owner_id)
    return document


async def save_content(
    db: AsyncSession,
    document_id: int,
    content: str,
    revision: int,
    user_id: Optional[int],
    title: Optional[str] = None,
) -> Optional[Document]:
    """
    Persist live content. Returns None when the document no longer exists.
    A revision older than the stored one is never written over it.
    """
    document = await db.get(Document, document_id)
    if document is None:
        return None
    if (document.revision or 0) > revision:
        documents_logger.warning(
            "Stale content not saved", document_id=document_id, stored=document.revision, revision=revision
        )
        return document
    document.content = content
    document.revision = revision
    if title is not None:
        document.title = title
    if user_id is not None:
        document.last_edited_by_id = user_id
    await db.flush()
    return document


async def delete_document(db: AsyncSession, document: Document) -> None:
    document_id = document.id
    await db.execute(delete(DocumentCollaborator).where(DocumentCollaborator.document_id == document_id))
    await db.execute(delete(DocumentVersion).where(DocumentVersion.document_id == document_id))
    await db.delete(document)
    await db.flush()
    documents_logger.info("Document deleted", document_id=document_id)


async def list_collaborators(db: AsyncSession, document_id: int) -> List[Tuple[DocumentCollaborator, User]]:
    result = await db.execute(
        select(DocumentCollaborator, User)
        .join(User, User.id == DocumentCollaborator.user_id)
        .where(DocumentCollaborator.document_id == document_id)
        .order_by(DocumentCollaborator.id)
    )
    return list(result.all())


async def add_collaborator(
    db: AsyncSession, document: Document, username: str, role: CollaboratorRole
) -> Tuple[DocumentCollaborator, User]:
    """Share a document with a user, or change the role of an existing collaborator."""
    result = await db.execute(select(User).where(User.username == username))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found")
    if user.id == document.owner_id:
        raise InvalidRequestError("The owner already has full access")

    result = await db.execute(
        select(DocumentCollaborator).where(
            DocumentCollaborator.document_id == document.id,
            DocumentCollaborator.user_id == user.id,
        )
    )
    collaborator = result.scalar_one_or_none()
    if collaborator is None:
        collaborator = DocumentCollaborator(document_id=document.id, user_id=user.id, role=role)
        db.add(collaborator)
    else:
        collaborator.role = role
    await db.flush()
    await db.refresh(collaborator)
    documents_logger.info(
        "Collaborator saved", document_id=document.id, user_id=user.id, role=role.value
    )
    return collaborator, user


async def remove_collaborator(db: AsyncSession, document: Document, user_id: int) -> None:
    result = await db.execute(
        select(DocumentCollaborator).where(
            DocumentCollaborator.document_id == document.id,
            DocumentCollaborator.user_id == user_id,
        )
    )
    collaborator = result.scalar_one_or_none()
    if collaborator is None:
        raise NotFoundError("Collaborator not found")
    await db.delete(collaborator)
    await db.flush()

