"""
Version history: snapshots, retention and diffs.
"""
import difflib
from typing import List, Optional

from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError
from app.core.logging import documents_logger
from app.db.enums import VersionSource
from app.db.models import DocumentVersion


async def next_version_number(db: AsyncSession, document_id: int) -> int:
    result = await db.execute(
        select(func.max(DocumentVersion.version_number)).where(DocumentVersion.document_id == document_id)
    )
    return (result.scalar() or 0) + 1


async def create_version(
    db: AsyncSession,
    document_id: int,
    title: str,
    content: str,
    revision: int,
    source: VersionSource,
    created_by_id: Optional[int],
    label: Optional[str] = None,
    max_versions: int = 0,
) -> DocumentVersion:
    version = DocumentVersion(
        document_id=document_id,
        version_number=await next_version_number(db, document_id),
        title=title,
        content=content,
        revision=revision,
        source=source,
        label=label,
        created_by_id=created_by_id,
    )
    db.add(version)
    await db.flush()
    await db.refresh(version)
    documents_logger.info(
        "Version created",
        document_id=document_id,
        version_number=version.version_number,
        source=source.value,
    )

    if max_versions > 0:
        await prune_autosaves(db, document_id, max_versions)
    return version


async def prune_autosaves(db: AsyncSession, document_id: int, max_versions: int) -> int:
    """
    Delete the oldest autosave versions beyond `max_versions` in total.
    Manual and restore versions are never pruned.
    Returns the number of deleted versions.
    """
    total = (
        await db.execute(select(func.count(DocumentVersion.id)).where(DocumentVersion.document_id == document_id))
    ).scalar() or 0
    excess = total - max_versions
    if excess <= 0:
        return 0

    result = await db.execute(
        select(DocumentVersion.id)
        .where(
            DocumentVersion.document_id == document_id,
            DocumentVersion.source == VersionSource.autosave,
        )
        .order_by(DocumentVersion.version_number.asc())
        .limit(excess)
    )
    ids = [row[0] for row in result.all()]
    if ids:
        await db.execute(delete(DocumentVersion).where(DocumentVersion.id.in_(ids)))
        await db.flush()
        documents_logger.debug("Pruned autosave versions", document_id=document_id, count=len(ids))
    return len(ids)


async def list_versions(db: AsyncSession, document_id: int) -> List[DocumentVersion]:
    result = await db.execute(
        select(DocumentVersion)
        .where(DocumentVersion.document_id == document_id)
        .order_by(DocumentVersion.version_number.desc())
    )
    return list(result.scalars().all())


async def get_version(db: AsyncSession, version_id: int) -> DocumentVersion:
    version = await db.get(DocumentVersion, version_id)
    if version is None:
        raise NotFoundError("Version not found")
    return version


def unified_diff(old: str, new: str, old_label: str, new_label: str) -> str:
    lines = difflib.unified_diff(
        old.splitlines(keepends=True),
        new.splitlines(keepends=True),
        fromfile=old_label,
        tofile=new_label,
    )
    return "".join(lines)
