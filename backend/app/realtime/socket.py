"""
Socket.IO server implementation for collaborative editing.

Rooms:
- document:{document_id} - participants of one document

Client events:
- join_document / leave_document - enter or leave a document session
- edit - submit an operation against a known version
- cursor - share caret position / selection
- save_version - record a manual version of the live content
- sync - request the full document state

Server events:
- connected - connection accepted
- document:state - full state (content, version, participants, cursors)
- document:operation - an edit applied by someone else
- edit:ack - the sender's edit was applied as `version`
- presence:joined / presence:left - a user's first socket joined / last socket left
- cursor:update / cursor:clear - caret changes
- version:created - a version snapshot was recorded
- document:renamed / document:deleted - changes made over REST
- document:access_changed / document:access_revoked - sharing changes
- error - {message, code, document_id?}
"""
import asyncio
import logging
import weakref
from typing import Dict, List, Optional

import socketio
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings, settings
from app.core.errors import AppError, AuthenticationError, ForbiddenError, InvalidRequestError, NotFoundError
from app.core.logging import realtime_logger
from app.db.database import async_session
from app.db.enums import AccessLevel, VersionSource
from app.db.models import Document, DocumentVersion
from app.realtime.auth import authenticate_socket
from app.realtime.cursors import CursorTracker
from app.realtime.operations import OperationError, TextOperation
from app.realtime.presence import DocumentPresence
from app.realtime.session import AppliedOperation, DocumentSession, SessionRegistry, StaleVersionError
from app.services.documents import get_document_for_user, save_content
from app.services.versions import create_version

logger = logging.getLogger(__name__)


class NotJoinedError(AppError):
    status_code = 409
    code = "not_joined"


def create_socket_server(config: Optional[Settings] = None) -> socketio.AsyncServer:
    """
    Build the Socket.IO server.
    CORS mirrors the HTTP layer; keep-alive timing comes from settings (milliseconds).
    """
    config = config or settings
    return socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=config.cors_origins,
        cors_credentials=True,
        ping_timeout=config.SOCKET_PING_TIMEOUT_MS // 1000,
        ping_interval=config.SOCKET_PING_INTERVAL_MS // 1000,
        max_http_buffer_size=config.max_body_bytes,
        logger=False,
        engineio_logger=False,
    )


def document_room(document_id: int) -> str:
    return f"document:{document_id}"


def parse_document_id(data) -> int:
    if not isinstance(data, dict):
        raise InvalidRequestError("payload must be an object")
    value = data.get("document_id")
    if isinstance(value, bool):
        raise InvalidRequestError("document_id is required")
    try:
        document_id = int(value)
    except (TypeError, ValueError):
        raise InvalidRequestError("document_id is required")
    if document_id <= 0:
        raise InvalidRequestError("document_id is required")
    return document_id


def _parse_int(data: dict, key: str, default: Optional[int] = None) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or value is None:
        raise InvalidRequestError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"{key} must be an integer")


class CollaborationHub:
    """
    Per-document collaboration sessions over Socket.IO.

    Built once at startup and handed to the routers that need to reach live
    sessions (documents, versions).
    """

    def __init__(
        self,
        sio: socketio.AsyncServer,
        session_factory=None,
        config: Optional[Settings] = None,
    ):
        self.sio = sio
        self.session_factory = session_factory or async_session
        self.settings = config or settings
        self.presence = DocumentPresence()
        self.cursors = CursorTracker(ttl_seconds=self.settings.CURSOR_TTL_SECONDS)
        self.sessions = SessionRegistry()
        # sid -> {user_id, username, display_name, access: {document_id: AccessLevel}}
        self.connections: Dict[str, dict] = {}
        self._autosave_task: Optional[asyncio.Task] = None
        # document_id -> lock serializing writes to the store
        self._persist_locks = weakref.WeakValueDictionary()
        self._register_handlers()

    def _register_handlers(self) -> None:
        self.sio.on("connect", self.connect)
        self.sio.on("disconnect", self.disconnect)
        self.sio.on("join_document", self.join_document)
        self.sio.on("leave_document", self.leave_document)
        self.sio.on("edit", self.edit)
        self.sio.on("cursor", self.cursor)
        self.sio.on("save_version", self.save_version)
        self.sio.on("sync", self.sync)

    # ============================================================
    # Lifecycle
    # ============================================================

    def start(self) -> None:
        if self._autosave_task is None:
            self._autosave_task = asyncio.create_task(self._autosave_loop())
            realtime_logger.info(
                "Autosave started", interval_seconds=self.settings.AUTOSAVE_INTERVAL_SECONDS
            )

    async def stop(self) -> None:
        """Stop the autosave loop and flush every live session."""
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            try:
                await self._autosave_task
            except asyncio.CancelledError:
                pass
            self._autosave_task = None
        for session in self.sessions.all():
            await self.flush(session)
        realtime_logger.info("Collaboration hub stopped", sessions=len(self.sessions))

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.AUTOSAVE_INTERVAL_SECONDS)
            for session in self.sessions.all():
                try:
                    await self.flush(session)
                except Exception as e:
                    realtime_logger.error(
                        "Autosave failed", error=e, exc_info=True, document_id=session.document_id
                    )

    # ============================================================
    # Connection events
    # ============================================================

    async def connect(self, sid: str, environ: dict, auth: dict = None):
        """
        Handle new socket connection.
        Returning False rejects the connection.
        """
        logger.info(f"Socket connect attempt: {sid}")
        is_authenticated, user_data = await authenticate_socket(auth, environ, self.session_factory)
        if not is_authenticated:
            logger.warning(f"Socket connection rejected: {sid}")
            return False

        self.connections[sid] = {**user_data, "access": {}}
        await self.sio.emit("connected", {
            "status": "ok",
            "user_id": user_data["user_id"],
            "username": user_data["username"],
        }, room=sid)
        logger.info(f"Socket connected: {sid} (user: {user_data['username']})")
        return True

    async def disconnect(self, sid: str, *args):
        """
        Handle socket disconnection, including keep-alive timeouts.
        Rooms are left automatically; presence, cursors and sessions are released here.
        """
        user = self.connections.pop(sid, None)
        if user is None:
            self.presence.disconnect(sid)
            logger.info(f"Socket disconnected: {sid} (unauthenticated)")
            return

        for document_id in sorted(self.presence.documents_for(sid)):
            await self._leave(sid, document_id, user)
        logger.info(f"Socket disconnected: {sid} (user: {user['username']})")

    # ============================================================
    # Client events
    # ============================================================

    async def join_document(self, sid: str, data: dict):
        """Expected data: { "document_id": int }"""
        try:
            user = self._require_user(sid)
            document_id = parse_document_id(data)
            async with self.session_factory() as db:
                _, access = await get_document_for_user(db, document_id, user["user_id"])
            session = await self.sessions.get_or_load(document_id, self._load_session)

            # Register presence before any further await so a concurrent release keeps the session
            came_online = self.presence.join(document_id, user["user_id"], sid)
            user["access"][document_id] = access
            await self.sio.enter_room(sid, document_room(document_id))
        except AppError as e:
            await self._emit_error(sid, e, data)
            return
        except SQLAlchemyError as e:
            await self._emit_store_error(sid, e, data)
            return

        if came_online:
            await self.sio.emit("presence:joined", {
                "document_id": document_id,
                "user_id": user["user_id"],
                "username": user["username"],
                "display_name": user.get("display_name"),
            }, room=document_room(document_id), skip_sid=sid)

        await self.sio.emit("document:state", self._state_payload(session, access), room=sid)
        realtime_logger.info(
            "Joined document", document_id=document_id, user_id=user["user_id"], access=access.value
        )

    async def leave_document(self, sid: str, data: dict):
        """Expected data: { "document_id": int }"""
        try:
            user = self._require_user(sid)
            document_id = parse_document_id(data)
            self._require_joined(sid, document_id)
        except AppError as e:
            await self._emit_error(sid, e, data)
            return

        await self.sio.leave_room(sid, document_room(document_id))
        await self._leave(sid, document_id, user)
        await self.sio.emit("document:left", {"document_id": document_id}, room=sid)

    async def edit(self, sid: str, data: dict):
        """
        Expected data, either:
        { "document_id": int, "version": int, "operation": [components] }
        { "document_id": int, "version": int, "position": int, "delete": int, "text": str }
        """
        try:
            user = self._require_user(sid)
            document_id = parse_document_id(data)
            session = self._require_joined(sid, document_id)
            if not user["access"][document_id].can_edit:
                raise ForbiddenError("Editor access required")
            base_version = _parse_int(data, "version")

            if "operation" in data:
                operation = TextOperation.from_json(data["operation"])
                applied = await session.apply(base_version, operation, user["user_id"])
            else:
                text = data.get("text", "")
                if not isinstance(text, str):
                    raise InvalidRequestError("text must be a string")
                applied = await session.apply_splice(
                    base_version,
                    _parse_int(data, "position"),
                    _parse_int(data, "delete", 0),
                    text,
                    user["user_id"],
                )
        except StaleVersionError as e:
            await self._emit_error(sid, e, data, code="stale_version")
            await self.sio.emit(
                "document:state", self._state_payload(session, user["access"][document_id]), room=sid
            )
            return
        except OperationError as e:
            await self._emit_error(sid, e, data, code="invalid_operation")
            return
        except AppError as e:
            await self._emit_error(sid, e, data)
            return

        await self._broadcast_operation(session, applied, user, sender_sid=sid)

        if session.ops_since_snapshot >= self.settings.SNAPSHOT_EVERY_OPERATIONS:
            try:
                await self.record_version(session, VersionSource.autosave, None)
            except SQLAlchemyError as e:
                await self._emit_store_error(sid, e, data)

    async def cursor(self, sid: str, data: dict):
        """Expected data: { "document_id": int, "position": int, "selection_end": int | null }"""
        try:
            user = self._require_user(sid)
            document_id = parse_document_id(data)
            session = self._require_joined(sid, document_id)
            length = len(session.content)
            position = min(max(_parse_int(data, "position"), 0), length)
            selection_end = data.get("selection_end")
            if selection_end is not None:
                selection_end = min(max(_parse_int(data, "selection_end"), 0), length)
        except AppError as e:
            await self._emit_error(sid, e, data)
            return

        state = self.cursors.update(document_id, user["user_id"], user["username"], position, selection_end)
        await self.sio.emit("cursor:update", {
            "document_id": document_id,
            **state.to_dict(),
        }, room=document_room(document_id), skip_sid=sid)

    async def save_version(self, sid: str, data: dict):
        """Expected data: { "document_id": int, "label": str | null }"""
        try:
            user = self._require_user(sid)
            document_id = parse_document_id(data)
            session = self._require_joined(sid, document_id)
            if not user["access"][document_id].can_edit:
                raise ForbiddenError("Editor access required")
            label = data.get("label")
            if label is not None and not isinstance(label, str):
                raise InvalidRequestError("label must be a string")
        except AppError as e:
            await self._emit_error(sid, e, data)
            return

        try:
            await self.record_version(session, VersionSource.manual, user["user_id"], label)
        except SQLAlchemyError as e:
            await self._emit_store_error(sid, e, data)

    async def sync(self, sid: str, data: dict):
        """Expected data: { "document_id": int }"""
        try:
            user = self._require_user(sid)
            document_id = parse_document_id(data)
            session = self._require_joined(sid, document_id)
        except AppError as e:
            await self._emit_error(sid, e, data)
            return
        await self.sio.emit(
            "document:state", self._state_payload(session, user["access"][document_id]), room=sid
        )

    # ============================================================
    # Sessions and persistence
    # ============================================================

    def persist_lock(self, document_id: int) -> asyncio.Lock:
        """
        Lock held by every writer of a document's stored content or versions.

        Session loads take it too, so a load never reads between a REST
        route's live-session check and its commit.
        """
        lock = self._persist_locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._persist_locks[document_id] = lock
        return lock

    async def _load_session(self, document_id: int) -> DocumentSession:
        async with self.persist_lock(document_id), self.session_factory() as db:
            document = await db.get(Document, document_id)
            if document is None:
                raise NotFoundError("Document not found")
            session = DocumentSession(
                document_id=document.id,
                title=document.title,
                content=document.content or "",
                version=document.revision or 0,
                history_limit=self.settings.SESSION_HISTORY_LIMIT,
            )
        realtime_logger.info("Session opened", document_id=document_id, version=session.version)
        return session

    async def flush(self, session: DocumentSession) -> bool:
        """Write dirty live content to the store. Returns True when something was written."""
        async with self.persist_lock(session.document_id):
            return await self._write(session)

    async def _write(self, session: DocumentSession) -> bool:
        if not session.dirty:
            return False
        snapshot = await session.snapshot()
        last_editor = session.history[-1].user_id if session.history else None
        async with self.session_factory() as db:
            document = await save_content(
                db,
                session.document_id,
                snapshot["content"],
                snapshot["version"],
                last_editor,
            )
            await db.commit()
        if document is None:
            realtime_logger.warning("Flush skipped, document is gone", document_id=session.document_id)
            return False
        if session.version == snapshot["version"]:
            session.dirty = False
        realtime_logger.debug("Session flushed", document_id=session.document_id, version=snapshot["version"])
        return True

    async def record_version(
        self,
        session: DocumentSession,
        source: VersionSource,
        user_id: Optional[int],
        label: Optional[str] = None,
    ) -> Optional[DocumentVersion]:
        """Flush the session and record a version of its content; broadcasts version:created."""
        async with self.persist_lock(session.document_id):
            await self._write(session)
            snapshot = await session.snapshot()
            async with self.session_factory() as db:
                if await db.get(Document, session.document_id) is None:
                    return None
                version = await create_version(
                    db,
                    session.document_id,
                    snapshot["title"],
                    snapshot["content"],
                    snapshot["version"],
                    source,
                    user_id,
                    label=label,
                    max_versions=self.settings.MAX_VERSIONS_PER_DOCUMENT,
                )
                await db.commit()
            # Edits applied while the version was written still count towards the next one
            session.ops_since_snapshot = session.version - snapshot["version"]
        await self.broadcast_version(session.document_id, version)
        return version

    async def release_session(self, document_id: int) -> None:
        """Persist and drop a session nobody is connected to any more."""
        session = self.sessions.get(document_id)
        if session is None:
            return
        if session.ops_since_snapshot > 0:
            await self.record_version(session, VersionSource.autosave, None)
        else:
            await self.flush(session)

        # Someone may have joined while we were writing
        if self.presence.is_empty(document_id):
            self.sessions.evict(document_id)
            self.cursors.drop_document(document_id)
            realtime_logger.info("Session closed", document_id=document_id, version=session.version)

    async def _leave(self, sid: str, document_id: int, user: dict) -> None:
        result = self.presence.leave(document_id, sid)
        user["access"].pop(document_id, None)
        if result and result["went_offline"]:
            if self.cursors.remove(document_id, user["user_id"]):
                await self.sio.emit("cursor:clear", {
                    "document_id": document_id,
                    "user_id": user["user_id"],
                }, room=document_room(document_id))
            await self.sio.emit("presence:left", {
                "document_id": document_id,
                "user_id": user["user_id"],
                "username": user["username"],
            }, room=document_room(document_id))
        if self.presence.is_empty(document_id):
            try:
                await self.release_session(document_id)
            except SQLAlchemyError as e:
                # Session stays in memory; the autosave loop retries the flush
                realtime_logger.error("Release failed", error=e, exc_info=True, document_id=document_id)

    # ============================================================
    # Helpers used by the REST routes
    # ============================================================

    def get_session(self, document_id: int) -> Optional[DocumentSession]:
        return self.sessions.get(document_id)

    async def apply_content(
        self, session: DocumentSession, content: str, user: dict
    ) -> Optional[AppliedOperation]:
        """Replace the live content (REST edit or restore) and broadcast it to participants."""
        applied = await session.replace(content, user["user_id"])
        if applied is None:
            return None
        await self._broadcast_operation(session, applied, user)
        await self.flush(session)
        return applied

    async def rename(self, document_id: int, title: str) -> None:
        session = self.sessions.get(document_id)
        if session is not None:
            session.title = title
        await self.sio.emit("document:renamed", {
            "document_id": document_id,
            "title": title,
        }, room=document_room(document_id))

    async def close_document(self, document_id: int) -> None:
        """Tell participants the document is gone and drop every trace of it."""
        await self.sio.emit("document:deleted", {"document_id": document_id}, room=document_room(document_id))
        for sid in self.presence.drop_document(document_id):
            user = self.connections.get(sid)
            if user is not None:
                user["access"].pop(document_id, None)
        await self.sio.close_room(document_room(document_id))
        self.sessions.evict(document_id)
        self.cursors.drop_document(document_id)
        realtime_logger.info("Document closed", document_id=document_id)

    async def update_access(self, document_id: int, user_id: int, access: AccessLevel) -> None:
        """Apply a sharing change to the user's connected sockets."""
        for sid, user in list(self.connections.items()):
            if user["user_id"] != user_id or not self.presence.is_joined(document_id, sid):
                continue
            if access == AccessLevel.none:
                await self.sio.leave_room(sid, document_room(document_id))
                await self._leave(sid, document_id, user)
                await self.sio.emit("document:access_revoked", {"document_id": document_id}, room=sid)
            else:
                user["access"][document_id] = access
                await self.sio.emit("document:access_changed", {
                    "document_id": document_id,
                    "access": access.value,
                }, room=sid)

    def participants(self, document_id: int) -> List[dict]:
        by_user: Dict[int, dict] = {}
        for sid in self.presence.sockets_for(document_id):
            user = self.connections.get(sid)
            if user is None:
                continue
            entry = by_user.setdefault(user["user_id"], {
                "user_id": user["user_id"],
                "username": user["username"],
                "display_name": user.get("display_name"),
                "connections": 0,
            })
            entry["connections"] += 1
        return sorted(by_user.values(), key=lambda p: p["user_id"])

    async def broadcast_version(self, document_id: int, version: DocumentVersion) -> None:
        await self.sio.emit("version:created", {
            "document_id": document_id,
            "id": version.id,
            "version_number": version.version_number,
            "revision": version.revision,
            "source": VersionSource(version.source).value,
            "label": version.label,
            "created_by_id": version.created_by_id,
        }, room=document_room(document_id))

    # ============================================================
    # Internal helpers
    # ============================================================

    def _require_user(self, sid: str) -> dict:
        user = self.connections.get(sid)
        if user is None:
            raise AuthenticationError("Not authenticated")
        return user

    def _require_joined(self, sid: str, document_id: int) -> DocumentSession:
        session = self.sessions.get(document_id)
        if session is None or not self.presence.is_joined(document_id, sid):
            raise NotJoinedError("Join the document first")
        return session

    def _state_payload(self, session: DocumentSession, access: AccessLevel) -> dict:
        return {
            **session.state_payload(),
            "access": access.value,
            "participants": self.participants(session.document_id),
            "cursors": self.cursors.get_cursors(session.document_id),
        }

    async def _broadcast_operation(
        self, session: DocumentSession, applied: AppliedOperation, user: dict, sender_sid: Optional[str] = None
    ) -> None:
        """Ack the sender (if any) and broadcast to the room, strictly in version order."""
        async with session.broadcast_turn(applied.version):
            if sender_sid is not None:
                await self.sio.emit("edit:ack", {
                    "document_id": session.document_id,
                    "version": applied.version,
                }, room=sender_sid)
            self.cursors.transform(session.document_id, applied.operation)
            await self.sio.emit("document:operation", {
                "document_id": session.document_id,
                "version": applied.version,
                "operation": applied.operation.to_json(),
                "user_id": user["user_id"],
                "username": user["username"],
            }, room=document_room(session.document_id), skip_sid=sender_sid)

    async def _emit_error(self, sid: str, error: Exception, data=None, code: Optional[str] = None) -> None:
        payload = {
            "message": getattr(error, "message", None) or str(error),
            "code": code or getattr(error, "code", "server_error"),
        }
        if isinstance(data, dict) and data.get("document_id") is not None:
            payload["document_id"] = data.get("document_id")
        logger.debug(f"Socket error for {sid}: {payload}")
        await self.sio.emit("error", payload, room=sid)

    async def _emit_store_error(self, sid: str, error: SQLAlchemyError, data=None) -> None:
        realtime_logger.error("Store write failed", error=error, exc_info=True, sid=sid)
        await self._emit_error(sid, AppError("Could not save the document, try again"), data)
