"""
In-memory collaboration sessions.

One DocumentSession per document with connected participants. The session is
the authority for the live content: edits are serialized by its lock,
transformed against the operations applied since the client's base version
and appended to a bounded history.
"""
import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, List, Optional

from app.realtime.operations import OperationError, TextOperation

DEFAULT_HISTORY_LIMIT = 1000


class StaleVersionError(OperationError):
    """The client's base version is unknown to the session; it must resync."""


@dataclass
class AppliedOperation:
    version: int
    operation: TextOperation
    user_id: Optional[int]
    applied_at: float = field(default_factory=time.time)


@dataclass
class DocumentSession:
    document_id: int
    title: str
    content: str
    version: int
    history_limit: int = DEFAULT_HISTORY_LIMIT
    history: Deque[AppliedOperation] = field(default_factory=deque)
    dirty: bool = False
    ops_since_snapshot: int = 0
    last_activity: float = field(default_factory=time.time)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    # Highest version already handed to the transport; broadcasts go out in version order
    broadcast_version: int = field(init=False)
    broadcast_ready: asyncio.Condition = field(default_factory=asyncio.Condition, repr=False)

    def __post_init__(self):
        self.history = deque(self.history, maxlen=self.history_limit)
        self.broadcast_version = self.version

    @property
    def oldest_version(self) -> int:
        """Oldest base version an incoming edit can still be transformed from."""
        return self.version - len(self.history)

    def operations_since(self, version: int) -> List[AppliedOperation]:
        if version > self.version or version < self.oldest_version:
            raise StaleVersionError(
                f"version {version} is outside the session window "
                f"[{self.oldest_version}, {self.version}]"
            )
        skip = version - self.oldest_version
        return list(self.history)[skip:]

    def length_at(self, version: int) -> int:
        """Document length at a past version still covered by the history."""
        concurrent = self.operations_since(version)
        if not concurrent:
            return len(self.content)
        return concurrent[0].operation.base_length

    def _commit(self, operation: TextOperation, user_id: Optional[int]) -> AppliedOperation:
        self.content = operation.apply(self.content)
        self.version += 1
        applied = AppliedOperation(version=self.version, operation=operation, user_id=user_id)
        self.history.append(applied)
        self.dirty = True
        self.ops_since_snapshot += 1
        self.last_activity = applied.applied_at
        return applied

    async def apply(self, base_version: int, operation: TextOperation, user_id: Optional[int]) -> AppliedOperation:
        async with self.lock:
            for concurrent in self.operations_since(base_version):
                operation, _ = TextOperation.transform(operation, concurrent.operation)
            return self._commit(operation, user_id)

    async def apply_splice(
        self, base_version: int, position: int, delete_count: int, text: str, user_id: Optional[int]
    ) -> AppliedOperation:
        async with self.lock:
            length = self.length_at(base_version)
            operation = TextOperation.from_splice(length, position, delete_count, text)
            for concurrent in self.operations_since(base_version):
                operation, _ = TextOperation.transform(operation, concurrent.operation)
            return self._commit(operation, user_id)

    async def replace(self, content: str, user_id: Optional[int]) -> Optional[AppliedOperation]:
        """Replace the whole content at the current version. Returns None when nothing changed."""
        async with self.lock:
            if content == self.content:
                return None
            return self._commit(TextOperation.replace_all(self.content, content), user_id)

    async def snapshot(self) -> Dict[str, object]:
        """Consistent copy of the persisted fields."""
        async with self.lock:
            return {
                "document_id": self.document_id,
                "title": self.title,
                "content": self.content,
                "version": self.version,
            }

    @asynccontextmanager
    async def broadcast_turn(self, version: int):
        """
        Wait until every earlier version has been broadcast, then hold the turn
        while the caller emits `version`.
        """
        async with self.broadcast_ready:
            await self.broadcast_ready.wait_for(lambda: self.broadcast_version >= version - 1)
            try:
                yield
            finally:
                self.broadcast_version = max(self.broadcast_version, version)
                self.broadcast_ready.notify_all()

    def state_payload(self) -> Dict[str, object]:
        return {
            "document_id": self.document_id,
            "title": self.title,
            "content": self.content,
            "version": self.version,
        }


SessionLoader = Callable[[int], Awaitable[DocumentSession]]


class SessionRegistry:
    """Live sessions keyed by document id."""

    def __init__(self):
        self._sessions: Dict[int, DocumentSession] = {}
        self._loading: Dict[int, asyncio.Future] = {}

    def __contains__(self, document_id: int) -> bool:
        return document_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, document_id: int) -> Optional[DocumentSession]:
        return self._sessions.get(document_id)

    def all(self) -> List[DocumentSession]:
        return list(self._sessions.values())

    async def get_or_load(self, document_id: int, loader: SessionLoader) -> DocumentSession:
        session = self._sessions.get(document_id)
        if session is not None:
            return session

        # Concurrent joiners wait on the same load
        pending = self._loading.get(document_id)
        if pending is not None:
            return await pending

        future = asyncio.get_running_loop().create_future()
        self._loading[document_id] = future
        try:
            session = await loader(document_id)
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so a failure nobody waited on is not reported by the loop
            future.exception()
            raise
        except BaseException:
            future.cancel()
            raise
        else:
            self._sessions[document_id] = session
            future.set_result(session)
            return session
        finally:
            self._loading.pop(document_id, None)

    def evict(self, document_id: int) -> Optional[DocumentSession]:
        return self._sessions.pop(document_id, None)

    def clear(self) -> None:
        self._sessions.clear()
        self._loading.clear()
