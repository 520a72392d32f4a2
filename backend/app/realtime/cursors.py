"""
Cursor and selection tracking for documents.

Tracks where each participant's caret is with TTL-based expiration, and
shifts stored positions when an edit is applied.
"""
import logging
import time
from typing import Dict, List, Optional
from dataclasses import dataclass, field

from app.realtime.operations import TextOperation

logger = logging.getLogger(__name__)

# Default cursor timeout in seconds
CURSOR_TIMEOUT = 30.0


@dataclass
class CursorState:
    """Caret position (and optional selection end) of one user."""
    user_id: int
    username: str
    position: int
    selection_end: Optional[int] = None
    updated_at: float = field(default_factory=time.time)

    def is_expired(self, timeout: float = CURSOR_TIMEOUT) -> bool:
        return time.time() - self.updated_at > timeout

    def to_dict(self) -> Dict:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "position": self.position,
            "selection_end": self.selection_end,
        }


@dataclass
class CursorTracker:
    """
    In-memory cursor state.

    Structure:
    - document_cursors[document_id] = {user_id: CursorState}
    """
    ttl_seconds: float = CURSOR_TIMEOUT

    # document_id -> {user_id -> CursorState}
    document_cursors: Dict[int, Dict[int, CursorState]] = field(default_factory=dict)

    def update(
        self,
        document_id: int,
        user_id: int,
        username: str,
        position: int,
        selection_end: Optional[int] = None,
    ) -> CursorState:
        self._cleanup_expired(document_id)
        state = CursorState(
            user_id=user_id,
            username=username,
            position=position,
            selection_end=selection_end,
        )
        self.document_cursors.setdefault(document_id, {})[user_id] = state
        return state

    def remove(self, document_id: int, user_id: int) -> bool:
        """
        Forget a user's cursor.

        Returns True if a cursor was stored (should broadcast clear).
        """
        cursors = self.document_cursors.get(document_id, {})
        if user_id not in cursors:
            return False
        del cursors[user_id]
        if not cursors:
            self.document_cursors.pop(document_id, None)
        return True

    def transform(self, document_id: int, operation: TextOperation) -> None:
        """Shift stored cursors through an applied operation."""
        for state in self.document_cursors.get(document_id, {}).values():
            state.position = operation.transform_position(state.position)
            if state.selection_end is not None:
                state.selection_end = operation.transform_position(state.selection_end)

    def get_cursors(self, document_id: int) -> List[Dict]:
        """Current cursors in a document. Expired entries are dropped first."""
        self._cleanup_expired(document_id)
        return [state.to_dict() for state in self.document_cursors.get(document_id, {}).values()]

    def drop_document(self, document_id: int) -> None:
        self.document_cursors.pop(document_id, None)

    def _cleanup_expired(self, document_id: int) -> None:
        cursors = self.document_cursors.get(document_id)
        if not cursors:
            return
        expired = [uid for uid, state in cursors.items() if state.is_expired(self.ttl_seconds)]
        for user_id in expired:
            logger.debug(f"Cursor of user {user_id} expired in document {document_id}")
            self.remove(document_id, user_id)

    def clear(self) -> None:
        """Clear all cursor state (for testing)."""
        self.document_cursors.clear()
