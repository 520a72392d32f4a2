"""
Real-time presence tracking for document participants.

Tracks which users are connected to each document, supporting multiple
browser tabs/devices per user (multiple socket IDs).
"""
import logging
from typing import Dict, Set, List, Optional
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class DocumentPresence:
    """
    In-memory presence tracking.

    Structure:
    - document_presence[document_id][user_id] = set(socket_ids)
    - socket_documents[socket_id] = set(document_ids) (for cleanup on disconnect)
    - socket_user_map[socket_id] = user_id
    """
    # document_id -> {user_id -> set(socket_ids)}
    document_presence: Dict[int, Dict[int, Set[str]]] = field(default_factory=dict)

    # socket_id -> set of document_ids the socket joined
    socket_documents: Dict[str, Set[int]] = field(default_factory=dict)

    # socket_id -> user_id
    socket_user_map: Dict[str, int] = field(default_factory=dict)

    def join(self, document_id: int, user_id: int, socket_id: str) -> bool:
        """
        Register a socket in a document.

        Returns True if this is the user's first socket in the document.
        Returns False if the user was already present (additional tab).
        """
        self.socket_user_map[socket_id] = user_id
        self.socket_documents.setdefault(socket_id, set()).add(document_id)

        participants = self.document_presence.setdefault(document_id, {})
        was_absent = len(participants.get(user_id, set())) == 0
        participants.setdefault(user_id, set()).add(socket_id)

        if was_absent:
            logger.info(f"User {user_id} joined document {document_id} (socket: {socket_id})")
        else:
            logger.debug(f"User {user_id} added socket {socket_id} to document {document_id}")

        return was_absent

    def leave(self, document_id: int, socket_id: str) -> Optional[Dict]:
        """
        Remove a socket from a document.

        Returns {document_id, user_id, went_offline} if the socket was in the document.
        Returns None otherwise.
        """
        user_id = self.socket_user_map.get(socket_id)
        documents = self.socket_documents.get(socket_id, set())
        if user_id is None or document_id not in documents:
            return None

        documents.discard(document_id)
        if not documents:
            self.socket_documents.pop(socket_id, None)
            self.socket_user_map.pop(socket_id, None)

        participants = self.document_presence.get(document_id, {})
        sockets = participants.get(user_id, set())
        sockets.discard(socket_id)

        went_offline = len(sockets) == 0
        if went_offline:
            participants.pop(user_id, None)
            if not participants:
                self.document_presence.pop(document_id, None)
            logger.info(f"User {user_id} left document {document_id}")

        return {
            "document_id": document_id,
            "user_id": user_id,
            "went_offline": went_offline,
        }

    def disconnect(self, socket_id: str) -> List[Dict]:
        """Remove a socket from every document it joined."""
        results = []
        for document_id in sorted(self.socket_documents.get(socket_id, set())):
            result = self.leave(document_id, socket_id)
            if result:
                results.append(result)
        self.socket_user_map.pop(socket_id, None)
        return results

    def participants(self, document_id: int) -> List[int]:
        """User IDs present in a document."""
        participants = self.document_presence.get(document_id, {})
        return [uid for uid, sockets in participants.items() if sockets]

    def sockets_for(self, document_id: int) -> List[str]:
        participants = self.document_presence.get(document_id, {})
        return [sid for sockets in participants.values() for sid in sockets]

    def documents_for(self, socket_id: str) -> Set[int]:
        return set(self.socket_documents.get(socket_id, set()))

    def is_joined(self, document_id: int, socket_id: str) -> bool:
        return document_id in self.socket_documents.get(socket_id, set())

    def is_empty(self, document_id: int) -> bool:
        return not self.participants(document_id)

    def drop_document(self, document_id: int) -> List[str]:
        """Forget a document entirely. Returns the socket IDs that were in it."""
        participants = self.document_presence.pop(document_id, {})
        sockets = [sid for socks in participants.values() for sid in socks]
        for sid in sockets:
            documents = self.socket_documents.get(sid)
            if documents is None:
                continue
            documents.discard(document_id)
            if not documents:
                self.socket_documents.pop(sid, None)
                self.socket_user_map.pop(sid, None)
        return sockets

    def clear(self):
        """Clear all presence data (for testing)."""
        self.document_presence.clear()
        self.socket_documents.clear()
        self.socket_user_map.clear()
