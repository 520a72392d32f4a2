"""
Socket.IO authentication module.
Validates JWT tokens for socket connections.
"""
from typing import Optional, Tuple
from urllib.parse import parse_qs
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.core.security import decode_token_sync
from app.db.database import async_session
from app.db.models import User
import logging

logger = logging.getLogger(__name__)


def extract_token(auth: dict = None, environ: dict = None) -> Optional[str]:
    """
    Extract a bearer token from, in order:
    1. auth.token (sent in the Socket.IO auth object)
    2. Authorization header
    3. ?token= query parameter
    """
    if auth and isinstance(auth, dict) and auth.get("token"):
        return auth["token"]

    if not environ:
        return None

    header = environ.get("HTTP_AUTHORIZATION", "")
    if header.startswith("Bearer "):
        return header[7:]

    query = parse_qs(environ.get("QUERY_STRING", ""))
    tokens = query.get("token")
    if tokens:
        return tokens[0]
    return None


async def authenticate_socket(
    auth: dict = None, environ: dict = None, session_factory=None
) -> Tuple[bool, Optional[dict]]:
    """
    Authenticate a Socket.IO connection using JWT.

    Returns:
        Tuple of (is_authenticated, user_data)
        user_data contains: user_id, username, display_name if authenticated
    """
    token = extract_token(auth, environ)
    if not token:
        logger.warning("Socket connection rejected: No token provided")
        return False, None

    payload = decode_token_sync(token)
    if payload is None:
        logger.warning("Socket connection rejected: Invalid JWT")
        return False, None

    user_id = payload.get("sub")
    if not user_id:
        logger.warning("Socket connection rejected: No user_id in token")
        return False, None

    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        logger.warning(f"Socket connection rejected: Malformed subject {user_id!r}")
        return False, None

    session_factory = session_factory or async_session
    try:
        async with session_factory() as db:
            result = await db.execute(select(User).where(User.id == user_id))
            user = result.scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error(f"Socket authentication error: {e}")
        return False, None

    if not user:
        logger.warning(f"Socket connection rejected: User {user_id} not found")
        return False, None

    if not user.is_active:
        logger.warning(f"Socket connection rejected: User {user_id} is inactive")
        return False, None

    user_data = {
        "user_id": user.id,
        "username": user.username,
        "display_name": user.display_name,
    }
    logger.info(f"Socket authenticated for user {user.username} (ID: {user_id})")
    return True, user_data
