"""
Real-time collaboration over Socket.IO.
"""
from app.realtime.socket import CollaborationHub, create_socket_server

__all__ = ["CollaborationHub", "create_socket_server"]
