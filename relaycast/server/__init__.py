"""
Broadcast file server.
"""

from .http_server import HttpFileServer, create_app

__all__ = [
    "HttpFileServer",
    "create_app",
]
