"""Resumable file upload server.

Implements the tus 1.0.0 protocol on a local storage root.
"""

from .protocol import UploadStore
from .config import ServerConfig
from .models import Upload, UploadStatus
from .storage import LocalUploadStore, build_final_name, sanitize_filename
from .manager import UploadManager
from .finalizer import Finalizer
from .limits import CreationRateLimiter
from .server import UploadHTTPServer
from .factory import create_server

__all__ = [
    "UploadStore",
    "ServerConfig",
    "Upload",
    "UploadStatus",
    "LocalUploadStore",
    "build_final_name",
    "sanitize_filename",
    "UploadManager",
    "Finalizer",
    "CreationRateLimiter",
    "UploadHTTPServer",
    "create_server",
]
