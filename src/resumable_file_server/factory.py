"""Factory function wiring the upload server components."""

import logging

from .config import ServerConfig
from .limits import CreationRateLimiter
from .manager import UploadManager
from .server import UploadHTTPServer
from .storage import LocalUploadStore

logger = logging.getLogger(__name__)


def create_server(config: ServerConfig | None = None) -> UploadHTTPServer:
    """Build an upload server from a configuration.

    Each call builds an independent set of components; nothing is cached at
    module level.

    The storage root is prepared and uploads left behind by a previous
    process are recovered before the server is returned. The server is not
    started; call ``ensure_running()`` on it.

    Args:
        config: Server configuration. Read from the environment when omitted.

    Returns:
        The UploadHTTPServer instance.

    Raises:
        StorageIO: If the storage root cannot be created or written.
    """
    if config is None:
        config = ServerConfig.from_env()

    logger.info(
        "Configuration loaded: "
        f"allowed extensions={', '.join(config.allowed_extensions or ()) or 'all'}, "
        f"max file size={config.max_file_size / 1024 / 1024 / 1024:.2f}GB, "
        f"upload dir={config.upload_dir}"
    )

    store = LocalUploadStore(config.upload_dir)
    store.ensure_ready()

    manager = UploadManager(config, store)
    manager.recover()

    limiter = CreationRateLimiter(config.rate_limit_max, config.rate_limit_window)
    return UploadHTTPServer(config, manager, limiter)
