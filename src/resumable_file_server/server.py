"""UploadHTTPServer - tus resumable upload endpoint.

Provides:
- POST /files to create an upload, PATCH /files/{id} to append a chunk,
  HEAD /files/{id} to query the offset, DELETE /files/{id} to abort
- GET /health with disk and memory figures
- Per-client rate limit on upload creation
- Periodic expiry of idle incomplete uploads
- Optional ngrok tunnel for public URL access
"""

import http.server
import json
import logging
import os
import threading
import time
from typing import BinaryIO, Optional
from urllib.parse import urlsplit

from .config import ServerConfig
from .errors import (
    BadRequest,
    Gone,
    IncompleteChunk,
    InvalidSize,
    NotFound,
    OffsetMismatch,
    RateLimited,
    UploadError,
)
from .health import collect_health
from .limits import CreationRateLimiter
from .manager import UploadManager
from .models import Upload, UploadStatus
from .storage import is_upload_id
from .tus import (
    EXPOSED_HEADERS,
    METHODS,
    OFFSET_CONTENT_TYPE,
    REQUEST_HEADERS,
    TUS_EXTENSIONS,
    TUS_VERSION,
    encode_metadata,
    http_date,
    parse_metadata,
    parse_offset,
)

logger = logging.getLogger(__name__)

FILES_PATH = "/files"

# Methods a POST may be turned into with X-HTTP-Method-Override
OVERRIDABLE_METHODS = {"PATCH", "DELETE", "HEAD"}

# Unread request bodies up to this size are drained before an error response
MAX_DRAIN_SIZE = 1024 * 1024


class RequestBody:
    """Reader over a request body of known length that tracks unread bytes."""

    def __init__(self, rfile: BinaryIO, length: int):
        self._rfile = rfile
        self.remaining = length

    def read(self, size: int = -1) -> bytes:
        if size < 0 or size > self.remaining:
            size = self.remaining
        if size == 0:
            return b""
        data = self._rfile.read(size)
        self.remaining -= len(data)
        return data


class UploadHTTPServer:
    """HTTP server speaking the tus resumable upload protocol.

    Args:
        config: Server configuration.
        manager: Upload state machine backing the endpoints.
        limiter: Creation-rate limiter. Built from the config when omitted.
    """

    def __init__(
        self,
        config: ServerConfig,
        manager: UploadManager,
        limiter: CreationRateLimiter | None = None,
    ):
        self._config = config
        self._manager = manager
        self._limiter = limiter or CreationRateLimiter(
            config.rate_limit_max, config.rate_limit_window
        )
        self._server: Optional[http.server.ThreadingHTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._sweep_timer: Optional[threading.Timer] = None
        self._port: Optional[int] = None
        self._public_base_url: Optional[str] = None
        self._ngrok_tunnel = None
        self._lock = threading.Lock()
        self._is_running = False
        self._started_at = time.time()

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def port(self) -> Optional[int]:
        return self._port

    @property
    def public_base_url(self) -> Optional[str]:
        """Get the public base URL (localhost or ngrok)."""
        return self._public_base_url

    @property
    def manager(self) -> UploadManager:
        return self._manager

    def ensure_running(self) -> None:
        """Start the HTTP server if it is not running yet."""
        with self._lock:
            if self._is_running:
                return

            handler_class = self._make_handler()
            self._server = http.server.ThreadingHTTPServer(
                (self._config.host, self._config.port), handler_class
            )
            self._port = self._server.server_address[1]
            host = self._config.host
            if host in ("", "0.0.0.0", "127.0.0.1", "localhost"):
                host = "localhost"
            self._public_base_url = f"http://{host}:{self._port}"

            if self._config.ngrok:
                try:
                    self._start_ngrok()
                except Exception:
                    self._server.server_close()
                    self._server = None
                    raise

            self._server_thread = threading.Thread(
                target=self._server.serve_forever, name="upload-http", daemon=True
            )
            self._server_thread.start()

            self._schedule_sweep()
            self._started_at = time.time()
            self._is_running = True
            logger.info(f"Server running at {self._public_base_url}")

    def wait(self) -> None:
        """Block until the server thread exits."""
        thread = self._server_thread
        if thread is not None:
            while thread.is_alive():
                thread.join(timeout=1.0)

    def _make_handler(self) -> type[http.server.BaseHTTPRequestHandler]:
        # Create handler class with reference to this server
        server_ref = self
        config = self._config
        manager = self._manager

        class RequestHandler(http.server.BaseHTTPRequestHandler):
            # Idle socket timeout per connection
            timeout = config.upload_timeout or None
            server_version = "resumable-file-server"

            def log_message(self, format: str, *args: object) -> None:
                logger.debug(f"{self.address_string()} - {format % args}")

            def do_OPTIONS(self) -> None:
                """Handle CORS preflight and tus capability discovery."""
                self._send(
                    204,
                    {
                        "Tus-Version": TUS_VERSION,
                        "Tus-Extension": TUS_EXTENSIONS,
                        "Tus-Max-Size": config.max_file_size,
                        "X-Upload-Chunk-Size": config.chunk_size,
                        "Access-Control-Allow-Methods": ", ".join(METHODS),
                        "Access-Control-Allow-Headers": ", ".join(REQUEST_HEADERS),
                        "Access-Control-Max-Age": 86400,
                    },
                )

            def do_GET(self) -> None:
                self._dispatch("GET")

            def do_POST(self) -> None:
                override = self.headers.get("X-HTTP-Method-Override")
                if override:
                    self._dispatch(override.strip().upper(), overridden=True)
                else:
                    self._dispatch("POST")

            def do_PATCH(self) -> None:
                self._dispatch("PATCH")

            def do_HEAD(self) -> None:
                self._dispatch("HEAD")

            def do_DELETE(self) -> None:
                self._dispatch("DELETE")

            def _dispatch(self, method: str, overridden: bool = False) -> None:
                self.method = method
                content_length = self.headers.get("Content-Length", "0").strip()
                if not content_length.isdigit():
                    content_length = "0"
                    self.close_connection = True
                self.body = RequestBody(self.rfile, int(content_length))
                try:
                    if overridden and method not in OVERRIDABLE_METHODS:
                        raise BadRequest(f"Cannot override POST with {method}")

                    version = self.headers.get("Tus-Resumable")
                    if version is not None and version.strip() != TUS_VERSION:
                        raise BadRequest(
                            f"Unsupported Tus-Resumable version: {version}",
                            status_code=412,
                        )

                    path = urlsplit(self.path).path.rstrip("/") or "/"
                    if path == "/health" and method == "GET":
                        self._handle_health()
                    elif path == FILES_PATH and method == "POST":
                        self._handle_create()
                    elif path.startswith(FILES_PATH + "/"):
                        upload_id = path[len(FILES_PATH) + 1:]
                        if not is_upload_id(upload_id):
                            raise NotFound(f"Upload not found: {upload_id}")
                        if method == "PATCH":
                            self._handle_append(upload_id)
                        elif method == "HEAD":
                            self._handle_status(upload_id)
                        elif method == "DELETE":
                            self._handle_delete(upload_id)
                        else:
                            self._send_json(
                                405,
                                {"error": f"Method {method} not allowed"},
                                {"Allow": "PATCH, HEAD, DELETE, OPTIONS"},
                            )
                    elif path == FILES_PATH:
                        self._send_json(
                            405,
                            {"error": f"Method {method} not allowed"},
                            {"Allow": "POST, OPTIONS"},
                        )
                    else:
                        self._send_json(404, {"error": "Not Found"})
                except IncompleteChunk as e:
                    logger.warning(f"Chunk interrupted: {e.message}")
                    self.close_connection = True
                    self._send_error(e)
                except UploadError as e:
                    self._drain_body()
                    self._send_error(e)
                except Exception as e:
                    logger.error(f"Upload handler error: {e}", exc_info=True)
                    self.close_connection = True
                    self._send_json(500, {"error": "Upload error", "message": str(e)})

            def _handle_create(self) -> None:
                server_ref._limiter.hit(self._client_key())

                try:
                    size = parse_offset(self.headers.get("Upload-Length"), "Upload-Length")
                except BadRequest as e:
                    raise InvalidSize(e.message) from None
                metadata = parse_metadata(self.headers.get("Upload-Metadata"))

                upload = manager.create(size, metadata)
                location = f"{self._base_url()}{FILES_PATH}/{upload.id}"
                self._send_json(
                    201,
                    {"id": upload.id, "location": location},
                    {"Location": location, **self._expiry_header(upload)},
                )

            def _handle_append(self, upload_id: str) -> None:
                content_type = self.headers.get("Content-Type", "")
                if content_type.split(";")[0].strip().lower() != OFFSET_CONTENT_TYPE:
                    raise BadRequest(
                        f"Content-Type must be {OFFSET_CONTENT_TYPE}", status_code=415
                    )
                offset = parse_offset(self.headers.get("Upload-Offset"))
                if self.headers.get("Content-Length") is None:
                    raise BadRequest("Content-Length header is required", status_code=411)
                length = parse_offset(self.headers.get("Content-Length"), "Content-Length")

                new_offset = manager.apply_chunk(upload_id, offset, self.body, length)
                upload = manager.status(upload_id)
                self._send(
                    204,
                    {"Upload-Offset": new_offset, **self._expiry_header(upload)},
                )
                if upload.status == UploadStatus.COMPLETED and new_offset == upload.size:
                    manager.response_sent(upload_id)

            def _handle_status(self, upload_id: str) -> None:
                with manager.reading(upload_id):
                    upload = manager.status(upload_id)
                    if upload.status in (UploadStatus.ABORTED, UploadStatus.EXPIRED):
                        raise Gone(f"Upload {upload_id} was {upload.status.value}")

                    headers = {
                        "Upload-Offset": upload.offset,
                        "Upload-Length": upload.size,
                        "Upload-Status": upload.status.value,
                        "Cache-Control": "no-store",
                        **self._expiry_header(upload),
                    }
                    if upload.metadata:
                        headers["Upload-Metadata"] = encode_metadata(upload.metadata)
                    self._send(200, headers)

            def _handle_delete(self, upload_id: str) -> None:
                manager.abort(upload_id)
                self._send(204)

            def _handle_health(self) -> None:
                status, body = collect_health(
                    manager.store,
                    config.min_free_space,
                    server_ref._started_at,
                    config.chunk_size,
                )
                self._send_json(status, body)

            def _client_key(self) -> str:
                if config.trust_proxy:
                    # The trusted proxy appends the address it saw last
                    forwarded = self.headers.get("X-Forwarded-For", "")
                    hop = forwarded.split(",")[-1].strip()
                    if hop:
                        return hop
                return self.client_address[0]

            def _base_url(self) -> str:
                host = self.headers.get("Host")
                if not host:
                    return server_ref._public_base_url or ""
                proto = "http"
                if config.trust_proxy:
                    proto = self.headers.get("X-Forwarded-Proto", proto).split(",")[0].strip()
                return f"{proto}://{host}"

            def _expiry_header(self, upload: Upload) -> dict:
                if upload.status.is_terminal or not config.upload_max_age:
                    return {}
                expires = upload.last_activity_at + config.upload_max_age
                return {"Upload-Expires": http_date(expires)}

            def _drain_body(self) -> None:
                # Closing with unread input can reset the connection before
                # the client reads the error response
                if self.body.remaining > MAX_DRAIN_SIZE:
                    self.close_connection = True
                    return
                try:
                    while self.body.remaining and self.body.read(64 * 1024):
                        pass
                except OSError:
                    self.close_connection = True

            def _send_error(self, error: UploadError) -> None:
                headers: dict = {}
                if isinstance(error, OffsetMismatch):
                    headers["Upload-Offset"] = error.offset
                elif isinstance(error, RateLimited):
                    headers["Retry-After"] = error.retry_after
                if error.status_code == 412:
                    headers["Tus-Version"] = TUS_VERSION
                try:
                    self._send_json(error.status_code, error.to_dict(), headers)
                except OSError:
                    logger.debug("Client went away before the error response")

            def _send_json(self, status: int, payload: dict, headers: dict | None = None) -> None:
                body = json.dumps(payload).encode()
                self._send(
                    status,
                    {**(headers or {}), "Content-Type": "application/json"},
                    body,
                )

            def _send(self, status: int, headers: dict | None = None, body: bytes = b"") -> None:
                self.send_response(status)
                self.send_header("Tus-Resumable", TUS_VERSION)
                self.send_header("Access-Control-Allow-Origin", config.cors_origin)
                self.send_header("Access-Control-Expose-Headers", ", ".join(EXPOSED_HEADERS))
                for name, value in (headers or {}).items():
                    self.send_header(name, str(value))
                if status != 204:
                    self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                if body and self.command != "HEAD" and getattr(self, "method", None) != "HEAD":
                    self.wfile.write(body)
                self.wfile.flush()

        return RequestHandler

    def _start_ngrok(self) -> None:
        """Start ngrok tunnel."""
        auth_token = os.environ.get("NGROK_AUTHTOKEN")
        if not auth_token:
            raise ValueError(
                "NGROK_AUTHTOKEN environment variable is required when ngrok is enabled. "
                "Get your auth token from https://dashboard.ngrok.com/get-started/your-authtoken"
            )

        from pyngrok import conf, ngrok
        from pyngrok.exception import PyngrokNgrokError

        conf.get_default().auth_token = auth_token

        try:
            self._ngrok_tunnel = ngrok.connect(self._port, "http")
        except PyngrokNgrokError as e:
            # ERR_NGROK_334: endpoint already online (stale tunnel from a crash)
            if "ERR_NGROK_334" not in str(e):
                raise
            logger.warning("Stale ngrok tunnel detected, killing ngrok and retrying")
            ngrok.kill()
            self._ngrok_tunnel = ngrok.connect(self._port, "http")

        self._public_base_url = self._ngrok_tunnel.public_url

    def _schedule_sweep(self) -> None:
        """Schedule periodic expiry of idle uploads."""
        interval = self._config.sweep_interval
        if not interval:
            return

        def sweep() -> None:
            try:
                expired = self._manager.expire_stale()
                self._limiter.prune()
                if expired:
                    logger.info(f"Expired {len(expired)} idle uploads")
            except Exception:
                logger.exception("Expiry sweep failed")
            if self._is_running:
                self._sweep_timer = threading.Timer(interval, sweep)
                self._sweep_timer.daemon = True
                self._sweep_timer.start()

        self._sweep_timer = threading.Timer(interval, sweep)
        self._sweep_timer.daemon = True
        self._sweep_timer.start()

    def stop(self) -> None:
        """Stop the server and wait for pending finalizations."""
        with self._lock:
            if not self._is_running:
                return
            self._is_running = False

            if self._sweep_timer:
                self._sweep_timer.cancel()
                self._sweep_timer = None

            if self._ngrok_tunnel:
                from pyngrok import ngrok

                try:
                    ngrok.disconnect(self._ngrok_tunnel.public_url)
                    ngrok.kill()
                except Exception as e:
                    logger.warning(f"Failed to close ngrok tunnel: {e}")
                self._ngrok_tunnel = None

            if self._server:
                self._server.shutdown()
                self._server.server_close()
                self._server = None

            self._manager.finalizer.join(timeout=5.0)
            self._public_base_url = None
            self._port = None
        logger.info("Server stopped")
