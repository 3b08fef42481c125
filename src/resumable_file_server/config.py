"""Server configuration.

All settings live on one ``ServerConfig`` object that is built once (usually
from environment variables) and handed to every component.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping

GB = 1024 * 1024 * 1024
MB = 1024 * 1024

DEFAULT_PORT = 3000
DEFAULT_MAX_FILE_SIZE = 10 * GB
DEFAULT_MIN_FREE_SPACE = 5 * GB
DEFAULT_CHUNK_SIZE = 5 * MB

# Per-connection idle bound (1 hour)
DEFAULT_UPLOAD_TIMEOUT = 60 * 60

# Incomplete uploads expire after a day without activity
DEFAULT_UPLOAD_MAX_AGE = 24 * 60 * 60

# Expiry sweep interval (10 minutes)
DEFAULT_SWEEP_INTERVAL = 10 * 60

DEFAULT_FINALIZE_GRACE = 0.5

# 50 uploads created per client every 15 minutes
DEFAULT_RATE_LIMIT_MAX = 50
DEFAULT_RATE_LIMIT_WINDOW = 15 * 60

DEFAULT_RETENTION_DAYS = 30

_TRUE = {"1", "true", "yes", "on"}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE


def _parse_extensions(value: str | None) -> tuple[str, ...] | None:
    """Parse ALLOWED_EXTENSIONS. ``None``, empty or ``*`` means unrestricted."""
    if value is None or value.strip() in ("", "*"):
        return None
    extensions = []
    for item in value.split(","):
        item = item.strip().lower()
        if not item:
            continue
        if not item.startswith("."):
            item = f".{item}"
        extensions.append(item)
    return tuple(extensions) or None


@dataclass
class ServerConfig:
    """Settings for the upload server.

    Args:
        host: Interface to bind.
        port: Port to listen on. Pass 0 to let the OS pick one (tests).
        upload_dir: Storage root for partial and finalized files.
        max_file_size: Largest accepted ``Upload-Length`` in bytes.
        min_free_space: Creation is refused below this many free bytes.
        chunk_size: Suggested client segment size, advertised only.
        allowed_extensions: Lower-case extensions (with dot) accepted for the
            original filename, or None for no restriction.
        cors_origin: Value of ``Access-Control-Allow-Origin``.
        upload_timeout: Idle socket timeout per connection, seconds.
        upload_max_age: Seconds of inactivity before an incomplete upload
            expires, 0 disables expiry.
        sweep_interval: Seconds between expiry sweeps, 0 disables them.
        finalize_grace: Longest wait for the response-sent handoff, seconds.
        rate_limit_max: Creations allowed per client within the window.
        rate_limit_window: Sliding window length, seconds.
        trust_proxy: Use the last ``X-Forwarded-For`` hop (the one
            appended by the single trusted proxy) as client key.
        retention_days: Age after which the offline cleanup deletes files.
        ngrok: Expose the server through an ngrok tunnel.
    """

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    upload_dir: str = field(default_factory=lambda: os.path.abspath("uploads"))
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    min_free_space: int = DEFAULT_MIN_FREE_SPACE
    chunk_size: int = DEFAULT_CHUNK_SIZE
    allowed_extensions: tuple[str, ...] | None = None
    cors_origin: str = "*"
    upload_timeout: float = DEFAULT_UPLOAD_TIMEOUT
    upload_max_age: float = DEFAULT_UPLOAD_MAX_AGE
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    finalize_grace: float = DEFAULT_FINALIZE_GRACE
    rate_limit_max: int = DEFAULT_RATE_LIMIT_MAX
    rate_limit_window: float = DEFAULT_RATE_LIMIT_WINDOW
    trust_proxy: bool = True
    retention_days: float = DEFAULT_RETENTION_DAYS
    ngrok: bool = False

    def __post_init__(self) -> None:
        if self.max_file_size <= 0:
            raise ValueError("max_file_size must be positive")
        if self.min_free_space < 0:
            raise ValueError("min_free_space must not be negative")
        if self.rate_limit_max <= 0 or self.rate_limit_window <= 0:
            raise ValueError("rate limit settings must be positive")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServerConfig":
        """Build a config from environment variables.

        Unset variables keep their defaults. Malformed numbers raise ValueError.
        """
        env = os.environ if environ is None else environ
        kwargs: dict = {}

        if "HOST" in env:
            kwargs["host"] = env["HOST"]
        if "UPLOAD_DIR" in env:
            kwargs["upload_dir"] = os.path.abspath(env["UPLOAD_DIR"])
        if "CORS_ORIGIN" in env:
            kwargs["cors_origin"] = env["CORS_ORIGIN"]

        int_keys = {
            "PORT": "port",
            "MAX_FILE_SIZE": "max_file_size",
            "MIN_FREE_SPACE": "min_free_space",
            "CHUNK_SIZE": "chunk_size",
            "RATE_LIMIT_MAX": "rate_limit_max",
        }
        for key, name in int_keys.items():
            if env.get(key):
                kwargs[name] = int(env[key])

        float_keys = {
            "UPLOAD_TIMEOUT": "upload_timeout",
            "UPLOAD_MAX_AGE": "upload_max_age",
            "SWEEP_INTERVAL": "sweep_interval",
            "FINALIZE_GRACE": "finalize_grace",
            "RATE_LIMIT_WINDOW": "rate_limit_window",
            "RETENTION_DAYS": "retention_days",
        }
        for key, name in float_keys.items():
            if env.get(key):
                kwargs[name] = float(env[key])

        if "TRUST_PROXY" in env:
            kwargs["trust_proxy"] = _parse_bool(env["TRUST_PROXY"])
        if "NGROK_ENABLED" in env:
            kwargs["ngrok"] = _parse_bool(env["NGROK_ENABLED"])

        kwargs["allowed_extensions"] = _parse_extensions(env.get("ALLOWED_EXTENSIONS"))

        return cls(**kwargs)

    def is_extension_allowed(self, filename: str | None) -> bool:
        if self.allowed_extensions is None:
            return True
        ext = os.path.splitext(filename or "")[1].lower()
        return ext in self.allowed_extensions
