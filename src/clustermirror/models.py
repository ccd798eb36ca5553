"""
Data and configuration models for the mirror node.

Manifest records, stored objects and sync results are plain pydantic
models. Configuration mirrors the YAML file section by section.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from . import DEFAULT_SERVER_URL

DEFAULT_MAX_CONCURRENCY = 64
DEFAULT_START_INTERVAL_MS = 100


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


class ContentEntry(BaseModel):
    """One manifest record. ``hash`` is the identity key."""

    path: str
    hash: str
    size: int = 0
    mtime: int = 0


class StoredObject(BaseModel):
    """An object found in a content store by enumeration."""

    hash: str
    size: int = 0
    mtime: int = 0
    path: str = ""


class SyncResult(BaseModel):
    """Aggregate outcome of one reconciliation pass."""

    total: int = 0
    missing: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0


@dataclass(frozen=True)
class InlineStream:
    """Object bytes are served directly from this stream."""

    stream: BinaryIO
    size: Optional[int] = None


@dataclass(frozen=True)
class RedirectTo:
    """Object bytes live elsewhere; the client should fetch ``url``."""

    url: str


Retrieval = Union[InlineStream, RedirectTo]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class StorageType(str, Enum):
    """Supported content store backends."""

    FILE = "file"
    WEBDAV = "webdav"
    ALIST = "alist"


class ClusterConfig(BaseModel):
    """Cluster identity and authority endpoint."""

    id: str = ""
    secret: str = ""
    ip: str = ""
    port: int = 4000
    public_port: int = 0
    server_url: str = DEFAULT_SERVER_URL

    @model_validator(mode="after")
    def _fill_defaults(self) -> "ClusterConfig":
        if not self.public_port:
            self.public_port = self.port
        if not self.server_url:
            self.server_url = DEFAULT_SERVER_URL
        self.server_url = self.server_url.rstrip("/")
        return self


class WebDAVConfig(BaseModel):
    """Remote WebDAV backend settings."""

    endpoint: str = ""
    username: str = ""
    password: str = ""
    path: str = "/"
    lock_cooldown_seconds: float = 60.0


class AListConfig(BaseModel):
    """Remote AList file-API backend settings."""

    endpoint: str = "http://localhost:5244"
    username: str = "admin"
    password: str = ""
    path: str = "/data"
    token: str = ""


class StorageConfig(BaseModel):
    """Which backend to use and its settings."""

    type: StorageType = StorageType.FILE
    path: Path = Path("./cache")
    webdav: WebDAVConfig = Field(default_factory=WebDAVConfig)
    alist: AListConfig = Field(default_factory=AListConfig)


class SyncTuning(BaseModel):
    """Download pool and retry tunables."""

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    start_interval_ms: int = DEFAULT_START_INTERVAL_MS
    file_attempts: int = 3
    pass_attempts: int = 5
    pass_backoff_seconds: float = 5.0
    request_timeout_seconds: float = 30.0
    interval_seconds: int = 0
    gc_after_sync: bool = False

    @field_validator("max_concurrency")
    @classmethod
    def _default_concurrency(cls, v: int) -> int:
        return v if v > 0 else DEFAULT_MAX_CONCURRENCY

    @field_validator("start_interval_ms")
    @classmethod
    def _default_interval(cls, v: int) -> int:
        return v if v >= 0 else DEFAULT_START_INTERVAL_MS


class ServerConfig(BaseModel):
    """Download server settings."""

    host: str = "0.0.0.0"
    access_log: bool = True
    shutdown_grace_seconds: float = 5.0


class LogConfig(BaseModel):
    """Logging settings."""

    level: str = "info"


class NodeConfig(BaseModel):
    """Complete node configuration, one field per YAML section."""

    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncTuning = Field(default_factory=SyncTuning)
    server: ServerConfig = Field(default_factory=ServerConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    fault_threshold: int = 5
