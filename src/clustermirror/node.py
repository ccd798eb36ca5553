"""
Mirror node — the long-running cluster member.

Wires the store, broker, reconciler and download server together from
the configuration, then runs the bootstrap sequence:

    store init/check -> broker connect -> initial sync -> serve

An optional worker thread re-runs the sync on an interval. SIGTERM and
SIGINT set the stop event; stop() gives in-flight downloads a grace
period and cancels the token refresh.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import requests

from . import __version__
from .broker import CredentialBroker
from .config import node_home
from .errors import MirrorError, StorageError
from .faults import FaultGovernor
from .models import NodeConfig, SyncResult
from .reconcile import Reconciler
from .server import MirrorServer
from .storage import ContentStore, create_store

logger = logging.getLogger("clustermirror.node")

PID_FILE = "node.pid"
LOG_DIR = "logs"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class NodeState:
    """Thread-safe record of node activity, served at ``/status``."""

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.last_sync: Optional[datetime] = None
        self.last_result: Optional[SyncResult] = None
        self.syncs_completed: int = 0
        self.errors: list[str] = []
        self.running: bool = False

    def snapshot(self) -> dict:
        """Return a JSON-serializable copy of the current state."""
        with self._lock:
            return {
                "version": __version__,
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "uptime_seconds": (
                    (datetime.now(timezone.utc) - self.started_at).total_seconds()
                    if self.started_at
                    else 0
                ),
                "last_sync": self.last_sync.isoformat() if self.last_sync else None,
                "last_result": (
                    self.last_result.model_dump() if self.last_result else None
                ),
                "syncs_completed": self.syncs_completed,
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }

    def mark_started(self) -> None:
        with self._lock:
            self.running = True
            self.started_at = datetime.now(timezone.utc)

    def mark_stopped(self) -> None:
        with self._lock:
            self.running = False

    def record_sync(self, result: SyncResult) -> None:
        """Record a completed sync pass."""
        with self._lock:
            self.last_sync = datetime.now(timezone.utc)
            self.last_result = result
            self.syncs_completed += 1

    def record_error(self, error: str) -> None:
        """Record an error, keeping only the last 50."""
        with self._lock:
            ts = datetime.now(timezone.utc).isoformat()
            self.errors.append(f"[{ts}] {error}")
            if len(self.errors) > 50:
                self.errors = self.errors[-50:]


class MirrorNode:
    """A configured cluster member.

    Args:
        config: Validated node configuration.
        home: Node home directory (PID file and logs).
        governor: Shared failure budget. Built from
            ``config.fault_threshold`` when omitted.
        store: Content store override, mainly for tests.
        broker: Credential broker override, mainly for tests.
    """

    def __init__(
        self,
        config: NodeConfig,
        home: Optional[Path] = None,
        governor: Optional[FaultGovernor] = None,
        store: Optional[ContentStore] = None,
        broker: Optional[CredentialBroker] = None,
    ):
        self.config = config
        self.home = node_home(home)
        self.state = NodeState()
        self.governor = governor or FaultGovernor(threshold=config.fault_threshold)

        timeout = config.sync.request_timeout_seconds
        self.store = store or create_store(config.storage, timeout=timeout)
        self.broker = broker or CredentialBroker(
            config.cluster.id,
            config.cluster.secret,
            server_url=config.cluster.server_url,
            timeout=timeout,
        )
        self.reconciler = Reconciler(
            self.store,
            self.broker,
            governor=self.governor,
            server_url=config.cluster.server_url,
            tuning=config.sync,
        )
        self.server = MirrorServer(
            self.store,
            config.cluster.secret,
            host=config.server.host,
            port=config.cluster.port,
            access_log=config.server.access_log,
            status_provider=self.state.snapshot,
        )

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._stopped = False

    # -- bootstrap steps ----------------------------------------------------

    def init_store(self) -> None:
        """Prepare the store and verify it is usable.

        Raises:
            StorageError: If the backend cannot be initialized.
        """
        try:
            self.store.init()
            if not self.store.check():
                raise StorageError(f"{self.store.name} store failed its check")
        except StorageError as exc:
            self.state.record_error(f"Store init: {exc}")
            self.governor.record_failure(exc)
            raise
        self.governor.reset()
        logger.info("%s store ready", self.store.name)

    def connect(self) -> None:
        """Obtain the first authority token.

        Raises:
            AuthError: If the challenge flow fails.
        """
        try:
            self.broker.acquire_token()
        except MirrorError as exc:
            self.state.record_error(f"Connect: {exc}")
            self.governor.record_failure(exc)
            raise
        self.governor.reset()
        logger.info("Connected to %s as %s", self.broker.server_url, self.config.cluster.id)

    def sync(self) -> SyncResult:
        """Run a full sync, followed by GC when ``sync.gc_after_sync`` is set.

        Raises:
            SyncError: If every attempt failed.
        """
        try:
            result = self.reconciler.sync()
        except MirrorError as exc:
            self.state.record_error(f"Sync: {exc}")
            raise
        self.state.record_sync(result)

        if self.config.sync.gc_after_sync:
            try:
                self.reconciler.collect_garbage()
            except MirrorError as exc:
                logger.error("Post-sync GC failed: %s", exc)
                self.state.record_error(f"GC: {exc}")
        return result

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Bootstrap the node and start serving.

        A failed initial sync is logged and startup continues; store and
        connect failures abort startup.
        """
        self._write_pid()
        self._setup_logging()
        self._setup_signals()

        logger.info(
            "Node starting: cluster=%s store=%s port=%d",
            self.config.cluster.id,
            self.store.name,
            self.config.cluster.port,
        )

        try:
            self.init_store()
            self.connect()
        except MirrorError:
            self.broker.stop()
            self._remove_pid()
            raise

        try:
            self.sync()
        except MirrorError as exc:
            logger.error("Initial sync failed: %s", exc)

        try:
            self.server.start()
        except OSError as exc:
            self.broker.stop()
            self._remove_pid()
            raise MirrorError(
                f"Cannot listen on {self.config.server.host}:{self.config.cluster.port}: {exc}"
            ) from exc
        self.state.mark_started()

        interval = self.config.sync.interval_seconds
        if interval > 0:
            t = threading.Thread(target=self._sync_loop, name="node-sync", daemon=True)
            t.start()
            self._threads.append(t)
            logger.info("Periodic sync every %ds", interval)

        logger.info("Node started, PID %d", os.getpid())

    def stop(self) -> None:
        """Stop serving, cancel the token refresh and remove the PID file."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Node stopping...")
        self._stop_event.set()
        self.state.mark_stopped()

        self.server.stop(grace=self.config.server.shutdown_grace_seconds)
        self.broker.stop()

        for t in self._threads:
            t.join(timeout=5)

        self._remove_pid()
        logger.info("Node stopped.")

    def run_forever(self) -> None:
        """Block until a stop is signaled, then shut down."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def request_stop(self) -> None:
        self._stop_event.set()

    def _sync_loop(self) -> None:
        while not self._stop_event.is_set():
            self._stop_event.wait(timeout=self.config.sync.interval_seconds)
            if self._stop_event.is_set():
                break
            try:
                self.sync()
            except MirrorError as exc:
                logger.error("Periodic sync failed: %s", exc)

    # -- process plumbing ---------------------------------------------------

    def _setup_logging(self) -> None:
        """Configure file and console logging."""
        log_dir = self.home / LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        formatter = logging.Formatter(LOG_FORMAT)

        file_handler = logging.FileHandler(log_dir / "node.log")
        file_handler.setFormatter(formatter)
        console = logging.StreamHandler()
        console.setFormatter(formatter)

        root = logging.getLogger()
        root.addHandler(file_handler)
        root.addHandler(console)
        root.setLevel(_level(self.config.log.level))

    def _setup_signals(self) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s, stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _write_pid(self) -> None:
        pid_path = self.home / PID_FILE
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()), encoding="utf-8")

    def _remove_pid(self) -> None:
        (self.home / PID_FILE).unlink(missing_ok=True)


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """Read the node PID from the PID file.

    Args:
        home: Node home directory.

    Returns:
        PID as int, or None if no live node owns the file.
    """
    pid_path = node_home(home) / PID_FILE
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        pid_path.unlink(missing_ok=True)
        return None


def is_running(home: Optional[Path] = None) -> bool:
    """True if a node process is alive for this home."""
    return read_pid(home) is not None


def get_node_status(port: int, host: str = "127.0.0.1") -> Optional[dict]:
    """Query a running node's ``/status`` endpoint.

    Returns:
        Status dict, or None if the node is unreachable.
    """
    try:
        resp = requests.get(f"http://{host}:{port}/status", timeout=3)
        resp.raise_for_status()
        return resp.json()
    except (requests.RequestException, ValueError):
        return None
