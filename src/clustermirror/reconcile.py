"""
Reconciliation engine — keeps the store in line with the manifest.

This is the command center of a sync pass:

    fetch_manifest  ->  GET /openbmclapi/files (zstd + Avro)
    reconcile       ->  store.compute_missing(manifest)
    fetch_missing   ->  bounded, staggered, retrying downloads into store.put

A pass that errors, or that finishes with failed files, is retried as a
whole. When every retry is spent the failure goes to the fault governor.
"""

from __future__ import annotations

import io
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Optional, Sequence

import requests

from . import DEFAULT_SERVER_URL, USER_AGENT
from .broker import CredentialBroker
from .errors import MirrorError, StorageError, SyncError, TransportError
from .faults import FaultGovernor
from .manifest import parse_manifest
from .models import ContentEntry, SyncResult, SyncTuning
from .storage import ContentStore

logger = logging.getLogger("clustermirror.reconcile")

MANIFEST_PATH = "openbmclapi/files"
NO_CONTENT = 204
CHUNK_SIZE = 64 * 1024


class ResponseStream(io.RawIOBase):
    """Read-only file object over a streamed HTTP response body.

    Reads go through ``iter_content`` so transfer failures surface as
    requests exceptions rather than urllib3 ones.
    """

    def __init__(self, response: requests.Response, chunk_size: int = CHUNK_SIZE):
        super().__init__()
        self._chunks = response.iter_content(chunk_size)
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending:
            chunk = next(self._chunks, None)
            if chunk is None:
                return 0
            self._pending = chunk
        n = min(len(buffer), len(self._pending))
        buffer[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n


class SyncAttempt:
    """State of one reconciliation pass.

    Holds the manifest snapshot, the missing set, the admission gate
    bounding concurrent downloads, and the running counters.
    """

    def __init__(
        self,
        manifest: Sequence[ContentEntry],
        missing: Sequence[ContentEntry],
        concurrency_limit: int,
    ):
        self.manifest = list(manifest)
        self.missing = list(missing)
        self.gate = threading.BoundedSemaphore(concurrency_limit)
        self._lock = threading.Lock()
        self.succeeded = 0
        self.failed = 0

    @property
    def completed(self) -> int:
        with self._lock:
            return self.succeeded + self.failed

    def task_done(self, ok: bool) -> int:
        """Count one finished task and return the completed total."""
        with self._lock:
            if ok:
                self.succeeded += 1
            else:
                self.failed += 1
            return self.succeeded + self.failed

    def result(self) -> SyncResult:
        with self._lock:
            return SyncResult(
                total=len(self.manifest),
                missing=len(self.missing),
                succeeded=self.succeeded,
                failed=self.failed,
            )


class Reconciler:
    """Fetches the manifest and fills the store with what is missing.

    Args:
        store: Content store to reconcile.
        broker: Supplies the bearer token for authority requests.
        governor: Receives pass-level failures.
        server_url: Authority base URL.
        tuning: Concurrency, spacing and retry settings.
        session: HTTP session, injectable for tests.
        sleep: Delay function for spacing and backoff, injectable for tests.
    """

    def __init__(
        self,
        store: ContentStore,
        broker: CredentialBroker,
        governor: Optional[FaultGovernor] = None,
        server_url: str = DEFAULT_SERVER_URL,
        tuning: Optional[SyncTuning] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.broker = broker
        self.governor = governor or FaultGovernor()
        self.server_url = server_url.rstrip("/")
        self.tuning = tuning or SyncTuning()
        self.session = session or requests.Session()
        self._sleep = sleep

    # -- authority requests -------------------------------------------------

    def _request(
        self,
        path: str,
        params: Optional[dict] = None,
        stream: bool = False,
    ) -> requests.Response:
        """Authenticated GET against the authority.

        Raises:
            AuthError: If no token can be obtained.
            TransportError: On network failure or a status >= 400.
        """
        url = f"{self.server_url}/{path.lstrip('/')}"
        token = self.broker.acquire_token()
        headers = {"Authorization": f"Bearer {token}", "User-Agent": USER_AGENT}
        redacted = {**headers, "Authorization": "Bearer ***"}

        try:
            resp = self.session.get(
                url,
                params=params,
                headers=headers,
                timeout=self.tuning.request_timeout_seconds,
                stream=stream,
            )
        except requests.RequestException as exc:
            logger.error("GET %s failed: %s (headers=%s)", url, exc, redacted)
            raise TransportError(f"GET {path} failed: {exc}") from exc

        if resp.status_code >= 400:
            body = resp.text[:512] if not stream else ""
            resp.close()
            logger.error(
                "GET %s returned %d (headers=%s) %s",
                url, resp.status_code, redacted, body,
            )
            raise TransportError(
                f"GET {path} returned {resp.status_code}", status=resp.status_code
            )
        return resp

    def fetch_manifest(self, since: Optional[int] = None) -> list[ContentEntry]:
        """Fetch and decode the manifest.

        Args:
            since: ``lastModified`` query value. Defaults to the store's
                newest object time; 0 requests everything.

        Returns:
            Entries the node must host. The response is treated as the
            complete required set.

        Raises:
            TransportError, AuthError, DecodeError: The attempt failed.
        """
        if since is None:
            try:
                since = self.store.last_modified()
            except (StorageError, OSError) as exc:
                logger.warning("Cannot read store last-modified time: %s", exc)
                since = 0

        resp = self._request(MANIFEST_PATH, params={"lastModified": str(since)})
        try:
            if resp.status_code == NO_CONTENT:
                logger.info("Authority returned 204, no files to sync")
                return []
            if resp.status_code != 200:
                raise TransportError(
                    f"Manifest request returned {resp.status_code}",
                    status=resp.status_code,
                )
            entries = parse_manifest(resp.content)
        finally:
            resp.close()

        logger.info("Manifest fetched: %d entries (lastModified=%s)", len(entries), since)
        return entries

    def reconcile(self, entries: Iterable[ContentEntry]) -> list[ContentEntry]:
        """Entries whose hash is not yet in the store."""
        missing = self.store.compute_missing(entries)
        logger.info("%d file(s) missing from %s store", len(missing), self.store.name)
        return missing

    # -- downloads ----------------------------------------------------------

    def download(self, entry: ContentEntry) -> None:
        """Single download attempt, streamed into the store."""
        resp = self._request(entry.path, stream=True)
        try:
            self.store.put(entry.hash, ResponseStream(resp))
        finally:
            resp.close()

    def download_with_retry(self, entry: ContentEntry) -> bool:
        """Download with linear backoff. Returns True on success."""
        attempts = max(self.tuning.file_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                self.download(entry)
                return True
            except (MirrorError, OSError) as exc:
                logger.warning(
                    "Download of %s failed (%d/%d): %s",
                    entry.hash, attempt, attempts, exc,
                )
                if attempt < attempts:
                    self._sleep(attempt)
        logger.error("Giving up on %s after %d attempts", entry.hash, attempts)
        return False

    def _run_task(self, attempt: SyncAttempt, entry: ContentEntry) -> None:
        ok = False
        try:
            ok = self.download_with_retry(entry)
        except Exception:
            logger.exception("Unexpected error downloading %s", entry.hash)
        finally:
            attempt.gate.release()
            done = attempt.task_done(ok)
            total = len(attempt.missing)
            logger.info(
                "Sync progress: %d/%d (%.2f%%)", done, total, done / total * 100
            )

    def fetch_missing(
        self,
        missing: Sequence[ContentEntry],
        concurrency_limit: Optional[int] = None,
        spacing: Optional[float] = None,
        manifest: Optional[Sequence[ContentEntry]] = None,
    ) -> SyncResult:
        """Download every missing entry.

        Args:
            missing: Entries to download.
            concurrency_limit: Maximum downloads in flight. Unset or
                non-positive falls back to the configured value (64).
            spacing: Seconds between task submissions. Unset or negative
                falls back to the configured value (0.1).
            manifest: Manifest snapshot the missing set came from.

        Returns:
            Tally of succeeded and failed downloads. Individual failures
            never stop the pass.
        """
        limit = concurrency_limit
        if not limit or limit <= 0:
            limit = self.tuning.max_concurrency
        if spacing is None or spacing < 0:
            spacing = self.tuning.start_interval_ms / 1000

        attempt = SyncAttempt(manifest or missing, missing, limit)
        if not missing:
            return attempt.result()

        logger.info(
            "Downloading %d file(s), concurrency=%d spacing=%.3fs",
            len(missing), limit, spacing,
        )
        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="download") as pool:
            for index, entry in enumerate(missing):
                if index and spacing:
                    self._sleep(spacing)
                attempt.gate.acquire()
                try:
                    pool.submit(self._run_task, attempt, entry)
                except BaseException:
                    attempt.gate.release()
                    raise

        result = attempt.result()
        logger.info(
            "Download pass finished: %d succeeded, %d failed, %d total",
            result.succeeded, result.failed, result.missing,
        )
        return result

    # -- passes -------------------------------------------------------------

    def run_pass(self) -> SyncResult:
        """One fetch -> diff -> download attempt, without retries."""
        if not self.store.check():
            raise StorageError(f"{self.store.name} store is not ready")

        manifest = self.fetch_manifest()
        if not manifest:
            return SyncResult()

        missing = self.reconcile(manifest)
        if not missing:
            return SyncResult(total=len(manifest))

        return self.fetch_missing(missing, manifest=manifest)

    def sync(self) -> SyncResult:
        """Run passes until one succeeds or the attempts are spent.

        Raises:
            SyncError: After the last failed attempt. The failure has
                already been recorded with the fault governor.
        """
        attempts = max(self.tuning.pass_attempts, 1)
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                result = self.run_pass()
            except (MirrorError, OSError) as exc:
                last_error = exc
                logger.warning("Sync attempt %d/%d failed: %s", attempt, attempts, exc)
            else:
                if result.ok:
                    self.governor.reset()
                    logger.info(
                        "Sync complete: %d manifest entries, %d downloaded",
                        result.total, result.succeeded,
                    )
                    return result
                last_error = SyncError(f"{result.failed} file(s) failed to download")
                logger.warning(
                    "Sync attempt %d/%d finished with %d failed file(s)",
                    attempt, attempts, result.failed,
                )

            if attempt < attempts:
                self._sleep(attempt * self.tuning.pass_backoff_seconds)

        error = SyncError(f"Sync failed after {attempts} attempts: {last_error}")
        self.governor.record_failure(error)
        raise error from last_error

    def collect_garbage(self, dry_run: bool = False) -> int:
        """Remove stored objects that are not in the full manifest.

        An empty manifest is treated as suspicious and nothing is deleted.

        Returns:
            Number of objects deleted (or that would be, for a dry run).
        """
        manifest = self.fetch_manifest(since=0)
        if not manifest:
            logger.warning("Full manifest is empty, skipping garbage collection")
            return 0

        retain = {entry.hash for entry in manifest}
        if dry_run:
            stale = [obj for obj in self.store.list_files() if obj.hash not in retain]
            logger.info("GC dry run: %d object(s) would be deleted", len(stale))
            return len(stale)
        return self.store.garbage_collect(retain)
