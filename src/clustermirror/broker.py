"""
Credential broker — the node's authentication token lifecycle.

Token acquisition is a challenge/response exchange with the authority:

    GET  /openbmclapi-agent/challenge?clusterId=ID  -> {challenge}
    POST /openbmclapi-agent/token {clusterId, challenge, signature}
                                                     -> 201 {token, ttl}

The signature is hex(HMAC-SHA256(secret, challenge)). Once a token is
held, a background timer refreshes it after max(ttl / 2, 600) seconds by
posting {clusterId, token} to the same endpoint. The timer belongs to
the broker and is cancelled by stop().
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Optional

import requests

from . import DEFAULT_SERVER_URL, USER_AGENT
from .errors import AuthError
from .signing import sign

logger = logging.getLogger("clustermirror.broker")

MIN_REFRESH_SECONDS = 600
TOKEN_CREATED = 201


def refresh_delay(ttl: float) -> float:
    """Seconds to wait before refreshing a token with the given TTL."""
    return max(ttl / 2, MIN_REFRESH_SECONDS)


class ReadWriteLock:
    """Many concurrent readers or one exclusive writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class CredentialBroker:
    """Owns the authority token and keeps it fresh.

    Args:
        cluster_id: Cluster identifier issued by the authority.
        cluster_secret: Shared secret used to sign challenges.
        server_url: Authority base URL.
        session: HTTP session, injectable for tests.
        timeout: Per-request timeout in seconds.
        clock: Monotonic clock, injectable for tests.
        timer_factory: Builds the refresh timer; defaults to
            ``threading.Timer``.
    """

    def __init__(
        self,
        cluster_id: str,
        cluster_secret: str,
        server_url: str = DEFAULT_SERVER_URL,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.cluster_id = cluster_id
        self._secret = cluster_secret
        self.server_url = server_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self._clock = clock
        self._timer_factory = timer_factory

        self._lock = ReadWriteLock()
        self._fetch_lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

        self._timer_lock = threading.Lock()
        self._timer = None
        self._stopped = False

    @property
    def token_url(self) -> str:
        return f"{self.server_url}/openbmclapi-agent/token"

    @property
    def challenge_url(self) -> str:
        return f"{self.server_url}/openbmclapi-agent/challenge"

    def acquire_token(self) -> str:
        """Return a valid token, running the challenge flow if needed.

        Raises:
            AuthError: If a token cannot be obtained.
        """
        token = self._current()
        if token:
            return token

        with self._fetch_lock:
            token = self._current()
            if token:
                return token
            return self._fetch_token()

    def has_token(self) -> bool:
        return self._current() is not None

    def stop(self) -> None:
        """Cancel the pending refresh, if any."""
        with self._timer_lock:
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        logger.debug("Token refresh cancelled")

    # -- internals ----------------------------------------------------------

    def _current(self) -> Optional[str]:
        with self._lock.read():
            if self._token and self._clock() < self._expires_at:
                return self._token
            return None

    def _store(self, token: str, ttl: float) -> None:
        with self._lock.write():
            self._token = token
            self._expires_at = self._clock() + ttl

    def _fetch_token(self) -> str:
        try:
            resp = self.session.get(
                self.challenge_url,
                params={"clusterId": self.cluster_id},
                headers={"User-Agent": USER_AGENT},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise AuthError(f"Challenge request failed: {exc}") from exc

        if resp.status_code != 200:
            raise AuthError(f"Challenge request returned {resp.status_code}")

        try:
            challenge = resp.json()["challenge"]
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthError(f"Malformed challenge response: {exc}") from exc

        token, ttl = self._post_token({
            "clusterId": self.cluster_id,
            "challenge": challenge,
            "signature": sign(self._secret, challenge),
        })
        self._store(token, ttl)
        self._schedule_refresh(ttl)
        logger.info("Token acquired, ttl=%ss", ttl)
        return token

    def _post_token(self, body: dict) -> tuple[str, float]:
        try:
            resp = self.session.post(
                self.token_url,
                json=body,
                headers={"User-Agent": USER_AGENT},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise AuthError(f"Token request failed: {exc}") from exc

        if resp.status_code != TOKEN_CREATED:
            raise AuthError(f"Token request returned {resp.status_code}")

        try:
            data = resp.json()
            return str(data["token"]), float(data["ttl"])
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthError(f"Malformed token response: {exc}") from exc

    def _schedule_refresh(self, ttl: float) -> None:
        delay = refresh_delay(ttl)
        with self._timer_lock:
            if self._stopped:
                return
            if self._timer is not None:
                self._timer.cancel()
            timer = self._timer_factory(delay, self._refresh)
            timer.daemon = True
            self._timer = timer
            timer.start()
        logger.debug("Token refresh scheduled in %ss", delay)

    def _refresh(self) -> None:
        """Exchange the current token for a new one.

        Failures are logged only. The old token keeps its expiry, so a
        later acquire_token() falls back to the challenge flow once it
        lapses.
        """
        with self._lock.read():
            current = self._token
        if not current:
            return

        try:
            token, ttl = self._post_token({
                "clusterId": self.cluster_id,
                "token": current,
            })
        except AuthError as exc:
            logger.error("Token refresh failed: %s", exc)
            return

        self._store(token, ttl)
        self._schedule_refresh(ttl)
        logger.info("Token refreshed, ttl=%ss", ttl)
