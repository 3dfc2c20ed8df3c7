"""Remote analysis orchestration: timeout race and background cache refresh.

The analyze call runs on its own daemon thread while the caller waits at most
``timeout`` seconds. Whichever settles first decides the result; a call that
loses the race is left running (never cancelled) and still writes the cache if
it finishes before the process exits. When the timer wins in async mode, a
detached ``costgate scan --sync --refresh-cache-only`` process redoes the work
so the verdict is cached for the next invocation.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .cache import CacheStore
from .client import AnalyzerClient, AnalyzeResponse

logger = logging.getLogger(__name__)

ASYNC_TIMEOUT = 0.8  # seconds; interactive shells and pre-commit
SYNC_TIMEOUT = 30.0  # seconds; pre-push and explicit --sync

REFRESH_FLAGS = ("--sync", "--quiet", "--refresh-cache-only")


@dataclass(frozen=True)
class CacheTarget:
    """Where a fresh verdict should be stored."""

    key: str
    diff_hash: str
    ttl_seconds: int
    ruleset_version: str | None = None


@dataclass(frozen=True)
class BackgroundRefresh:
    """How to re-run this scan out of process."""

    scan_args: list[str] = field(default_factory=list)
    cwd: str | None = None


@dataclass
class AnalysisResult:
    response: AnalyzeResponse | None
    timed_out: bool = False
    refresh_started: bool = False
    elapsed: float = 0.0


def background_command(scan_args: list[str]) -> list[str]:
    return [sys.executable, "-m", "costgate.main", "scan", *scan_args, *REFRESH_FLAGS]


def spawn_background_refresh(refresh: BackgroundRefresh) -> None:
    """Launch a detached scan process and return without waiting for it."""
    kwargs: dict[str, Any] = {
        "cwd": refresh.cwd,
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
        "close_fds": True,
    }
    if os.name == "nt":
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True
    subprocess.Popen(background_command(refresh.scan_args), **kwargs)


class AnalysisOrchestrator:
    """Runs the remote analyze call against a local deadline."""

    def __init__(
        self,
        client: AnalyzerClient,
        cache: CacheStore | None,
        launcher: Callable[[BackgroundRefresh], Any] = spawn_background_refresh,
    ):
        self.client = client
        self.cache = cache
        self._launcher = launcher
        self._refresh_started = False

    @property
    def refresh_started(self) -> bool:
        return self._refresh_started

    def start_refresh(self, refresh: BackgroundRefresh) -> bool:
        """Kick off the background refresh. Only the first call per orchestrator launches."""
        if self._refresh_started:
            return False
        self._refresh_started = True
        try:
            self._launcher(refresh)
        except OSError as e:
            logger.warning("Could not start background refresh: %s", e)
            return False
        logger.debug("Background refresh started: %s", " ".join(refresh.scan_args))
        return True

    def run(
        self,
        payload: dict[str, Any],
        timeout: float,
        cache_target: CacheTarget | None = None,
        refresh: BackgroundRefresh | None = None,
    ) -> AnalysisResult:
        """Race the analyze call against ``timeout``.

        ``cache_target`` None disables the cache write; ``refresh`` None means
        the context is not async-eligible and a timeout is simply reported.
        Errors raised by the call propagate when it settles in time.
        """
        outcome: dict[str, Any] = {}
        settled = threading.Event()
        start = time.monotonic()

        worker = threading.Thread(
            target=self._call,
            args=(payload, cache_target, outcome, settled),
            name="costgate-analyze",
            daemon=True,
        )
        worker.start()

        if not settled.wait(timeout):
            elapsed = time.monotonic() - start
            logger.debug("Analyze call still pending after %.2fs", elapsed)
            started = False
            if refresh is not None and cache_target is not None:
                started = self.start_refresh(refresh)
            return AnalysisResult(response=None, timed_out=True, refresh_started=started, elapsed=elapsed)

        if "error" in outcome:
            raise outcome["error"]
        return AnalysisResult(response=outcome["response"], elapsed=time.monotonic() - start)

    def _call(
        self,
        payload: dict[str, Any],
        cache_target: CacheTarget | None,
        outcome: dict[str, Any],
        settled: threading.Event,
    ) -> None:
        try:
            response = self.client.analyze(payload)
            if cache_target is not None and self.cache is not None:
                self._store(cache_target, response)
            outcome["response"] = response
        except Exception as e:
            outcome["error"] = e
        finally:
            settled.set()

    def _store(self, target: CacheTarget, response: AnalyzeResponse) -> None:
        try:
            self.cache.put(
                target.key,
                response.to_dict(),
                target.diff_hash,
                target.ttl_seconds,
                target.ruleset_version,
            )
        except OSError as e:
            logger.warning("Could not write cache entry: %s", e)


def resolve_timeout(use_async: bool, override: float | None = None) -> float:
    if override:
        return float(override)
    return ASYNC_TIMEOUT if use_async else SYNC_TIMEOUT
