"""Tests for the analyze-call race and background refresh."""

import sys
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from costgate.cache import CacheStore
from costgate.client import AnalyzeResponse
from costgate.errors import AnalyzerUnavailable
from costgate.orchestrator import (
    ASYNC_TIMEOUT,
    SYNC_TIMEOUT,
    AnalysisOrchestrator,
    BackgroundRefresh,
    CacheTarget,
    background_command,
    resolve_timeout,
    spawn_background_refresh,
)

VERDICT = AnalyzeResponse(decision="pass")
TARGET = CacheTarget(key="k" * 64, diff_hash="h", ttl_seconds=600)
REFRESH = BackgroundRefresh(scan_args=["--staged"], cwd="/repo")


class FakeClient:
    def __init__(self, response=VERDICT, error=None, gate=None):
        self.response = response
        self.error = error
        self.gate = gate
        self.calls = 0

    def analyze(self, payload):
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def cache(tmp_path):
    return CacheStore(tmp_path / "cache")


class TestRace:
    def test_fast_call_wins_and_caches(self, cache):
        launcher = MagicMock()
        orchestrator = AnalysisOrchestrator(FakeClient(), cache, launcher)

        result = orchestrator.run({}, timeout=5, cache_target=TARGET, refresh=REFRESH)

        assert result.timed_out is False
        assert result.response == VERDICT
        assert cache.get(TARGET.key).response == VERDICT.to_dict()
        launcher.assert_not_called()

    def test_timeout_starts_exactly_one_refresh(self, cache):
        release = threading.Event()
        launcher = MagicMock()
        orchestrator = AnalysisOrchestrator(FakeClient(gate=release), cache, launcher)

        start = time.monotonic()
        result = orchestrator.run({}, timeout=0.05, cache_target=TARGET, refresh=REFRESH)
        elapsed = time.monotonic() - start
        release.set()

        assert result.timed_out is True
        assert result.response is None
        assert result.refresh_started is True
        assert elapsed < 2
        launcher.assert_called_once_with(REFRESH)

    def test_refresh_launches_once_per_orchestrator(self, cache):
        launcher = MagicMock()
        orchestrator = AnalysisOrchestrator(FakeClient(), cache, launcher)
        assert orchestrator.start_refresh(REFRESH) is True
        assert orchestrator.start_refresh(REFRESH) is False
        assert launcher.call_count == 1
        assert orchestrator.refresh_started is True

    def test_sync_timeout_launches_nothing(self, cache):
        release = threading.Event()
        launcher = MagicMock()
        orchestrator = AnalysisOrchestrator(FakeClient(gate=release), cache, launcher)

        result = orchestrator.run({}, timeout=0.05, cache_target=TARGET, refresh=None)
        release.set()

        assert result.timed_out is True
        assert result.refresh_started is False
        launcher.assert_not_called()

    def test_no_refresh_without_cache(self):
        release = threading.Event()
        launcher = MagicMock()
        orchestrator = AnalysisOrchestrator(FakeClient(gate=release), None, launcher)

        result = orchestrator.run({}, timeout=0.05, cache_target=None, refresh=REFRESH)
        release.set()

        assert result.timed_out is True
        launcher.assert_not_called()

    def test_late_result_still_writes_cache(self, cache):
        release = threading.Event()
        client = FakeClient(gate=release)
        orchestrator = AnalysisOrchestrator(client, cache, MagicMock())

        orchestrator.run({}, timeout=0.01, cache_target=TARGET, refresh=None)
        release.set()

        deadline = time.monotonic() + 5
        while cache.get(TARGET.key) is None and time.monotonic() < deadline:
            time.sleep(0.01)
        assert cache.get(TARGET.key) is not None

    def test_error_propagates(self, cache):
        orchestrator = AnalysisOrchestrator(FakeClient(error=AnalyzerUnavailable("down")), cache, MagicMock())
        with pytest.raises(AnalyzerUnavailable, match="down"):
            orchestrator.run({}, timeout=5, cache_target=TARGET)
        assert cache.get(TARGET.key) is None

    def test_launcher_failure_is_not_fatal(self, cache):
        release = threading.Event()
        launcher = MagicMock(side_effect=OSError("fork failed"))
        orchestrator = AnalysisOrchestrator(FakeClient(gate=release), cache, launcher)

        result = orchestrator.run({}, timeout=0.01, cache_target=TARGET, refresh=REFRESH)
        release.set()

        assert result.timed_out is True
        assert result.refresh_started is False

    def test_cache_write_failure_is_not_fatal(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        orchestrator = AnalysisOrchestrator(FakeClient(), CacheStore(blocker / "cache"), MagicMock())

        result = orchestrator.run({}, timeout=5, cache_target=TARGET)
        assert result.response == VERDICT


class TestBackgroundProcess:
    def test_command(self):
        cmd = background_command(["--range=main..HEAD", "--hook", "pre-push"])
        assert cmd[:4] == [sys.executable, "-m", "costgate.main", "scan"]
        assert cmd[4:7] == ["--range=main..HEAD", "--hook", "pre-push"]
        assert cmd[-3:] == ["--sync", "--quiet", "--refresh-cache-only"]

    @patch("costgate.orchestrator.subprocess.Popen")
    def test_spawn_is_detached(self, mock_popen):
        spawn_background_refresh(REFRESH)

        args, kwargs = mock_popen.call_args
        assert args[0][-3:] == ["--sync", "--quiet", "--refresh-cache-only"]
        assert kwargs["cwd"] == "/repo"
        assert kwargs["stdout"] is not None
        mock_popen.return_value.wait.assert_not_called()


class TestResolveTimeout:
    def test_defaults(self):
        assert resolve_timeout(True) == ASYNC_TIMEOUT == 0.8
        assert resolve_timeout(False) == SYNC_TIMEOUT == 30.0

    def test_override(self):
        assert resolve_timeout(True, 5) == 5.0
