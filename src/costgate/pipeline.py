"""The scan pipeline: git context -> preflight -> cache -> remote -> gating.

``run_scan`` never prints and never exits. It returns a ScanOutcome or raises
a CostgateError; the command layer decides what to show and which exit code
to use.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from .cache import CacheStore, compute_cache_key, default_ttl
from .client import AnalyzerClient, AnalyzeResponse, build_analyze_request
from .config import Config
from .diff import (
    DiffExtractor,
    DiffPayload,
    FileEntry,
    collect_all_files,
    compute_diff_hash,
    hash_file_entries,
    scan_request_from_options,
)
from .errors import NotAuthenticated
from .gating import GateMode, GatingResult, gate
from .git import GitContext, GitContextResolver
from .orchestrator import (
    AnalysisOrchestrator,
    BackgroundRefresh,
    CacheTarget,
    resolve_timeout,
    spawn_background_refresh,
)
from .preflight import run_preflight

logger = logging.getLogger(__name__)

AUTO_RANGE = "auto"
# Async cache hits past this share of their TTL also refresh in the background.
STALE_FRACTION = 0.5


class OutcomeKind(str, Enum):
    NO_CHANGES = "no_changes"
    CACHED = "cached"
    ANALYZED = "analyzed"
    TIMED_OUT = "timed_out"
    REFRESHED = "refreshed"


@dataclass
class ScanOptions:
    """Command-level scan options."""

    staged: bool = False
    commit: str | None = None
    range_spec: str | None = None  # "base..head" or AUTO_RANGE
    file: str | None = None
    all_files: bool = False
    gate_mode: GateMode = GateMode.MANUAL
    sync: bool = False
    async_mode: bool | None = None  # None: decide from the terminal
    timeout: float | None = None
    use_cache: bool = True
    cache_ttl: int | None = None
    refresh_cache_only: bool = False
    interactive: bool = False  # stdout is a TTY

    @property
    def use_async(self) -> bool:
        return not self.sync and self.async_mode is not False and self.interactive

    def refresh_args(self, range_spec: str | None) -> list[str]:
        """Arguments that make a background ``costgate scan`` redo this scan."""
        args: list[str] = []
        if self.all_files:
            args.append("--all")
        if self.file:
            args += ["--file", self.file]
        if self.staged:
            args.append("--staged")
        if self.commit:
            args += ["--commit", self.commit]
        if range_spec:
            args.append(f"--range={range_spec}")
        if GateMode(self.gate_mode) is not GateMode.MANUAL:
            args += ["--hook", GateMode(self.gate_mode).value]
        if self.cache_ttl:
            args += ["--cache-ttl", str(self.cache_ttl)]
        return args


@dataclass
class ScanOutcome:
    kind: OutcomeKind
    context: GitContext | None = None
    mode: str = ""
    response: AnalyzeResponse | None = None
    gating: GatingResult | None = None
    reason: str = ""
    file_count: int = 0
    background_refresh: bool = False
    elapsed: float = 0.0


def run_scan(
    config: Config,
    options: ScanOptions,
    cwd: str | Path | None = None,
    client: AnalyzerClient | None = None,
    cache: CacheStore | None = None,
    launcher: Callable[[BackgroundRefresh], Any] = spawn_background_refresh,
) -> ScanOutcome:
    """Run one scan invocation end to end."""
    start = time.monotonic()

    if not config.is_authenticated:
        raise NotAuthenticated()

    ctx = GitContextResolver(cwd).resolve()

    range_spec = options.range_spec
    if range_spec == AUTO_RANGE:
        range_spec = f"origin/{ctx.default_branch}..HEAD"
    request = scan_request_from_options(
        staged=options.staged,
        commit=options.commit,
        range_spec=range_spec,
        file=options.file,
    )
    extractor = DiffExtractor(ctx.repo_root)

    def finish(kind: OutcomeKind, **kwargs) -> ScanOutcome:
        return ScanOutcome(kind=kind, context=ctx, elapsed=time.monotonic() - start, **kwargs)

    # Relevance gate and change identity.
    diff_text = ""
    files: list[FileEntry] | None = None
    if options.all_files:
        mode = "all"
        files = collect_all_files(ctx.repo_root)
        if not files:
            return finish(OutcomeKind.NO_CHANGES, mode=mode, reason="No scannable files found in repository.")
        diff_hash = hash_file_entries(files)
    elif request.single_file:
        mode = request.mode.value
        entry = extractor.collect_single_file(request.single_file)
        if entry is None:
            return finish(OutcomeKind.NO_CHANGES, mode=mode, reason=f"File not found or binary: {request.single_file}")
        files = [entry]
        diff_hash = hash_file_entries(files)
    else:
        mode = request.mode.value
        preflight = run_preflight(ctx.repo_root, request)
        if not preflight.has_relevant_changes:
            return finish(
                OutcomeKind.NO_CHANGES, mode=mode,
                reason=preflight.reason or "No relevant changes detected.",
            )
        diff_text = extractor.read_diff(request)
        if not diff_text:
            return finish(OutcomeKind.NO_CHANGES, mode=mode, reason="No changed files to analyze.")
        diff_hash = compute_diff_hash(diff_text)

    cache = cache if cache is not None else CacheStore(config.cache_dir)
    client = client or AnalyzerClient(config)
    orchestrator = AnalysisOrchestrator(client, cache if options.use_cache else None, launcher)

    key = compute_cache_key(ctx.remote_url, mode, diff_hash, config.policy_id, config.ruleset_version)
    refresh = None
    if options.use_async and options.use_cache:
        refresh = BackgroundRefresh(scan_args=options.refresh_args(range_spec), cwd=ctx.repo_root)

    # Refresh runs skip the read so they renew the entry instead of finding it.
    if options.use_cache and not options.refresh_cache_only:
        cached = cache.get(key)
        response = None
        if cached is not None:
            try:
                response = AnalyzeResponse.from_dict(cached.response)
            except (ValueError, TypeError, AttributeError) as e:
                logger.debug("Discarding unreadable cached verdict %s: %s", key[:12], e)
                cache.discard(key)
        if response is not None:
            logger.debug("Cache hit %s (%s)", key[:12], mode)
            started = False
            if refresh is not None and cached.age_fraction() >= STALE_FRACTION:
                started = orchestrator.start_refresh(refresh)
            return finish(
                OutcomeKind.CACHED, mode=mode, response=response,
                gating=gate(response.findings, response.decision, options.gate_mode),
                background_refresh=started,
            )
        logger.debug("Cache miss %s (%s)", key[:12], mode)

    diff: DiffPayload | None = None
    if files is None:
        diff = extractor.extract(request, diff_text)
        if diff is None:
            logger.debug("Falling back to file collection for %s scan", mode)
            files = extractor.collect_files(request)
            if not files:
                return finish(OutcomeKind.NO_CHANGES, mode=mode, reason="No changed files to analyze.")

    payload = build_analyze_request(config, ctx, request, diff=diff, files=files)
    file_count = len(diff.files) if diff is not None else len(files or [])

    target = None
    if options.use_cache:
        target = CacheTarget(
            key=key,
            diff_hash=diff_hash,
            ttl_seconds=options.cache_ttl or default_ttl(mode),
            ruleset_version=config.ruleset_version,
        )

    result = orchestrator.run(
        payload,
        resolve_timeout(options.use_async, options.timeout),
        cache_target=target,
        refresh=refresh,
    )
    if result.timed_out:
        return finish(
            OutcomeKind.TIMED_OUT, mode=mode, file_count=file_count,
            background_refresh=result.refresh_started,
        )

    if options.refresh_cache_only:
        return finish(OutcomeKind.REFRESHED, mode=mode, file_count=file_count, response=result.response)

    response = result.response
    return finish(
        OutcomeKind.ANALYZED, mode=mode, response=response, file_count=file_count,
        gating=gate(response.findings, response.decision, options.gate_mode),
    )
