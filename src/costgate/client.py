"""Analysis service client - the remote half of a scan.

Sends diffs (or file contents) to the analyze endpoint with bearer auth,
refreshes the access token on 401 once, and parses verdicts.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from . import __version__
from .config import Config, save_config
from .diff import DiffPayload, FileEntry, ScanRequest
from .errors import AnalyzerUnavailable, ApiError, NotAuthenticated
from .git import GitContext

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 60  # seconds; the orchestrator races this with its own, shorter timer
REFRESH_WINDOW = timedelta(days=7)

ANALYZE_PATH = "/api/cli/analyze"
REFRESH_PATH = "/api/cli/auth/refresh"


@dataclass(frozen=True)
class Finding:
    """A single analyzer finding. Immutable once received."""

    rule_id: str
    severity: str  # low | medium | high
    category: str = "governance"
    confidence: float = 0.9
    title: str = ""
    file: str = ""
    line: int = 0
    message: str = ""
    recommendation: str = ""
    cost_impact: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Finding:
        confidence = data.get("confidence")
        return cls(
            rule_id=str(data.get("ruleId", "")),
            severity=str(data.get("severity", "low")).lower(),
            category=data.get("category") or "governance",
            confidence=float(confidence) if confidence is not None else 0.9,
            title=data.get("title", ""),
            file=data.get("file", ""),
            line=int(data.get("line") or 0),
            message=data.get("message", ""),
            recommendation=data.get("recommendation", ""),
            cost_impact=data.get("costImpact") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "severity": self.severity,
            "category": self.category,
            "confidence": self.confidence,
            "title": self.title,
            "file": self.file,
            "line": self.line,
            "message": self.message,
            "recommendation": self.recommendation,
            "costImpact": self.cost_impact,
        }


@dataclass
class AnalyzeResponse:
    """Verdict returned by the analyze endpoint."""

    decision: str  # pass | warn | block
    findings: list[Finding] = field(default_factory=list)
    analysis_type: str = ""
    summary: dict[str, Any] = field(default_factory=dict)
    usage: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalyzeResponse:
        return cls(
            decision=str(data.get("decision", "")).lower(),
            findings=[Finding.from_dict(f) for f in data.get("findings") or []],
            analysis_type=data.get("analysisType", ""),
            summary=data.get("summary") or {},
            usage=data.get("usage") or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision,
            "findings": [f.to_dict() for f in self.findings],
            "analysisType": self.analysis_type,
            "summary": self.summary,
            "usage": self.usage,
        }


def client_info() -> dict[str, str]:
    return {"type": "cli", "version": __version__, "os": sys.platform}


def build_analyze_request(
    config: Config,
    ctx: GitContext,
    request: ScanRequest,
    diff: DiffPayload | None = None,
    files: list[FileEntry] | None = None,
) -> dict[str, Any]:
    """Assemble the analyze payload: unified diff when available, else file contents."""
    payload: dict[str, Any] = {
        "orgId": config.org_id,
        "userId": config.user_id,
        "machineId": config.machine_id,
        "repo": {
            "provider": ctx.provider.value,
            "owner": ctx.owner,
            "name": ctx.name,
            "remoteUrl": ctx.remote_url,
        },
        "scan": {
            "mode": request.mode.value,
            "baseRef": request.base_ref,
            "headRef": request.head_ref or request.commit_sha or ctx.head_sha,
        },
        "git": {"branch": ctx.branch, "headSha": ctx.head_sha},
        "client": client_info(),
    }
    if config.policy_id:
        payload["policyId"] = config.policy_id
    if diff is not None:
        payload["diff"] = diff.to_dict()
        payload["filesMeta"] = [s.to_dict() for s in diff.files]
    else:
        payload["files"] = [f.to_dict() for f in files or []]
    return payload


class AnalyzerClient:
    """Client for the analysis service REST API."""

    def __init__(
        self,
        config: Config,
        persist: Callable[[Config], Any] | None = save_config,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.config = config
        self.base_url = config.api_base_url.rstrip("/")
        self._persist = persist
        self._client = httpx.Client(
            timeout=timeout,
            headers={"User-Agent": f"costgate/{__version__}", "Content-Type": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, body: dict | None = None) -> dict[str, Any]:
        headers = {}
        if self.config.access_token:
            headers["Authorization"] = f"Bearer {self.config.access_token}"
        try:
            resp = self._client.request(method, f"{self.base_url}{path}", json=body, headers=headers)
        except httpx.TimeoutException:
            raise AnalyzerUnavailable(f"Analysis service timed out ({self.base_url})")
        except httpx.HTTPError as e:
            raise AnalyzerUnavailable(f"Network error: {e}")

        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            if resp.status_code >= 400:
                raise ApiError(f"HTTP {resp.status_code}", resp.status_code)
            raise AnalyzerUnavailable(f"Failed to parse response: {resp.text[:200]}")
        if not isinstance(data, dict):
            data = {}

        if resp.status_code >= 400:
            message = data.get("message") or data.get("error") or f"HTTP {resp.status_code}"
            raise ApiError(message, resp.status_code, data.get("code"))
        return data

    def refresh_token(self) -> bool:
        """Exchange the current token for a new one. Returns True on success."""
        if not self.config.access_token or self.config.ci_token:
            return False
        try:
            data = self._request("POST", REFRESH_PATH)
        except (ApiError, AnalyzerUnavailable) as e:
            logger.debug("Token refresh failed: %s", e)
            return False

        token = data.get("accessToken")
        if not token:
            return False
        self.config = self.config.with_token(token, data.get("expiresAt"))
        if self._persist:
            try:
                self._persist(self.config)
            except OSError as e:
                logger.warning("Could not save refreshed token: %s", e)
        return True

    def token_expiring(self, now: datetime | None = None) -> bool:
        if not self.config.access_token or not self.config.token_expires_at:
            return False
        try:
            expires = datetime.fromisoformat(self.config.token_expires_at.replace("Z", "+00:00"))
        except ValueError:
            return False
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return expires - (now or datetime.now(timezone.utc)) < REFRESH_WINDOW

    def analyze(self, payload: dict[str, Any]) -> AnalyzeResponse:
        """POST a scan. A 401 gets exactly one token refresh and retry."""
        if not self.config.ci_token and self.token_expiring():
            self.refresh_token()
        if not self.config.access_token:
            raise NotAuthenticated()

        try:
            data = self._request("POST", ANALYZE_PATH, payload)
        except ApiError as e:
            if e.status_code != 401 or self.config.ci_token or not self.refresh_token():
                raise
            logger.debug("Retrying analyze after token refresh")
            data = self._request("POST", ANALYZE_PATH, payload)
        try:
            return AnalyzeResponse.from_dict(data)
        except (ValueError, TypeError, AttributeError) as e:
            raise AnalyzerUnavailable(f"Malformed analyze response: {e}")
