"""Error taxonomy for the scan pipeline.

Every failure the pipeline can surface derives from CostgateError. The
command layer turns these into messages and exit code 3; nothing below it
exits the process.
"""

from __future__ import annotations


class CostgateError(Exception):
    """Base class for errors that abort a scan."""


# --- Environment ---


class GitContextError(CostgateError):
    """Local git state cannot support a scan."""


class NotARepository(GitContextError):
    def __init__(self) -> None:
        super().__init__(
            "Not inside a git repository. Run this command from within a git project."
        )


class NoRemote(GitContextError):
    def __init__(self) -> None:
        super().__init__('No git remote "origin" configured. Please add a remote.')


class NoCommits(GitContextError):
    def __init__(self) -> None:
        super().__init__("Cannot resolve HEAD. Make sure you have at least one commit.")


class UnparseableRemote(GitContextError):
    def __init__(self, remote_url: str) -> None:
        super().__init__(f"Cannot parse repository info from remote URL: {remote_url}")
        self.remote_url = remote_url


# --- Usage ---


class InvalidScanRequest(CostgateError):
    """Scan options are inconsistent (bad range syntax, mixed modes)."""


class PayloadTooLarge(CostgateError):
    """Changed files exceed the legacy upload limits."""


class NotAuthenticated(CostgateError):
    def __init__(
        self,
        message: str = "Not authenticated. Set COSTGATE_TOKEN or add credentials to ~/.costgate/config.json",
    ) -> None:
        super().__init__(message)


# --- Remote ---


class AnalyzerUnavailable(CostgateError):
    """The analysis service could not be reached or answered garbage."""


class ApiError(CostgateError):
    """The analysis service answered with an HTTP error status."""

    def __init__(self, message: str, status_code: int, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code in (401, 403)

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429
