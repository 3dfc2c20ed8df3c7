"""Git context resolution. Reads local git state only, never the network."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import NoCommits, NoRemote, NotARepository, UnparseableRemote

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 30  # seconds per git invocation

# Probe order matters: repos carrying both main and master resolve the same way everywhere.
DEFAULT_BRANCH_CANDIDATES = ("origin/main", "origin/master", "main", "master")


class Provider(str, Enum):
    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"
    AZURE = "azure"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class GitContext:
    """Snapshot of the repository the scan runs against."""

    repo_root: str
    remote_url: str
    provider: Provider
    owner: str
    name: str
    branch: str
    head_sha: str
    default_branch: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"


def run_git(args: list[str], cwd: str | Path | None = None, strip: bool = True) -> str:
    """Run a git command and return its stdout, stripped unless ``strip`` is False.

    Any failure (non-zero exit, missing git, timeout) yields "".
    """
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd, capture_output=True, text=True, timeout=GIT_TIMEOUT,
            encoding="utf-8", errors="replace",
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, NotADirectoryError) as e:
        logger.debug("git %s failed: %s", " ".join(args), e)
        return ""
    if result.returncode != 0:
        logger.debug("git %s exited %d: %s", " ".join(args), result.returncode, result.stderr.strip()[:200])
        return ""
    return result.stdout.strip() if strip else result.stdout


_SSH_REMOTE = re.compile(r"git@([^:]+):([^/]+)/(.+?)(?:\.git)?/?$")
_HTTPS_REMOTE = re.compile(r"https?://([^/]+)/([^/]+)/(.+?)(?:\.git)?/?$")


def parse_remote_url(url: str) -> tuple[Provider, str, str]:
    """Split a remote URL into (provider, owner, name).

    Unrecognized forms give (UNKNOWN, "", ""); unrecognized hosts keep
    owner/name but map to UNKNOWN.
    """
    match = _SSH_REMOTE.match(url.strip()) or _HTTPS_REMOTE.match(url.strip())
    if not match:
        return Provider.UNKNOWN, "", ""

    host = match.group(1).lower()
    # user@host in HTTPS URLs
    host = host.rsplit("@", 1)[-1]
    owner = match.group(2)
    name = re.sub(r"\.git$", "", match.group(3))

    if "github" in host:
        provider = Provider.GITHUB
    elif "gitlab" in host:
        provider = Provider.GITLAB
    elif "azure" in host or "visualstudio" in host:
        provider = Provider.AZURE
    elif "bitbucket" in host:
        provider = Provider.BITBUCKET
    else:
        provider = Provider.UNKNOWN
    return provider, owner, name


class GitContextResolver:
    """Resolves a GitContext for the repository containing ``cwd``."""

    def __init__(self, cwd: str | Path | None = None):
        self.cwd = Path(cwd) if cwd else Path.cwd()

    def resolve(self) -> GitContext:
        repo_root = run_git(["rev-parse", "--show-toplevel"], self.cwd)
        if not repo_root:
            raise NotARepository()

        remote_url = run_git(["remote", "get-url", "origin"], repo_root)
        if not remote_url:
            raise NoRemote()

        head_sha = run_git(["rev-parse", "--verify", "HEAD"], repo_root)
        if not head_sha:
            raise NoCommits()

        branch = run_git(["rev-parse", "--abbrev-ref", "HEAD"], repo_root) or "HEAD"
        provider, owner, name = parse_remote_url(remote_url)
        if not owner or not name:
            raise UnparseableRemote(remote_url)

        return GitContext(
            repo_root=repo_root,
            remote_url=remote_url,
            provider=provider,
            owner=owner,
            name=name,
            branch=branch,
            head_sha=head_sha,
            default_branch=self.resolve_default_branch(repo_root),
        )

    @staticmethod
    def resolve_default_branch(repo_root: str | Path) -> str:
        for ref in DEFAULT_BRANCH_CANDIDATES:
            if run_git(["rev-parse", "--verify", "--quiet", ref], repo_root):
                return ref.removeprefix("origin/")
        return "main"
