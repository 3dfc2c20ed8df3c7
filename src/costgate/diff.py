"""Diff extraction - Layer 1 of the scan. Turns a ScanRequest into something
the analyzer can consume.

Primary path is a unified diff with per-file numstat. When the diff is too
large to upload, callers fall back to the legacy path that ships whole file
contents, bounded by file count and aggregate size.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import InvalidScanRequest, PayloadTooLarge
from .git import run_git

logger = logging.getLogger(__name__)

UNIFIED_CONTEXT = 3
MAX_DIFF_BYTES = 2 * 1024 * 1024
MAX_LEGACY_FILES = 50
MAX_LEGACY_BYTES = 2 * 1024 * 1024


class ScanMode(str, Enum):
    WORKING = "working"
    STAGED = "staged"
    COMMIT = "commit"
    RANGE = "range"


@dataclass(frozen=True)
class ScanRequest:
    """What to scan. Only the fields belonging to ``mode`` may be set."""

    mode: ScanMode = ScanMode.WORKING
    base_ref: str | None = None
    head_ref: str | None = None
    commit_sha: str | None = None
    single_file: str | None = None

    def __post_init__(self):
        mode = ScanMode(self.mode)
        object.__setattr__(self, "mode", mode)
        if mode is ScanMode.COMMIT:
            ok = bool(self.commit_sha) and not (self.base_ref or self.head_ref or self.single_file)
        elif mode is ScanMode.RANGE:
            ok = bool(self.base_ref and self.head_ref) and not (self.commit_sha or self.single_file)
        elif mode is ScanMode.STAGED:
            ok = not (self.base_ref or self.head_ref or self.commit_sha or self.single_file)
        else:
            ok = not (self.base_ref or self.head_ref or self.commit_sha)
        if not ok:
            raise InvalidScanRequest(f"Inconsistent fields for {mode.value} scan: {self!r}")

    def diff_args(self) -> list[str]:
        """Revision arguments for ``git diff`` selecting this request's changes."""
        if self.mode is ScanMode.WORKING:
            return ["HEAD"]
        if self.mode is ScanMode.STAGED:
            return ["--cached"]
        if self.mode is ScanMode.COMMIT:
            return [f"{self.commit_sha}^..{self.commit_sha}"]
        return [f"{self.base_ref}..{self.head_ref}"]

    @property
    def content_ref(self) -> str | None:
        """Revision whose blobs represent the scanned content, if not the working tree."""
        if self.mode is ScanMode.COMMIT:
            return self.commit_sha
        if self.mode is ScanMode.RANGE:
            return self.head_ref
        return None


def scan_request_from_options(
    staged: bool = False,
    commit: str | None = None,
    range_spec: str | None = None,
    file: str | None = None,
) -> ScanRequest:
    """Build a ScanRequest from command-line style options.

    Precedence: file, staged, commit, range, then the working tree.
    """
    if file:
        return ScanRequest(ScanMode.WORKING, single_file=file)
    if staged:
        return ScanRequest(ScanMode.STAGED)
    if commit:
        return ScanRequest(ScanMode.COMMIT, commit_sha=commit)
    if range_spec:
        base, sep, head = range_spec.partition("..")
        if not sep or not base or not head or head.startswith("."):
            raise InvalidScanRequest("Range must be in format: base..head")
        return ScanRequest(ScanMode.RANGE, base_ref=base, head_ref=head)
    return ScanRequest(ScanMode.WORKING)


def compute_diff_hash(diff_text: str) -> str:
    return hashlib.sha256(diff_text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class FileStat:
    path: str
    status: str  # added | modified | deleted
    additions: int
    deletions: int

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "status": self.status,
            "additions": self.additions,
            "deletions": self.deletions,
        }


@dataclass(frozen=True)
class DiffPayload:
    text: str
    hash: str
    size_bytes: int
    files: list[FileStat] = field(default_factory=list)
    unified: int = UNIFIED_CONTEXT

    def to_dict(self) -> dict:
        return {
            "format": "unified",
            "unified": self.unified,
            "text": self.text,
            "hash": self.hash,
        }


@dataclass(frozen=True)
class FileEntry:
    """Whole-file content for the legacy upload path."""

    path: str
    content: str
    sha: str | None = None

    def to_dict(self) -> dict:
        data = {"path": self.path, "content": self.content}
        if self.sha:
            data["sha"] = self.sha
        return data


def parse_numstat(output: str) -> list[FileStat]:
    """Parse ``git diff --numstat`` output into FileStats.

    Binary files report ``-`` counts, which become 0. Renames are not
    detected: a file with only additions is "added", only deletions
    "deleted", anything else "modified".
    """
    stats = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        additions = _count(parts[0])
        deletions = _count(parts[1])
        if additions > 0 and deletions == 0:
            status = "added"
        elif additions == 0 and deletions > 0:
            status = "deleted"
        else:
            status = "modified"
        stats.append(FileStat(path=parts[2], status=status, additions=additions, deletions=deletions))
    return stats


def _count(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def is_binary(content: str | bytes) -> bool:
    return ("\0" if isinstance(content, str) else b"\0") in content


class DiffExtractor:
    """Reads diffs and changed-file contents for one repository."""

    def __init__(self, repo_root: str | Path):
        self.repo_root = Path(repo_root)

    def read_diff(self, request: ScanRequest) -> str:
        """Unified diff text for the request; "" when git fails or nothing changed."""
        return run_git(["diff", *request.diff_args(), f"--unified={UNIFIED_CONTEXT}"], self.repo_root)

    def changed_paths(self, request: ScanRequest) -> list[str]:
        output = run_git(["diff", "--name-only", *request.diff_args()], self.repo_root)
        return [line for line in output.splitlines() if line]

    def extract(self, request: ScanRequest, diff_text: str | None = None) -> DiffPayload | None:
        """Build a DiffPayload, or None when there is no diff or it exceeds MAX_DIFF_BYTES.

        ``diff_text`` may be passed when the caller already read it.
        """
        text = self.read_diff(request) if diff_text is None else diff_text
        if not text:
            return None

        size = len(text.encode("utf-8"))
        if size > MAX_DIFF_BYTES:
            logger.debug("Diff is %d bytes, over the %d byte limit", size, MAX_DIFF_BYTES)
            return None

        numstat = run_git(["diff", *request.diff_args(), "--numstat"], self.repo_root)
        return DiffPayload(
            text=text,
            hash=compute_diff_hash(text),
            size_bytes=size,
            files=parse_numstat(numstat),
        )

    def collect_files(self, request: ScanRequest) -> list[FileEntry]:
        """Legacy path: whole contents of every changed, non-binary file.

        Raises PayloadTooLarge when more than MAX_LEGACY_FILES files changed
        or their contents exceed MAX_LEGACY_BYTES.
        """
        paths = self.changed_paths(request)
        if len(paths) > MAX_LEGACY_FILES:
            raise PayloadTooLarge(
                f"Too many files changed ({len(paths)}). Maximum is {MAX_LEGACY_FILES}. "
                "Narrow your changes or scan a smaller --range."
            )

        files: list[FileEntry] = []
        total = 0
        for rel_path in paths:
            content = self._read_content(rel_path, request)
            if content is None:
                continue
            total += len(content.encode("utf-8"))
            if total > MAX_LEGACY_BYTES:
                raise PayloadTooLarge(
                    "Changed files exceed the 2MB upload limit. "
                    "Narrow your changes or exclude large files."
                )
            files.append(FileEntry(path=rel_path, content=content, sha=self._blob_sha(rel_path)))
        return files

    def collect_single_file(self, rel_path: str) -> FileEntry | None:
        """Working-tree content of one file; None if missing, unreadable or binary."""
        content = self._read_working_file(rel_path)
        if content is None:
            return None
        return FileEntry(path=rel_path, content=content, sha=self._blob_sha(rel_path))

    def _read_content(self, rel_path: str, request: ScanRequest) -> str | None:
        if request.mode is ScanMode.WORKING:
            return self._read_working_file(rel_path)
        if request.mode is ScanMode.STAGED:
            revision = f":{rel_path}"
        else:
            revision = f"{request.content_ref}:{rel_path}"
        content = run_git(["show", revision], self.repo_root, strip=False)
        if not content or is_binary(content):
            return None
        return content

    def _read_working_file(self, rel_path: str) -> str | None:
        path = self.repo_root / rel_path
        if not path.is_file():
            return None
        try:
            raw = path.read_bytes()
        except OSError:
            return None
        if is_binary(raw):
            return None
        return raw.decode("utf-8", errors="replace")

    def _blob_sha(self, rel_path: str) -> str | None:
        return run_git(["hash-object", "--", rel_path], self.repo_root) or None


# --- Whole-repository collection (scan all) ---

SCANNABLE_EXTENSIONS = {
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
    ".py", ".java", ".go", ".rs", ".rb", ".php",
    ".tf", ".yaml", ".yml", ".json",
    ".cs", ".kt", ".scala", ".swift",
}

IGNORE_DIRS = {
    "node_modules", ".git", "dist", "build", "out",
    ".next", ".nuxt", "vendor", "__pycache__", ".venv",
    "target", "bin", "obj", ".terraform", ".cache",
}


def collect_all_files(repo_root: str | Path) -> list[FileEntry]:
    """Walk the repository for scannable files, bounded like the legacy path.

    Files that would push the total past MAX_LEGACY_BYTES are skipped rather
    than failing the scan.
    """
    root = Path(repo_root)
    files: list[FileEntry] = []
    total = 0

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORE_DIRS and not d.startswith("."))
        for fname in sorted(filenames):
            if len(files) >= MAX_LEGACY_FILES:
                return files
            if os.path.splitext(fname)[1].lower() not in SCANNABLE_EXTENSIONS:
                continue
            fpath = Path(dirpath) / fname
            try:
                raw = fpath.read_bytes()
            except OSError:
                continue
            if is_binary(raw):
                continue
            if total + len(raw) > MAX_LEGACY_BYTES:
                continue
            total += len(raw)
            rel = fpath.relative_to(root).as_posix()
            files.append(FileEntry(
                path=rel,
                content=raw.decode("utf-8", errors="replace"),
                sha=run_git(["hash-object", "--", rel], root) or None,
            ))
    return files


def hash_file_entries(files: list[FileEntry]) -> str:
    """Content hash for file-list scans, standing in for the diff hash."""
    digest = hashlib.sha256()
    for entry in files:
        digest.update(entry.path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(entry.content.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()
