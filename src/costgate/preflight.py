"""Preflight relevance check. No network.

Decides from changed paths alone whether anything worth analyzing changed,
so hooks can exit immediately on docs-only or lockfile-only commits.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .diff import DiffExtractor, ScanRequest

logger = logging.getLogger(__name__)

CODE = "code"
IAC = "iac"
NONE = "none"

CODE_EXTENSIONS = {
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
    ".py", ".pyw",
    ".java", ".kt", ".kts", ".scala",
    ".go",
    ".rs",
    ".rb", ".erb",
    ".php",
    ".cs", ".fs", ".vb",
    ".c", ".cpp", ".cc", ".cxx", ".h", ".hpp",
    ".swift", ".m", ".mm",
    ".lua", ".pl", ".pm", ".r",
    ".sql", ".prisma",
    ".sh", ".bash", ".zsh", ".ps1", ".psm1",
    ".ex", ".exs",
    ".hs", ".elm", ".clj", ".cljs", ".edn",
}

IAC_EXTENSIONS = {".tf", ".tfvars", ".hcl", ".bicep", ".pp", ".nix"}

IAC_FILENAMES = {
    "Dockerfile", "dockerfile",
    "docker-compose.yml", "docker-compose.yaml",
    "compose.yml", "compose.yaml",
    "serverless.yml", "serverless.yaml",
    "kustomization.yml", "kustomization.yaml",
    "helmfile.yml", "helmfile.yaml",
    "pulumi.yaml", "pulumi.yml",
    "cloudformation.json", "cloudformation.yaml", "cloudformation.yml",
    "template.json", "template.yaml",
    "cdk.json",
    "samconfig.toml",
}

# Manifests, lockfiles, linter and version-pin files: never infrastructure.
NON_IAC_FILENAMES = {
    "package.json", "package-lock.json", "yarn.lock", "pnpm-lock.yaml",
    "tsconfig.json", "jsconfig.json",
    ".eslintrc.json", ".eslintrc.yml", ".eslintrc.yaml",
    ".prettierrc", ".prettierrc.json", ".prettierrc.yml", ".prettierrc.yaml",
    "babel.config.json", "jest.config.json",
    "renovate.json", "dependabot.yml", ".editorconfig",
    "angular.json", "vite.config.json",
    ".devcontainer.json", "devcontainer.json",
    "settings.json", "launch.json", "extensions.json", "workspace.xml",
    "composer.json", "composer.lock",
    "Gemfile", "Gemfile.lock",
    "requirements.txt", "setup.py", "pyproject.toml", "poetry.lock",
    "Cargo.toml", "Cargo.lock",
    "go.mod", "go.sum",
    ".costgaterc", ".gitignore", ".dockerignore",
    ".npmrc", ".yarnrc", ".nvmrc",
    ".node-version", ".python-version", ".ruby-version", ".tool-versions",
    "mkdocs.yml", "mkdocs.yaml",
    "_config.yml", "_config.yaml",
    "codecov.yml", "codecov.yaml",
}

IAC_DATA_EXTENSIONS = {".yaml", ".yml", ".json", ".tpl"}

IAC_PATH_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"/kubernetes/", r"/k8s/", r"/helm/", r"/charts/", r"/manifests/",
        r"/deploy/", r"/infra/", r"/infrastructure/", r"/terraform/",
        r"/pulumi/", r"/cloudformation/", r"/cdk\.out/",
        r"/\.github/workflows/", r"/stacks/", r"/templates/",
    )
]

NON_IAC_PATH_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"/docs?/", r"/documentation/", r"/examples?/", r"/samples?/",
        r"/\.vscode/", r"/\.idea/", r"/\.git/", r"/node_modules/",
        r"/vendor/", r"/test/", r"/tests/", r"/__tests__/", r"/spec/",
        r"/fixtures?/",
    )
]


@dataclass
class PreflightResult:
    """Outcome of classifying a set of changed paths."""

    has_relevant_changes: bool
    code_files: list[str] = field(default_factory=list)
    iac_files: list[str] = field(default_factory=list)
    total_files: list[str] = field(default_factory=list)
    reason: str | None = None


def _first_match(patterns: list[re.Pattern], rel_path: str) -> int | None:
    normalized = "/" + rel_path
    positions = [m.start() for m in (p.search(normalized) for p in patterns) if m]
    return min(positions) if positions else None


def is_iac_by_path(rel_path: str) -> bool:
    return _first_match(IAC_PATH_PATTERNS, rel_path) is not None


def is_excluded_path(rel_path: str) -> bool:
    """True when an excluded directory (docs, tests, vendor...) encloses the path.

    If an infrastructure directory also matches, the outermost one decides:
    ``docs/k8s/x.yaml`` is excluded, ``k8s/tests/x.yaml`` is not.
    """
    excluded = _first_match(NON_IAC_PATH_PATTERNS, rel_path)
    if excluded is None:
        return False
    infra = _first_match(IAC_PATH_PATTERNS, rel_path)
    return infra is None or excluded < infra


def classify_path(rel_path: str) -> str:
    """Classify one repo-relative path as "code", "iac" or "none".

    Rules apply in a fixed order and the first match wins: excluded
    directories, non-infra filenames, infra filenames, infra extensions,
    data files under infra directories, code extensions.
    """
    filename = os.path.basename(rel_path)
    ext = os.path.splitext(filename)[1].lower()

    if is_excluded_path(rel_path):
        return CODE if ext in CODE_EXTENSIONS else NONE

    if filename in NON_IAC_FILENAMES:
        return NONE

    if filename in IAC_FILENAMES:
        return IAC

    if ext in IAC_EXTENSIONS or filename.lower().endswith(".tf.json"):
        return IAC

    if is_iac_by_path(rel_path) and ext in IAC_DATA_EXTENSIONS:
        return IAC

    if ext in CODE_EXTENSIONS:
        return CODE

    return NONE


def classify(paths: list[str]) -> PreflightResult:
    if not paths:
        return PreflightResult(has_relevant_changes=False, reason="No files changed")

    code_files = []
    iac_files = []
    for rel_path in paths:
        kind = classify_path(rel_path)
        if kind == CODE:
            code_files.append(rel_path)
        elif kind == IAC:
            iac_files.append(rel_path)

    relevant = bool(code_files or iac_files)
    return PreflightResult(
        has_relevant_changes=relevant,
        code_files=code_files,
        iac_files=iac_files,
        total_files=list(paths),
        reason=None if relevant else "No relevant code/IaC changes detected",
    )


def run_preflight(repo_root: str | Path, request: ScanRequest) -> PreflightResult:
    """Classify the paths a request touches. Git failures read as "no files changed"."""
    paths = DiffExtractor(repo_root).changed_paths(request)
    result = classify(paths)
    logger.debug(
        "Preflight: %d changed, %d code, %d iac",
        len(result.total_files), len(result.code_files), len(result.iac_files),
    )
    return result
