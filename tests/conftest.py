"""Shared fixtures: throwaway git repositories isolated from the user's config."""

import subprocess

import pytest


def git(repo, *args):
    result = subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, text=True,
    )
    return result.stdout.strip()


@pytest.fixture
def isolated_git(tmp_path, monkeypatch):
    """Keep git from reading global config or walking above tmp_path."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    for var in ("GIT_DIR", "GIT_WORK_TREE", "GIT_INDEX_FILE", "COSTGATE_TOKEN", "COSTGATE_HOME"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


def init_repo(path, remote="git@github.com:acme/shop.git", commit=True):
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(path, "config", "user.name", "Test User")
    git(path, "config", "user.email", "test@example.com")
    git(path, "config", "commit.gpgsign", "false")
    if remote:
        git(path, "remote", "add", "origin", remote)
    if commit:
        (path / "README.md").write_text("# shop\n")
        git(path, "add", "-A")
        git(path, "commit", "-q", "-m", "initial")
    return path


@pytest.fixture
def git_repo(isolated_git):
    """A repo on branch main with an origin remote and one commit."""
    return init_repo(isolated_git / "repo")


@pytest.fixture
def commit(git_repo):
    """Write files, commit them, and return the new HEAD sha."""

    def _commit(files, message="change"):
        for rel, content in files.items():
            path = git_repo / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        git(git_repo, "add", "-A")
        git(git_repo, "commit", "-q", "-m", message)
        return git(git_repo, "rev-parse", "HEAD")

    return _commit
