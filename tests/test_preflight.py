"""Tests for the preflight relevance classifier."""

import pytest

from costgate.diff import ScanMode, ScanRequest
from costgate.preflight import CODE, IAC, NONE, classify, classify_path, is_excluded_path, run_preflight


class TestClassifyPath:
    @pytest.mark.parametrize(
        "path, expected",
        [
            ("src/handlers/orders.py", CODE),
            ("web/app.tsx", CODE),
            ("README.md", NONE),
            ("main.tf", IAC),
            ("modules/vpc/variables.tfvars", IAC),
            ("stack.tf.json", IAC),
            ("Dockerfile", IAC),
            ("services/api/docker-compose.yml", IAC),
            ("k8s/deployment.yaml", IAC),
            ("deploy/values.json", IAC),
            (".github/workflows/ci.yml", IAC),
            ("charts/api/templates/service.tpl", IAC),
            ("config/settings.yaml", NONE),
        ],
    )
    def test_classification(self, path, expected):
        assert classify_path(path) == expected

    def test_docs_exclusion_beats_infra_directory(self):
        assert classify_path("docs/k8s/deployment.yaml") == NONE

    def test_infra_directory_encloses_tests(self):
        assert classify_path("k8s/tests/deployment.yaml") == IAC

    def test_code_inside_excluded_directory_is_still_code(self):
        assert classify_path("tests/test_orders.py") == CODE
        assert classify_path("docs/conf.py") == CODE

    def test_dockerfile_in_examples_is_ignored(self):
        assert classify_path("examples/Dockerfile") == NONE

    @pytest.mark.parametrize("path", ["package-lock.json", "infra/package-lock.json", "k8s/package.json"])
    def test_manifests_are_never_relevant(self, path):
        assert classify_path(path) == NONE

    def test_patterns_are_case_insensitive(self):
        assert classify_path("Docs/K8S/deployment.yaml") == NONE
        assert classify_path("Terraform/vars.json") == IAC

    def test_excluded_path_needs_directory_boundary(self):
        assert not is_excluded_path("latest/app.py")
        assert not is_excluded_path("doctor.py")
        assert is_excluded_path("doc/app.py")


class TestClassify:
    def test_empty(self):
        result = classify([])
        assert result.has_relevant_changes is False
        assert result.reason == "No files changed"

    def test_docs_only(self):
        result = classify(["README.md", "docs/guide.md", "yarn.lock"])
        assert result.has_relevant_changes is False
        assert result.reason == "No relevant code/IaC changes detected"
        assert result.total_files == ["README.md", "docs/guide.md", "yarn.lock"]

    def test_mixed(self):
        result = classify(["app.py", "main.tf", "CHANGELOG.md"])
        assert result.has_relevant_changes is True
        assert result.code_files == ["app.py"]
        assert result.iac_files == ["main.tf"]
        assert result.reason is None


class TestRunPreflight:
    def test_lockfile_only_commit(self, git_repo, commit):
        sha = commit({"package-lock.json": "{}\n"})
        result = run_preflight(git_repo, ScanRequest(ScanMode.COMMIT, commit_sha=sha))
        assert result.has_relevant_changes is False

    def test_working_tree_change(self, git_repo, commit):
        commit({"app.py": "x = 1\n"})
        (git_repo / "app.py").write_text("x = 2\n")
        result = run_preflight(git_repo, ScanRequest())
        assert result.code_files == ["app.py"]

    def test_git_failure_reads_as_no_files(self, git_repo):
        request = ScanRequest(ScanMode.RANGE, base_ref="no-such-ref", head_ref="HEAD")
        result = run_preflight(git_repo, request)
        assert result.has_relevant_changes is False
        assert result.reason == "No files changed"
