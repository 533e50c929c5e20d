import subprocess

import pytest

from scanrelay.core import config
from scanrelay.core.config import Settings, detect_branch, parse_kinds
from scanrelay.core.errors import ConfigurationError, ProcessError
from scanrelay.core.models import Severity, ToolKind


def _env(tmp_path, **extra):
    env = {
        "GITHUB_WORKSPACE": str(tmp_path),
        "GITHUB_REPOSITORY": "acme/widgets",
        "GITHUB_REF_NAME": "release/1.2",
        "WORKSPACE_ID": "ws-9",
        "PROJECT_ID": "proj-9",
        "API_URL_BASE": "https://api.test/project",
        "X_API_KEY": "k",
        "X_SECRET_KEY": "s",
        "X_TENANT_KEY": "t",
    }
    env.update(extra)
    return env


def test_from_env_reads_github_context(tmp_path):
    settings = Settings.from_env(_env(tmp_path))

    assert settings.scan_root == str(tmp_path.resolve())
    assert settings.repo_name == "widgets"
    assert settings.branch_name == "release/1.2"
    assert settings.workspace_id == "ws-9"
    assert settings.credentials.headers() == {"x-api-key": "k", "x-secret-key": "s", "x-tenant-key": "t"}
    assert settings.credentials.missing() == []
    assert settings.kinds == [ToolKind.SBOM, ToolKind.SECRET, ToolKind.CONFIG]
    assert settings.display_name == "sbom"
    assert settings.fail_on is Severity.CRITICAL
    assert settings.debug is False


def test_credentials_are_not_in_repr(tmp_path):
    settings = Settings.from_env(_env(tmp_path, X_SECRET_KEY="very-secret-value"))
    assert "very-secret-value" not in repr(settings)


def test_missing_credentials_are_reported(tmp_path):
    env = _env(tmp_path)
    del env["X_API_KEY"]
    env["X_TENANT_KEY"] = ""

    settings = Settings.from_env(env)

    assert settings.credentials.missing() == ["api_key", "tenant_key"]


def test_optional_values(tmp_path):
    env = _env(
        tmp_path,
        DEBUG_MODE="true",
        SCAN_KINDS="secret, config,secret",
        SCAN_TIMEOUT="120",
        UPLOAD_RETRIES="3",
        SCAN_PARALLEL="1",
        FAIL_ON_SEVERITY="high",
        SCANRELAY_EXCLUDE_PATHS="third_party/",
        SCANRELAY_EXCLUDE_FILES="*.lock",
    )

    settings = Settings.from_env(env)

    assert settings.debug is True
    assert settings.kinds == [ToolKind.SECRET, ToolKind.CONFIG]
    assert settings.scan_timeout == 120
    assert settings.upload_retries == 3
    assert settings.parallel is True
    assert settings.fail_on is Severity.HIGH
    assert settings.filter_rules.excluded_path_substrings == ["third_party/"]
    assert settings.filter_rules.excluded_file_patterns == ["*.lock"]


def test_overrides_win_over_environment(tmp_path):
    other = tmp_path / "other"
    other.mkdir()

    settings = Settings.from_env(_env(tmp_path), scan_root=str(other), kinds="sbom", parallel=None)

    assert settings.scan_root == str(other)
    assert settings.kinds == [ToolKind.SBOM]
    assert settings.parallel is False


def test_branch_falls_back_to_git(tmp_path, monkeypatch):
    env = _env(tmp_path)
    del env["GITHUB_REF_NAME"]
    monkeypatch.setattr(config, "detect_branch", lambda cwd: "topic")

    assert Settings.from_env(env).branch_name == "topic"


@pytest.mark.parametrize(
    "extra",
    [
        {"SCAN_KINDS": "sbom,dast"},
        {"FAIL_ON_SEVERITY": "severe"},
        {"SCAN_TIMEOUT": "soon"},
        {"UPLOAD_RETRIES": "-1"},
        {"SCANRELAY_PLACEHOLDER_PATTERN": "[oops"},
    ],
)
def test_invalid_values_raise_configuration_error(tmp_path, extra):
    with pytest.raises(ConfigurationError):
        Settings.from_env(_env(tmp_path, **extra))


def test_parse_kinds():
    assert parse_kinds("CONFIG,,sbom") == [ToolKind.CONFIG, ToolKind.SBOM]
    with pytest.raises(ConfigurationError) as excinfo:
        parse_kinds("sast")
    assert "sast" in str(excinfo.value)


class TestDetectBranch:
    def _fake(self, monkeypatch, returncode=0, stdout="", exc=None):
        def fake_run_cmd(cmd, timeout=600, cwd=None, **kwargs):
            if exc is not None:
                raise exc
            return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")

        monkeypatch.setattr(config, "run_cmd", fake_run_cmd)

    def test_current_branch(self, monkeypatch, tmp_path):
        self._fake(monkeypatch, stdout="feature/login\n")
        assert detect_branch(str(tmp_path)) == "feature/login"

    def test_detached_head(self, monkeypatch, tmp_path):
        self._fake(monkeypatch, stdout="HEAD\n")
        assert detect_branch(str(tmp_path)) == "main"

    def test_not_a_repository(self, monkeypatch, tmp_path):
        self._fake(monkeypatch, returncode=128)
        assert detect_branch(str(tmp_path)) == "main"

    def test_git_missing(self, monkeypatch, tmp_path):
        self._fake(monkeypatch, exc=ProcessError("Command not found: git"))
        assert detect_branch(str(tmp_path)) == "main"
