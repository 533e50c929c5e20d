"""Shared fixtures: canned scanner output, a fake runner and a fake HTTP session."""

import subprocess
from pathlib import Path

import pytest

from scanrelay.core.config import ApiCredentials, Settings
from scanrelay.core.errors import ProcessError

FIXTURES = Path(__file__).parent / "fixtures"


def fixture_bytes(name: str) -> bytes:
    return (FIXTURES / name).read_bytes()


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = '{"ok": true}'):
        self.status_code = status_code
        self.text = text


class FakeSession:
    """Records every POST; replays queued responses or exceptions in order."""

    def __init__(self, responses=None):
        self.calls = []
        self.responses = list(responses or [])

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        item = self.responses.pop(0) if self.responses else FakeResponse()
        if isinstance(item, Exception):
            raise item
        return item


def report_output_path(cmd):
    for i, arg in enumerate(cmd):
        if arg.startswith("--report-path="):
            return arg.split("=", 1)[1]
        if arg in ("-o", "--output"):
            return cmd[i + 1]
    raise AssertionError(f"no output path in {cmd}")


class FakeRunner:
    """Stands in for run_cmd, writing a canned report where each scanner would."""

    def __init__(self, reports=None, exit_codes=None, missing=()):
        self.reports = reports or {}
        self.exit_codes = exit_codes or {}
        self.missing = set(missing)
        self.calls = []
        self.log_files = []
        self.written = []

    def __call__(self, cmd, timeout=600, cwd=None, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        self.log_files.append(kwargs.get("log_file"))
        binary = cmd[0]
        if binary in self.missing:
            raise ProcessError(f"Command not found: {binary}")
        content = self.reports.get(binary)
        if content is not None:
            path = Path(report_output_path(cmd))
            path.write_bytes(content)
            self.written.append(path)
        return subprocess.CompletedProcess(cmd, self.exit_codes.get(binary, 0), stdout="", stderr="")


@pytest.fixture
def fixtures_dir():
    return FIXTURES


@pytest.fixture
def scan_root(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def make_settings(tmp_path, scan_root):
    def _make(**overrides):
        data = dict(
            scan_root=str(scan_root),
            workspace_id="ws-1",
            project_id="proj-1",
            api_base_url="https://ingest.example.test/project",
            credentials=ApiCredentials(api_key="key", secret_key="secret", tenant_key="tenant"),
            branch_name="main",
            report_dir=str(tmp_path / "reports"),
        )
        data.update(overrides)
        return Settings(**data)

    return _make


@pytest.fixture
def all_reports():
    return {
        "cdxgen": fixture_bytes("cdxgen_sbom.json"),
        "gitleaks": fixture_bytes("gitleaks_report.json"),
        "trivy": fixture_bytes("trivy_config_report.json"),
    }
