import json

import pytest
import requests

from conftest import FakeResponse, FakeSession, fixture_bytes

from scanrelay.core import normalize
from scanrelay.core.config import ApiCredentials
from scanrelay.core.errors import ConfigurationError, MissingCredentialsError, UploadError
from scanrelay.core.filters import FilterRules, filter_report
from scanrelay.core.models import ToolKind
from scanrelay.core.upload import ApiUploader, UploadMode, config_payload, resolve_endpoint, secret_payload

ENDPOINT = "https://ingest.example.test/project/update-configs/proj-1"
CREDS = ApiCredentials(api_key="key", secret_key="secret", tenant_key="tenant")


@pytest.fixture
def config_report():
    return normalize.parse_bytes(fixture_bytes("trivy_config_report.json"), ToolKind.CONFIG)


@pytest.fixture
def sbom_report():
    return normalize.parse_bytes(fixture_bytes("cdxgen_sbom.json"), ToolKind.SBOM)


def _uploader(session, **kwargs):
    sleeps = []
    uploader = ApiUploader(session=session, sleep=sleeps.append, **kwargs)
    return uploader, sleeps


@pytest.mark.parametrize("missing", ["api_key", "secret_key", "tenant_key"])
def test_missing_credential_blocks_request(config_report, missing):
    session = FakeSession()
    uploader, _ = _uploader(session)
    creds = CREDS.model_copy(update={missing: None})

    with pytest.raises(MissingCredentialsError) as excinfo:
        uploader.upload(ENDPOINT, config_report, creds)

    assert excinfo.value.missing == [missing]
    assert session.calls == []


def test_empty_string_credential_counts_as_missing(config_report):
    session = FakeSession()
    uploader, _ = _uploader(session)

    with pytest.raises(MissingCredentialsError):
        uploader.upload(ENDPOINT, config_report, CREDS.model_copy(update={"tenant_key": ""}))
    assert session.calls == []


def test_json_upload_success(config_report):
    session = FakeSession([FakeResponse(201, "created")])
    uploader, _ = _uploader(session, timeout=30)

    result = uploader.upload(ENDPOINT, config_report, CREDS)

    assert result.success is True
    assert (result.status, result.body, result.attempts) == (201, "created", 1)
    url, kwargs = session.calls[0]
    assert url == ENDPOINT
    assert kwargs["timeout"] == 30
    assert kwargs["headers"]["x-tenant-key"] == "tenant"
    assert kwargs["json"] == config_payload(config_report)


def test_non_2xx_is_returned_not_raised(config_report):
    session = FakeSession([FakeResponse(500, "internal error")])
    uploader, _ = _uploader(session, retries=0)

    result = uploader.upload(ENDPOINT, config_report, CREDS)

    assert result.success is False
    assert result.status == 500
    assert result.body == "internal error"


def test_multipart_sbom_carries_file_and_form_fields(sbom_report):
    session = FakeSession()
    uploader, _ = _uploader(session, display_name="web", branch_name="develop")

    uploader.upload("https://x.test/ws/proj/update-sbom", sbom_report, CREDS)

    _, kwargs = session.calls[0]
    assert "json" not in kwargs
    assert kwargs["files"]["sbomFile"][1] == fixture_bytes("cdxgen_sbom.json")
    assert kwargs["data"] == {"displayName": "web", "branchName": "develop"}


def test_mode_override_sends_config_as_multipart(config_report):
    session = FakeSession()
    uploader, _ = _uploader(session)

    uploader.upload(ENDPOINT, config_report, CREDS, mode=UploadMode.MULTIPART)

    _, kwargs = session.calls[0]
    assert "configFile" in kwargs["files"]


def test_connection_error_is_retried_with_backoff(config_report):
    session = FakeSession([requests.ConnectionError("reset"), requests.Timeout("slow"), FakeResponse(200)])
    uploader, sleeps = _uploader(session, retries=2, backoff=0.5)

    result = uploader.upload(ENDPOINT, config_report, CREDS)

    assert result.success is True
    assert result.attempts == 3
    assert sleeps == [0.5, 1.0]


def test_network_errors_exhaust_retries(config_report):
    session = FakeSession([requests.ConnectionError("down"), requests.ConnectionError("down")])
    uploader, _ = _uploader(session, retries=1)

    with pytest.raises(UploadError):
        uploader.upload(ENDPOINT, config_report, CREDS)
    assert len(session.calls) == 2


def test_client_errors_are_not_retried(config_report):
    session = FakeSession([FakeResponse(400, "bad request"), FakeResponse(200)])
    uploader, sleeps = _uploader(session, retries=3)

    result = uploader.upload(ENDPOINT, config_report, CREDS)

    assert result.status == 400
    assert len(session.calls) == 1
    assert sleeps == []


def test_gateway_errors_are_retried(config_report):
    session = FakeSession([FakeResponse(503, "unavailable"), FakeResponse(200, "ok")])
    uploader, _ = _uploader(session, retries=1)

    result = uploader.upload(ENDPOINT, config_report, CREDS)

    assert result.success is True
    assert len(session.calls) == 2


def test_gateway_error_on_last_attempt_is_returned(config_report):
    session = FakeSession([FakeResponse(503, "unavailable")])
    uploader, _ = _uploader(session)

    result = uploader.upload(ENDPOINT, config_report, CREDS)

    assert (result.status, result.success) == (503, False)


def test_without_session_each_request_is_standalone(config_report, monkeypatch):
    from scanrelay.core import upload

    fake = FakeSession([FakeResponse(200, "ok"), FakeResponse(200, "ok")])
    monkeypatch.setattr(upload.requests, "post", fake.post)
    uploader = ApiUploader()

    assert uploader.upload(ENDPOINT, config_report, CREDS).success
    assert uploader.upload(ENDPOINT, config_report, CREDS).success
    assert len(fake.calls) == 2


def test_config_payload_keeps_clean_targets():
    doc = {
        "ArtifactName": "app",
        "ArtifactType": "filesystem",
        "Results": [
            {"Target": "Dockerfile", "Class": "config", "Type": "dockerfile", "Misconfigurations": None},
            {"Target": "k8s/a.yaml", "Class": "config", "Type": "kubernetes", "Misconfigurations": []},
        ],
    }
    report = normalize.parse_bytes(json.dumps(doc).encode(), ToolKind.CONFIG)

    payload = config_payload(report)

    assert [r["Target"] for r in payload["Results"]] == ["Dockerfile", "k8s/a.yaml"]
    assert payload["Results"][1]["Type"] == "kubernetes"
    assert all(r["Misconfigurations"] == [] for r in payload["Results"])


def test_config_payload_keeps_targets_of_filtered_findings(config_report):
    rules = FilterRules(excluded_path_substrings=["k8s/"])

    payload = config_payload(filter_report(config_report, rules))

    by_target = {r["Target"]: r["Misconfigurations"] for r in payload["Results"]}
    assert by_target["k8s/deployment.yaml"] == []
    assert [m["ID"] for m in by_target["Dockerfile"]] == ["DS002", "DS026"]


def test_secret_payload_shape():
    report = normalize.parse_bytes(fixture_bytes("gitleaks_report.json"), ToolKind.SECRET, scan_root="/src/demo")

    payload = secret_payload(report)

    assert payload["ArtifactName"] == "demo"
    assert payload["ArtifactType"] == "filesystem"
    first = payload["Findings"][0]
    assert first["RuleID"] == "aws-secret-access-key"
    assert first["StartColumn"] == 12
    assert first["Severity"] == "UNKNOWN"


class TestResolveEndpoint:
    def test_templates(self, make_settings):
        settings = make_settings(api_base_url="https://api.test/base/")
        assert resolve_endpoint(ToolKind.SBOM, settings) == "https://api.test/base/ws-1/proj-1/update-sbom"
        assert resolve_endpoint(ToolKind.CONFIG, settings) == "https://api.test/base/update-configs/proj-1"
        assert resolve_endpoint(ToolKind.SECRET, settings) == "https://api.test/base/update-secrets/proj-1"

    def test_identifiers_are_quoted(self, make_settings):
        settings = make_settings(project_id="a/b c")
        assert resolve_endpoint(ToolKind.CONFIG, settings).endswith("/update-configs/a%2Fb%20c")

    @pytest.mark.parametrize(
        "override,kind",
        [
            ({"api_base_url": None}, ToolKind.CONFIG),
            ({"workspace_id": None}, ToolKind.SBOM),
            ({"project_id": None}, ToolKind.SECRET),
        ],
    )
    def test_missing_pieces(self, make_settings, override, kind):
        with pytest.raises(ConfigurationError):
            resolve_endpoint(kind, make_settings(**override))
