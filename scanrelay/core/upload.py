"""Delivery of normalized reports to the ingestion API.

One uploader serves every report kind. What differs per kind (URL template,
JSON body vs multipart file, payload field names) lives in ``ENDPOINTS`` and
``PAYLOAD_BUILDERS``.
"""

from __future__ import annotations

import json
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional
from urllib.parse import quote

import requests

from scanrelay.core.config import ApiCredentials, Settings
from scanrelay.core.errors import ConfigurationError, MissingCredentialsError, UploadError
from scanrelay.core.models import ScanReport, ToolKind, UploadResult

logger = logging.getLogger(__name__)

RETRY_STATUSES = {502, 503, 504}


class UploadMode(str, Enum):
    JSON = "json"
    MULTIPART = "multipart"


class EndpointSpec(NamedTuple):
    path_template: str
    mode: UploadMode
    file_field: str


ENDPOINTS: Dict[ToolKind, EndpointSpec] = {
    ToolKind.SBOM: EndpointSpec("{base}/{workspace}/{project}/update-sbom", UploadMode.MULTIPART, "sbomFile"),
    ToolKind.CONFIG: EndpointSpec("{base}/update-configs/{project}", UploadMode.JSON, "configFile"),
    ToolKind.SECRET: EndpointSpec("{base}/update-secrets/{project}", UploadMode.JSON, "secretsFile"),
}


def resolve_endpoint(kind: ToolKind, settings: Settings) -> str:
    route = ENDPOINTS[kind]
    if not settings.api_base_url:
        raise ConfigurationError("API_URL_BASE is not configured")
    if "{workspace}" in route.path_template and not settings.workspace_id:
        raise ConfigurationError(f"WORKSPACE_ID is required to upload {kind.value} reports")
    if "{project}" in route.path_template and not settings.project_id:
        raise ConfigurationError(f"PROJECT_ID is required to upload {kind.value} reports")
    return route.path_template.format(
        base=settings.api_base_url.rstrip("/"),
        workspace=quote(settings.workspace_id or "", safe=""),
        project=quote(settings.project_id or "", safe=""),
    )


def config_payload(report: ScanReport) -> Dict[str, Any]:
    """Trivy-shaped body: every scanned target, with its misconfigurations grouped back under it."""
    results: Dict[tuple, Dict[str, Any]] = {}

    def entry_for(key: tuple) -> Dict[str, Any]:
        return results.setdefault(key, {
            "Target": key[0],
            "Class": key[1],
            "Type": key[2],
            "Misconfigurations": [],
        })

    for scanned in report.summary.get("results", []):
        entry_for((scanned.get("target", ""), scanned.get("class", ""), scanned.get("type", "")))

    for f in report.findings:
        meta = f.metadata
        entry = entry_for((meta.get("target", f.location.file), meta.get("class", ""), meta.get("type", "")))
        entry["Misconfigurations"].append({
            "ID": f.id,
            "Title": f.title,
            "Description": f.description,
            "Severity": f.severity.value,
            "PrimaryURL": f.reference_url or "",
            "Query": meta.get("query", ""),
        })
    return {
        "ArtifactName": report.artifact_name,
        "ArtifactType": report.artifact_type,
        "Results": list(results.values()),
    }


def secret_payload(report: ScanReport) -> Dict[str, Any]:
    findings: List[Dict[str, Any]] = []
    for f in report.findings:
        loc = f.location
        findings.append({
            "RuleID": f.metadata.get("rule_id", f.id),
            "Description": f.description,
            "Match": f.match,
            "File": loc.file,
            "StartLine": loc.start_line,
            "EndLine": loc.end_line,
            "StartColumn": loc.start_column,
            "EndColumn": loc.end_column,
            "Severity": f.severity.value,
        })
    return {
        "ArtifactName": report.artifact_name,
        "ArtifactType": report.artifact_type,
        "Findings": findings,
    }


def sbom_payload(report: ScanReport) -> Dict[str, Any]:
    if report.raw_document is not None:
        return json.loads(report.raw_document)
    return report.model_dump(mode="json")


PAYLOAD_BUILDERS: Dict[ToolKind, Callable[[ScanReport], Dict[str, Any]]] = {
    ToolKind.SBOM: sbom_payload,
    ToolKind.CONFIG: config_payload,
    ToolKind.SECRET: secret_payload,
}


class ApiUploader:
    """Send reports with the API-key header triple.

    Non-2xx responses come back as ``UploadResult(success=False)`` carrying
    the body. Connection errors, timeouts and 502/503/504 are retried
    ``retries`` times with exponential backoff; 4xx is never retried.
    """

    def __init__(
        self,
        timeout: float = 90.0,
        retries: int = 0,
        backoff: float = 1.0,
        display_name: str = "sbom",
        branch_name: str = "main",
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.display_name = display_name
        self.branch_name = branch_name
        # Without a session every request is a standalone requests.post call
        self.session = session
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, session: Optional[requests.Session] = None) -> "ApiUploader":
        return cls(
            timeout=settings.upload_timeout,
            retries=settings.upload_retries,
            backoff=settings.upload_backoff,
            display_name=settings.display_name,
            branch_name=settings.branch_name,
            session=session,
        )

    def upload(
        self,
        endpoint: str,
        report: ScanReport,
        credentials: ApiCredentials,
        mode: Optional[UploadMode] = None,
    ) -> UploadResult:
        missing = credentials.missing()
        if missing:
            raise MissingCredentialsError(missing)

        mode = mode or ENDPOINTS[report.kind].mode
        attempts = max(self.retries, 0) + 1
        for attempt in range(attempts):
            last_attempt = attempt + 1 == attempts
            try:
                response = self._send(endpoint, report, credentials, mode)
            except (requests.ConnectionError, requests.Timeout) as exc:
                if last_attempt:
                    raise UploadError(f"Upload to {endpoint} failed after {attempts} attempt(s): {exc}") from exc
                self._wait(attempt, f"network error: {exc}")
                continue
            except requests.RequestException as exc:
                raise UploadError(f"Upload to {endpoint} failed: {exc}") from exc

            if response.status_code in RETRY_STATUSES and not last_attempt:
                self._wait(attempt, f"HTTP {response.status_code}")
                continue

            success = 200 <= response.status_code < 300
            if success:
                logger.info("Uploaded %s report to %s (HTTP %d)", report.kind.value, endpoint, response.status_code)
            else:
                logger.error(
                    "Upload of %s report to %s failed: HTTP %d %s",
                    report.kind.value, endpoint, response.status_code, response.text,
                )
            return UploadResult(
                status=response.status_code,
                body=response.text,
                success=success,
                attempts=attempt + 1,
            )

    def _wait(self, attempt: int, reason: str) -> None:
        delay = self.backoff * (2 ** attempt)
        logger.warning("Upload attempt %d failed (%s), retrying in %.1fs", attempt + 1, reason, delay)
        self._sleep(delay)

    def _send(
        self,
        endpoint: str,
        report: ScanReport,
        credentials: ApiCredentials,
        mode: UploadMode,
    ) -> requests.Response:
        http = self.session if self.session is not None else requests
        headers = credentials.headers()
        if mode is UploadMode.MULTIPART:
            route = ENDPOINTS[report.kind]
            if report.kind is ToolKind.SBOM and report.raw_document is not None:
                content = report.raw_document
            else:
                content = json.dumps(PAYLOAD_BUILDERS[report.kind](report)).encode("utf-8")
            filename = f"{report.kind.value}.json"
            return http.post(
                endpoint,
                headers=headers,
                files={route.file_field: (filename, content, "application/json")},
                data={"displayName": self.display_name, "branchName": self.branch_name},
                timeout=self.timeout,
            )
        return http.post(
            endpoint,
            headers=headers,
            json=PAYLOAD_BUILDERS[report.kind](report),
            timeout=self.timeout,
        )
