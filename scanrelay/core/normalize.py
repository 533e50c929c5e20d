"""Turn tool-specific JSON reports into ``ScanReport`` objects.

Every tool gets a small set of pydantic models describing the fields we use.
Validation happens once, here; missing or null optional fields take their
defaults, so code downstream never re-checks optionality. A report that is
not JSON raises ``MalformedReportError``; JSON of the wrong overall shape
raises ``SchemaMismatchError``.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from scanrelay.core.errors import MalformedReportError, SchemaMismatchError
from scanrelay.core.models import SEVERITY_ORDER, Finding, ScanReport, Severity, SourceLocation, ToolKind
from scanrelay.reporting.sbom import create_sbom_summary

logger = logging.getLogger(__name__)

UNKNOWN_ARTIFACT = "unknown-artifact"


class _RawModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # Tools emit null for absent values; let the field defaults apply.
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


# --- gitleaks -------------------------------------------------------------

class GitleaksLeak(_RawModel):
    rule_id: str = Field("", alias="RuleID")
    description: str = Field("", alias="Description")
    match: str = Field("", alias="Match")
    secret: str = Field("", alias="Secret")
    file: str = Field("", alias="File")
    start_line: int = Field(0, alias="StartLine")
    end_line: int = Field(0, alias="EndLine")
    start_column: int = Field(0, alias="StartColumn")
    end_column: int = Field(0, alias="EndColumn")
    commit: str = Field("", alias="Commit")
    fingerprint: str = Field("", alias="Fingerprint")
    tags: List[str] = Field(default_factory=list, alias="Tags")
    severity: str = Field("", alias="Severity")


# --- trivy config -----------------------------------------------------------

class TrivyCauseMetadata(_RawModel):
    resource: str = Field("", alias="Resource")
    start_line: int = Field(0, alias="StartLine")
    end_line: int = Field(0, alias="EndLine")


class TrivyMisconfiguration(_RawModel):
    id: str = Field("", alias="ID")
    avd_id: str = Field("", alias="AVDID")
    title: str = Field("", alias="Title")
    description: str = Field("", alias="Description")
    message: str = Field("", alias="Message")
    resolution: str = Field("", alias="Resolution")
    severity: str = Field("", alias="Severity")
    primary_url: str = Field("", alias="PrimaryURL")
    query: str = Field("", alias="Query")
    status: str = Field("", alias="Status")
    cause: TrivyCauseMetadata = Field(default_factory=TrivyCauseMetadata, alias="CauseMetadata")


class TrivyResult(_RawModel):
    target: str = Field("", alias="Target")
    class_: str = Field("", alias="Class")
    type: str = Field("", alias="Type")
    misconfigurations: List[TrivyMisconfiguration] = Field(default_factory=list, alias="Misconfigurations")


class TrivyReport(_RawModel):
    artifact_name: str = Field(UNKNOWN_ARTIFACT, alias="ArtifactName")
    artifact_type: str = Field("config", alias="ArtifactType")
    results: List[TrivyResult] = Field(default_factory=list, alias="Results")


# --- CycloneDX (cdxgen) -----------------------------------------------------

class CdxRating(_RawModel):
    severity: str = ""
    score: Optional[float] = None
    method: str = ""


class CdxSource(_RawModel):
    name: str = ""
    url: str = ""


class CdxAffect(_RawModel):
    ref: str = ""


class CdxVulnerability(_RawModel):
    id: str = ""
    description: str = ""
    detail: str = ""
    recommendation: str = ""
    ratings: List[CdxRating] = Field(default_factory=list)
    source: CdxSource = Field(default_factory=CdxSource)
    affects: List[CdxAffect] = Field(default_factory=list)


class CdxComponent(_RawModel):
    name: str = ""
    type: str = ""
    version: str = ""


class CdxMetadata(_RawModel):
    component: CdxComponent = Field(default_factory=CdxComponent)


class CycloneDxBom(_RawModel):
    bom_format: str = Field("", alias="bomFormat")
    spec_version: str = Field("", alias="specVersion")
    metadata: CdxMetadata = Field(default_factory=CdxMetadata)
    vulnerabilities: List[CdxVulnerability] = Field(default_factory=list)


# --- helpers ----------------------------------------------------------------

def relative_path(path: str, scan_root: Optional[str]) -> str:
    """Express ``path`` relative to the scan root, using forward slashes."""
    if not path:
        return ""
    if scan_root and os.path.isabs(path):
        root = os.path.abspath(scan_root)
        absolute = os.path.abspath(path)
        if absolute == root or absolute.startswith(root.rstrip(os.sep) + os.sep):
            path = os.path.relpath(absolute, root)
        else:
            logger.debug("Path %s lies outside scan root %s", path, scan_root)
    return path.replace("\\", "/")


def _highest(severities: List[str]) -> Severity:
    parsed = [Severity.parse(s) for s in severities]
    if not parsed:
        return Severity.UNKNOWN
    return min(parsed, key=lambda s: SEVERITY_ORDER[s])


def _schema_error(kind: ToolKind, exc: ValidationError) -> SchemaMismatchError:
    return SchemaMismatchError(f"Unexpected {kind.value} report structure: {exc}")


# --- per-tool normalizers ---------------------------------------------------

def normalize_secrets(document: Any, raw: bytes, scan_root: Optional[str] = None) -> ScanReport:
    if document is None:
        document = []
    if not isinstance(document, list):
        raise SchemaMismatchError("Secret report must be a JSON array of findings")
    try:
        leaks = [GitleaksLeak.model_validate(item) for item in document]
    except ValidationError as exc:
        raise _schema_error(ToolKind.SECRET, exc) from exc

    findings = [
        Finding(
            id=leak.rule_id or "unknown-rule",
            title=leak.description or leak.rule_id,
            description=leak.description,
            severity=leak.severity,
            location=SourceLocation(
                file=relative_path(leak.file, scan_root),
                start_line=leak.start_line,
                end_line=leak.end_line,
                start_column=leak.start_column,
                end_column=leak.end_column,
            ),
            match=leak.match,
            metadata={
                "rule_id": leak.rule_id,
                "secret": leak.secret,
                "commit": leak.commit,
                "fingerprint": leak.fingerprint,
                "tags": ",".join(leak.tags),
            },
        )
        for leak in leaks
    ]
    return ScanReport(
        kind=ToolKind.SECRET,
        artifact_name=os.path.basename(scan_root.rstrip("/\\")) if scan_root else UNKNOWN_ARTIFACT,
        artifact_type="filesystem",
        findings=findings,
        raw_document=raw,
    )


def normalize_config(document: Any, raw: bytes, scan_root: Optional[str] = None) -> ScanReport:
    if not isinstance(document, dict):
        raise SchemaMismatchError("Config report must be a JSON object")
    if "Results" not in document and "ArtifactName" not in document:
        raise SchemaMismatchError("Config report has neither 'Results' nor 'ArtifactName'")
    try:
        report = TrivyReport.model_validate(document)
    except ValidationError as exc:
        raise _schema_error(ToolKind.CONFIG, exc) from exc

    findings: List[Finding] = []
    for result in report.results:
        target = relative_path(result.target, scan_root)
        for m in result.misconfigurations:
            findings.append(Finding(
                id=m.id or m.avd_id or "unknown",
                title=m.title,
                description=m.description,
                severity=m.severity,
                location=SourceLocation(
                    file=target,
                    start_line=m.cause.start_line,
                    end_line=m.cause.end_line,
                ),
                match=m.message,
                reference_url=m.primary_url or None,
                metadata={
                    "target": result.target,
                    "class": result.class_,
                    "type": result.type,
                    "query": m.query,
                    "avd_id": m.avd_id,
                    "resolution": m.resolution,
                    "status": m.status,
                    "severity_raw": m.severity,
                },
            ))
    return ScanReport(
        kind=ToolKind.CONFIG,
        artifact_name=report.artifact_name or UNKNOWN_ARTIFACT,
        artifact_type=report.artifact_type or "config",
        findings=findings,
        summary={
            "targets": len(report.results),
            # every scanned target, including clean ones, for the upload body
            "results": [{"target": r.target, "class": r.class_, "type": r.type} for r in report.results],
        },
        raw_document=raw,
    )


def normalize_sbom(document: Any, raw: bytes, scan_root: Optional[str] = None) -> ScanReport:
    if not isinstance(document, dict) or "bomFormat" not in document:
        raise SchemaMismatchError("SBOM report must be a CycloneDX JSON object with 'bomFormat'")
    try:
        bom = CycloneDxBom.model_validate(document)
    except ValidationError as exc:
        raise _schema_error(ToolKind.SBOM, exc) from exc

    component = bom.metadata.component
    findings: List[Finding] = []
    for vuln in bom.vulnerabilities:
        refs = [a.ref for a in vuln.affects if a.ref]
        findings.append(Finding(
            id=vuln.id or "unknown",
            title=f"{vuln.id} in {refs[0]}" if refs else vuln.id,
            description=vuln.description or vuln.detail,
            severity=_highest([r.severity for r in vuln.ratings]),
            reference_url=vuln.source.url or None,
            metadata={
                "affects": ",".join(refs),
                "source": vuln.source.name,
                "recommendation": vuln.recommendation,
            },
        ))
    return ScanReport(
        kind=ToolKind.SBOM,
        artifact_name=component.name or UNKNOWN_ARTIFACT,
        artifact_type=component.type or "application",
        findings=findings,
        summary=create_sbom_summary(document, raw),
        raw_document=raw,
    )


NORMALIZERS: Dict[ToolKind, Callable[[Any, bytes, Optional[str]], ScanReport]] = {
    ToolKind.SBOM: normalize_sbom,
    ToolKind.SECRET: normalize_secrets,
    ToolKind.CONFIG: normalize_config,
}


def parse_bytes(raw: bytes, kind: ToolKind, scan_root: Optional[str] = None) -> ScanReport:
    try:
        document = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedReportError(f"Invalid {kind.value} report JSON: {exc}") from exc
    return NORMALIZERS[kind](document, raw, scan_root)


def parse(raw_report_path: Path, kind: ToolKind, scan_root: Optional[str] = None) -> ScanReport:
    """Read a raw report file and normalize it. The file is left in place."""
    path = Path(raw_report_path)
    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        raise MalformedReportError(f"Report file not found: {path}") from exc
    except OSError as exc:
        raise MalformedReportError(f"Cannot read report file {path}: {exc}") from exc
    report = parse_bytes(raw, kind, scan_root)
    logger.debug("Parsed %s report %s: %d finding(s)", kind.value, path, len(report.findings))
    return report
