"""SARIF (Static Analysis Results Interchange Format) export functionality.

Converts normalized scan reports into a SARIF 2.1.0 document with one run
per scanner, for the GitHub Security tab and other SARIF consumers.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from scanrelay import __version__
from scanrelay.core.models import Finding, ScanReport, Severity, ToolKind

logger = logging.getLogger(__name__)

SARIF_SCHEMA = "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json"

# SARIF severity level mapping
SARIF_SEVERITY_MAP = {
    Severity.CRITICAL: "error",
    Severity.HIGH: "error",
    Severity.MEDIUM: "warning",
    Severity.LOW: "note",
    Severity.UNKNOWN: "warning",
}

# GitHub reads this numeric score from rule properties
SECURITY_SEVERITY_SCORE = {
    Severity.CRITICAL: "9.5",
    Severity.HIGH: "8.0",
    Severity.MEDIUM: "5.5",
    Severity.LOW: "2.0",
    Severity.UNKNOWN: "5.0",
}

TOOL_NAMES = {
    ToolKind.SBOM: "cdxgen",
    ToolKind.SECRET: "gitleaks",
    ToolKind.CONFIG: "trivy-config",
}


def _create_sarif_rule(finding: Finding, kind: ToolKind) -> Dict[str, Any]:
    rule: Dict[str, Any] = {
        "id": finding.id,
        "name": finding.id,
        "shortDescription": {"text": finding.title or finding.id},
        "fullDescription": {"text": finding.description or finding.title or finding.id},
        "defaultConfiguration": {"level": SARIF_SEVERITY_MAP[finding.severity]},
        "properties": {
            "security-severity": SECURITY_SEVERITY_SCORE[finding.severity],
            "problem.severity": finding.severity.value.lower(),
            "tags": ["security", kind.value],
        },
    }
    if finding.reference_url:
        rule["helpUri"] = finding.reference_url
    return rule


def _create_sarif_result(finding: Finding, kind: ToolKind, rule_index: int) -> Dict[str, Any]:
    # Secret values never leave the pipeline through SARIF
    message = finding.title or finding.id
    if kind is not ToolKind.SECRET and finding.match:
        message = f"{message}: {finding.match}"

    result: Dict[str, Any] = {
        "ruleId": finding.id,
        "ruleIndex": rule_index,
        "level": SARIF_SEVERITY_MAP[finding.severity],
        "message": {"text": message},
        "properties": {"severity": finding.severity.value},
    }

    loc = finding.location
    if loc.file:
        region: Dict[str, int] = {}
        if loc.start_line:
            region["startLine"] = loc.start_line
            region["endLine"] = max(loc.end_line, loc.start_line)
        if loc.start_column:
            region["startColumn"] = loc.start_column
        if loc.end_column:
            region["endColumn"] = loc.end_column
        physical: Dict[str, Any] = {"artifactLocation": {"uri": loc.file}}
        if region:
            physical["region"] = region
        result["locations"] = [{"physicalLocation": physical}]
    elif finding.metadata.get("affects"):
        result["locations"] = [{
            "logicalLocations": [
                {"fullyQualifiedName": ref, "kind": "package"}
                for ref in finding.metadata["affects"].split(",")
            ]
        }]
    return result


def _sarif_run(report: ScanReport) -> Dict[str, Any]:
    rules: Dict[str, Dict[str, Any]] = {}
    rule_index_map: Dict[str, int] = {}
    results: List[Dict[str, Any]] = []

    for finding in report.findings:
        if finding.id not in rules:
            rules[finding.id] = _create_sarif_rule(finding, report.kind)
            rule_index_map[finding.id] = len(rule_index_map)
        results.append(_create_sarif_result(finding, report.kind, rule_index_map[finding.id]))

    return {
        "tool": {
            "driver": {
                "name": TOOL_NAMES[report.kind],
                "semanticVersion": __version__,
                "rules": list(rules.values()),
            }
        },
        "automationDetails": {"id": f"scanrelay/{report.kind.value}/"},
        "results": results,
        "properties": {
            "artifact_name": report.artifact_name,
            "artifact_type": report.artifact_type,
            "findings_count": len(report.findings),
        },
    }


def convert_to_sarif(reports: List[ScanReport]) -> Dict[str, Any]:
    """Convert normalized reports to a SARIF 2.1.0 document."""
    return {
        "version": "2.1.0",
        "$schema": SARIF_SCHEMA,
        "runs": [_sarif_run(report) for report in reports],
    }


def export_sarif_report(reports: List[ScanReport], output_path: Path, pretty: bool = True) -> None:
    """Export reports as SARIF to file. Structural problems are logged, not fatal."""
    sarif_data = convert_to_sarif(reports)
    for problem in validate_sarif_schema(sarif_data):
        logger.warning("SARIF output %s: %s", output_path, problem)
    with open(output_path, "w", encoding="utf-8") as f:
        if pretty:
            json.dump(sarif_data, f, indent=2, ensure_ascii=False)
        else:
            json.dump(sarif_data, f, separators=(",", ":"), ensure_ascii=False)


def validate_sarif_schema(sarif_data: Dict[str, Any]) -> List[str]:
    """Basic validation of SARIF document structure.

    Returns list of validation errors, empty if valid.
    """
    errors = []

    if "version" not in sarif_data:
        errors.append("Missing required field: version")
    elif sarif_data["version"] != "2.1.0":
        errors.append(f"Unsupported SARIF version: {sarif_data['version']}")

    if "runs" not in sarif_data:
        errors.append("Missing required field: runs")
    elif not isinstance(sarif_data["runs"], list):
        errors.append("Field 'runs' must be an array")

    for i, run in enumerate(sarif_data.get("runs", []) or []):
        if not isinstance(run, dict):
            errors.append(f"Run {i} must be an object")
            continue
        if "tool" not in run:
            errors.append(f"Run {i}: missing required field 'tool'")
        if "results" not in run:
            errors.append(f"Run {i}: missing required field 'results'")

    return errors
