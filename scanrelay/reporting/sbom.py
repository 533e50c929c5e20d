"""CycloneDX SBOM inspection.

The SBOM itself is produced by cdxgen; these helpers summarise and sanity
check the document before it is uploaded.
"""

from __future__ import annotations

import hashlib
from typing import Any, Dict, List, Optional

SUPPORTED_SPEC_VERSIONS = ["1.4", "1.5", "1.6"]


def calculate_hashes(content: bytes) -> Dict[str, str]:
    return {
        "sha256": hashlib.sha256(content).hexdigest(),
        "sha1": hashlib.sha1(content).hexdigest(),
    }


def validate_sbom_schema(sbom_data: Dict[str, Any]) -> List[str]:
    """Basic validation of CycloneDX SBOM structure.

    Returns list of validation problems, empty if valid.
    """
    errors = []

    for field in ["bomFormat", "specVersion"]:
        if field not in sbom_data:
            errors.append(f"Missing required field: {field}")

    if sbom_data.get("bomFormat") != "CycloneDX":
        errors.append("bomFormat must be 'CycloneDX'")

    spec_version = sbom_data.get("specVersion")
    if spec_version is not None and str(spec_version) not in SUPPORTED_SPEC_VERSIONS:
        errors.append(f"Unsupported specVersion: {spec_version}")

    serial_num = sbom_data.get("serialNumber")
    if serial_num is not None and not str(serial_num).startswith("urn:uuid:"):
        errors.append("serialNumber should be a URN with UUID")

    metadata = sbom_data.get("metadata", {})
    if not isinstance(metadata, dict):
        errors.append("metadata must be an object")

    if not isinstance(sbom_data.get("components", []), list):
        errors.append("components must be an array")

    return errors


def create_sbom_summary(sbom_data: Dict[str, Any], raw: Optional[bytes] = None) -> Dict[str, Any]:
    """Create a summary of SBOM contents."""
    components = sbom_data.get("components") or []
    if not isinstance(components, list):
        components = []
    dependencies = sbom_data.get("dependencies") or []
    metadata = sbom_data.get("metadata") or {}

    summary: Dict[str, Any] = {
        "spec_version": sbom_data.get("specVersion"),
        "total_components": len(components),
        "component_types": {},
        "dependency_count": len(dependencies) if isinstance(dependencies, list) else 0,
        "vulnerability_count": len(sbom_data.get("vulnerabilities") or []),
        "timestamp": metadata.get("timestamp") if isinstance(metadata, dict) else None,
        "schema_warnings": validate_sbom_schema(sbom_data),
    }

    for component in components:
        if not isinstance(component, dict):
            continue
        comp_type = component.get("type", "unknown")
        summary["component_types"][comp_type] = summary["component_types"].get(comp_type, 0) + 1

    if raw is not None:
        summary["size_bytes"] = len(raw)
        summary["sha256"] = calculate_hashes(raw)["sha256"]

    return summary
