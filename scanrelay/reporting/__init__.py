"""scanrelay reporting modules."""

from .sarif import convert_to_sarif, export_sarif_report, validate_sarif_schema
from .sbom import calculate_hashes, create_sbom_summary, validate_sbom_schema

__all__ = [
    "convert_to_sarif",
    "export_sarif_report",
    "validate_sarif_schema",
    "calculate_hashes",
    "create_sbom_summary",
    "validate_sbom_schema",
]
