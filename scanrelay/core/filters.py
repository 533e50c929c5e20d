"""False-positive suppression for normalized reports.

All suppression happens here so scanners and normalizers stay literal about
what the tools emitted. ``filter_report`` is pure: the same report and rules
always give the same result, and filtering twice changes nothing.
"""

from __future__ import annotations

import fnmatch
import posixpath
import re
from typing import List

from pydantic import BaseModel, ConfigDict, field_validator

from scanrelay.core.models import Finding, ScanReport, ToolKind

# Matches ${VAR} as well as CI templating such as ${{ secrets.TOKEN }}
DEFAULT_PLACEHOLDER_PATTERN = r"\$\{[^}]*\}"

DEFAULT_EXCLUDED_PATHS = ["node_modules/", "vendor/"]


class FilterRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    excluded_file_patterns: List[str] = []
    excluded_path_substrings: List[str] = list(DEFAULT_EXCLUDED_PATHS)
    placeholder_pattern: str = DEFAULT_PLACEHOLDER_PATTERN

    @field_validator("placeholder_pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        if value:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"invalid placeholder pattern: {exc}") from exc
        return value


def is_placeholder(text: str, pattern: str = DEFAULT_PLACEHOLDER_PATTERN) -> bool:
    if not text or not pattern:
        return False
    return re.search(pattern, text) is not None


def is_excluded_path(path: str, rules: FilterRules) -> bool:
    if not path:
        return False
    normalized = path.replace("\\", "/")
    name = posixpath.basename(normalized)
    if any(fnmatch.fnmatch(name, pattern) for pattern in rules.excluded_file_patterns):
        return True
    return any(sub and sub in normalized for sub in rules.excluded_path_substrings)


def _suppressed(finding: Finding, kind: ToolKind, rules: FilterRules) -> bool:
    if is_excluded_path(finding.location.file, rules):
        return True
    if kind is ToolKind.SECRET:
        secret = finding.metadata.get("secret", "")
        if is_placeholder(finding.match, rules.placeholder_pattern):
            return True
        if is_placeholder(secret, rules.placeholder_pattern):
            return True
    return False


def filter_report(report: ScanReport, rules: FilterRules) -> ScanReport:
    """Return ``report`` without the findings the rules suppress."""
    kept = [f for f in report.findings if not _suppressed(f, report.kind, rules)]
    if len(kept) == len(report.findings):
        return report
    return report.with_findings(kept)
