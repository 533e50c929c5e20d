from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Map any tool severity label onto the enum; unrecognised labels become UNKNOWN."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        try:
            return cls(text)
        except ValueError:
            return cls.UNKNOWN


SEVERITY_ORDER = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
    Severity.UNKNOWN: 4,
}


def at_or_above(severity: Severity, threshold: Severity) -> bool:
    return SEVERITY_ORDER[severity] <= SEVERITY_ORDER[threshold]


class ToolKind(str, Enum):
    SBOM = "sbom"
    SECRET = "secret"
    CONFIG = "config"


class SourceLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    file: str = ""
    start_line: int = 0
    end_line: int = 0
    start_column: int = 0
    end_column: int = 0


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    description: str = ""
    severity: Severity = Severity.UNKNOWN
    location: SourceLocation = SourceLocation()
    match: str = ""
    reference_url: Optional[str] = None
    # Tool-specific fields needed to rebuild the upload payload (target class, query, ...)
    metadata: Dict[str, str] = {}

    @field_validator("severity", mode="before")
    @classmethod
    def _coerce_severity(cls, value: Any) -> Severity:
        return Severity.parse(value)


class ScanReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ToolKind
    artifact_name: str = "unknown-artifact"
    artifact_type: str = ""
    findings: List[Finding] = []
    summary: Dict[str, Any] = {}
    raw_document: Optional[bytes] = Field(default=None, exclude=True, repr=False)

    def with_findings(self, findings: List[Finding]) -> "ScanReport":
        return self.model_copy(update={"findings": list(findings)})

    def severity_counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        for f in self.findings:
            counts[f.severity.value] += 1
        return counts


class ScanJob(BaseModel):
    kind: ToolKind
    command: List[str]
    cwd: str
    output_path: str
    accepted_exit_codes: List[int] = [0]
    timeout: int = 600
    # Extra temp files owned by the job (e.g. generated rule files)
    cleanup_paths: List[str] = []


class UploadResult(BaseModel):
    status: Optional[int] = None
    body: str = ""
    success: bool = False
    attempts: int = 1


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PARSED = "PARSED"
    RUN_FAILED = "RUN_FAILED"
    FILTERED = "FILTERED"
    UPLOADED = "UPLOADED"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    DONE = "DONE"


ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.RUN_FAILED},
    JobStatus.RUNNING: {JobStatus.PARSED, JobStatus.RUN_FAILED},
    JobStatus.PARSED: {JobStatus.FILTERED},
    JobStatus.FILTERED: {JobStatus.UPLOADED, JobStatus.UPLOAD_FAILED, JobStatus.DONE},
    JobStatus.UPLOADED: {JobStatus.DONE},
    JobStatus.UPLOAD_FAILED: {JobStatus.DONE},
    JobStatus.RUN_FAILED: set(),
    JobStatus.DONE: set(),
}

FAILED_STATES = {JobStatus.RUN_FAILED, JobStatus.UPLOAD_FAILED}


class JobOutcome(BaseModel):
    kind: ToolKind
    history: List[JobStatus] = [JobStatus.PENDING]
    error: Optional[str] = None
    exit_code: Optional[int] = None
    finding_count: int = 0
    severity_counts: Dict[str, int] = {}
    report_summary: Dict[str, Any] = {}
    upload: Optional[UploadResult] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    report: Optional[ScanReport] = Field(default=None, exclude=True, repr=False)

    def advance(self, status: JobStatus) -> None:
        current = self.history[-1]
        if status not in ALLOWED_TRANSITIONS[current]:
            raise ValueError(f"Invalid job transition {current.value} -> {status.value}")
        self.history.append(status)

    @computed_field
    @property
    def status(self) -> JobStatus:
        """Last meaningful state; DONE only marks that the job finished."""
        for state in reversed(self.history):
            if state is not JobStatus.DONE:
                return state
        return JobStatus.PENDING

    @property
    def failed(self) -> bool:
        return self.status in FAILED_STATES


class PipelineSummary(BaseModel):
    run_id: str
    started_at: str
    finished_at: Optional[str] = None
    fail_on: Severity = Severity.CRITICAL
    uploaded: bool = True
    outcomes: List[JobOutcome] = []

    def blocking_findings(self) -> List[Finding]:
        blocking: List[Finding] = []
        for outcome in self.outcomes:
            if outcome.report is None or outcome.status is JobStatus.RUN_FAILED:
                continue
            blocking.extend(f for f in outcome.report.findings if at_or_above(f.severity, self.fail_on))
        return blocking

    @computed_field
    @property
    def exit_code(self) -> int:
        if any(o.failed for o in self.outcomes):
            return 1
        if self.blocking_findings():
            return 1
        return 0
