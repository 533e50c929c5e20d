"""Scan pipeline orchestrator.

Runs the configured scanners, normalizes and filters each report, uploads it,
and folds the per-job outcomes into one exit code. Jobs are independent: a
failing scanner or upload never stops the others, and the exit code is only
computed once every job has reached a terminal state.
"""

from __future__ import annotations

import contextlib
import logging
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional
from uuid import uuid4

from scanrelay.core import normalize
from scanrelay.core.config import Settings
from scanrelay.core.errors import ProcessError, ScanRelayError, UploadError
from scanrelay.core.filters import filter_report
from scanrelay.core.models import (
    JobOutcome,
    JobStatus,
    PipelineSummary,
    ScanReport,
    Severity,
    ToolKind,
    UploadResult,
)
from scanrelay.core.scanners import build_job, exit_code_ok
from scanrelay.core.upload import ApiUploader, resolve_endpoint
from scanrelay.core.utils import ensure_dir, remove_file, run_cmd, utc_now

logger = logging.getLogger(__name__)

MAX_WORKERS = 4


def create_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"run-{ts}-{uuid4().hex[:8]}"


class PipelineOrchestrator:
    def __init__(
        self,
        settings: Settings,
        runner: Callable = run_cmd,
        uploader: Optional[ApiUploader] = None,
    ):
        self.settings = settings
        self.runner = runner
        if uploader is None and settings.upload:
            uploader = ApiUploader.from_settings(settings)
        self.uploader = uploader

    def run(self, kinds: Optional[Iterable[ToolKind]] = None) -> PipelineSummary:
        kinds = list(kinds if kinds is not None else self.settings.kinds)
        summary = PipelineSummary(
            run_id=create_run_id(),
            started_at=utc_now(),
            fail_on=self.settings.fail_on,
            uploaded=self.settings.upload,
        )
        logger.info("Starting run %s for %s", summary.run_id, ", ".join(k.value for k in kinds))

        with self._report_dir() as report_dir:
            if self.settings.parallel and len(kinds) > 1:
                outcomes: Dict[ToolKind, JobOutcome] = {}
                with ThreadPoolExecutor(max_workers=min(len(kinds), MAX_WORKERS)) as executor:
                    future_to_kind = {executor.submit(self.run_job, kind, report_dir): kind for kind in kinds}
                    for future in as_completed(future_to_kind):
                        outcomes[future_to_kind[future]] = future.result()
                summary.outcomes = [outcomes[kind] for kind in kinds]
            else:
                summary.outcomes = [self.run_job(kind, report_dir) for kind in kinds]

        summary.finished_at = utc_now()
        blocking = summary.blocking_findings()
        if blocking:
            logger.error(
                "%d finding(s) at or above %s severity", len(blocking), summary.fail_on.value
            )
        return summary

    @contextlib.contextmanager
    def _report_dir(self) -> Iterator[Path]:
        # Reports never go into the scan root, so concurrent scanners cannot see them.
        if self.settings.report_dir:
            path = Path(self.settings.report_dir)
            ensure_dir(path)
            yield path
        else:
            with tempfile.TemporaryDirectory(prefix="scanrelay-") as tmp:
                yield Path(tmp)

    def run_job(self, kind: ToolKind, report_dir: Path) -> JobOutcome:
        """Drive one job to a terminal state. Never raises."""
        outcome = JobOutcome(kind=kind, started_at=utc_now())
        try:
            report = self._scan(kind, report_dir, outcome)
        except ScanRelayError as exc:
            logger.error("%s scan failed: %s", kind.value, exc)
            self._fail_run(outcome, exc)
            return outcome
        except Exception as exc:
            logger.exception("Unexpected error in %s scan", kind.value)
            self._fail_run(outcome, exc)
            return outcome

        filtered = filter_report(report, self.settings.filter_rules)
        outcome.advance(JobStatus.FILTERED)
        outcome.report = filtered
        outcome.finding_count = len(filtered.findings)
        outcome.severity_counts = filtered.severity_counts()
        outcome.report_summary = dict(filtered.summary)
        dropped = len(report.findings) - len(filtered.findings)
        if dropped:
            logger.info("Suppressed %d %s finding(s) by filter rules", dropped, kind.value)
        logger.info("%s scan: %d finding(s)", kind.value, outcome.finding_count)
        if filtered.summary:
            logger.info("%s summary: %s", kind.value, filtered.summary)
        logger.debug("%s report:\n%s", kind.value, filtered.model_dump_json(indent=2))

        if self.settings.upload and self.uploader is not None:
            self._upload(filtered, outcome)
        outcome.advance(JobStatus.DONE)
        outcome.finished_at = utc_now()
        return outcome

    def _scan(self, kind: ToolKind, report_dir: Path, outcome: JobOutcome) -> ScanReport:
        job = build_job(kind, self.settings, report_dir)
        output = Path(job.output_path)
        try:
            outcome.advance(JobStatus.RUNNING)
            logger.info("Running %s scan: %s", kind.value, " ".join(job.command))
            result = self.runner(job.command, timeout=job.timeout, cwd=job.cwd, log_file=self._log_path(kind))
            outcome.exit_code = result.returncode
            if result.stdout:
                logger.debug("%s stdout:\n%s", job.command[0], result.stdout)
            if result.stderr:
                logger.debug("%s stderr:\n%s", job.command[0], result.stderr)
            if not exit_code_ok(job, result.returncode):
                detail = (result.stderr or result.stdout or "").strip()[-500:]
                raise ProcessError(f"{job.command[0]} exited with code {result.returncode}: {detail}".rstrip(": "))

            report = normalize.parse(output, kind, scan_root=self.settings.scan_root)
            outcome.advance(JobStatus.PARSED)
            return report
        finally:
            self._cleanup([output] + [Path(p) for p in job.cleanup_paths])

    def _log_path(self, kind: ToolKind) -> Optional[Path]:
        """Scanner output is kept only for debug runs with an explicit report dir."""
        if not (self.settings.debug and self.settings.report_dir):
            return None
        return Path(self.settings.report_dir) / f"{self.settings.repo_name}_{kind.value}.log"

    def _upload(self, report: ScanReport, outcome: JobOutcome) -> None:
        kind = report.kind
        try:
            endpoint = resolve_endpoint(kind, self.settings)
            result = self.uploader.upload(endpoint, report, self.settings.credentials)
        except UploadError as exc:
            logger.error("%s upload failed: %s", kind.value, exc)
            outcome.upload = UploadResult(status=exc.status, body=exc.body or str(exc), success=False)
            outcome.error = str(exc)
            outcome.advance(JobStatus.UPLOAD_FAILED)
            return
        except ScanRelayError as exc:
            logger.error("%s upload skipped: %s", kind.value, exc)
            outcome.error = str(exc)
            outcome.advance(JobStatus.UPLOAD_FAILED)
            return
        except Exception as exc:
            logger.exception("Unexpected error uploading %s report", kind.value)
            outcome.error = f"{type(exc).__name__}: {exc}"
            outcome.advance(JobStatus.UPLOAD_FAILED)
            return

        outcome.upload = result
        if result.success:
            outcome.advance(JobStatus.UPLOADED)
        else:
            outcome.error = f"Upload rejected with HTTP {result.status}: {result.body}"
            outcome.advance(JobStatus.UPLOAD_FAILED)

    @staticmethod
    def _fail_run(outcome: JobOutcome, exc: Exception) -> None:
        outcome.error = str(exc) if isinstance(exc, ScanRelayError) else f"{type(exc).__name__}: {exc}"
        outcome.advance(JobStatus.RUN_FAILED)
        outcome.finished_at = utc_now()

    @staticmethod
    def _cleanup(paths: List[Path]) -> None:
        for path in paths:
            try:
                if remove_file(path):
                    logger.debug("Removed temp file %s", path)
            except OSError as exc:
                logger.warning("Failed to delete %s: %s", path, exc)


def print_table(summary: PipelineSummary) -> None:
    """Pretty-print the per-job outcomes in a simple table."""
    headers = ["Kind", "Status", "Exit", "Findings", "Critical", "High", "Upload", "Error"]
    rows = []
    for o in summary.outcomes:
        upload = ""
        if o.upload is not None:
            upload = str(o.upload.status) if o.upload.status is not None else "error"
        rows.append([
            o.kind.value,
            o.status.value,
            "" if o.exit_code is None else o.exit_code,
            o.finding_count,
            o.severity_counts.get(Severity.CRITICAL.value, 0),
            o.severity_counts.get(Severity.HIGH.value, 0),
            upload,
            (o.error or "")[:80],
        ])
    _print_rows(headers, rows)


def print_findings(report: ScanReport) -> None:
    headers = ["Severity", "ID", "File", "Line", "Title"]
    rows = [
        [f.severity.value, f.id, f.location.file, f.location.start_line or "", f.title[:80]]
        for f in report.findings
    ]
    _print_rows(headers, rows)


def _print_rows(headers: List[str], rows: List[list]) -> None:
    col_widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            col_widths[i] = max(col_widths[i], len(str(cell)))

    def fmt_row(values):
        return " | ".join(str(v).ljust(col_widths[i]) for i, v in enumerate(values))

    print(fmt_row(headers))
    print("-+-".join("-" * w for w in col_widths))
    for row in rows:
        print(fmt_row(row))
