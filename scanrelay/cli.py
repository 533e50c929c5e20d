from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from scanrelay.core import normalize
from scanrelay.core.config import Settings
from scanrelay.core.errors import ScanRelayError
from scanrelay.core.filters import FilterRules, filter_report
from scanrelay.core.models import ToolKind, at_or_above
from scanrelay.core.pipeline import PipelineOrchestrator, print_findings, print_table
from scanrelay.core.upload import ApiUploader, UploadMode, resolve_endpoint
from scanrelay.core.utils import write_json
from scanrelay.reporting.sarif import export_sarif_report

app = typer.Typer(help="scanrelay CLI: run security scanners and relay their reports")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, format=LOG_FORMAT)


def _load_settings(
    exclude_path: Optional[List[str]] = None,
    exclude_file: Optional[List[str]] = None,
    **overrides,
) -> Settings:
    try:
        settings = Settings.from_env(**overrides)
    except ScanRelayError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)

    if exclude_path or exclude_file:
        rules = settings.filter_rules
        settings.filter_rules = FilterRules(
            excluded_file_patterns=rules.excluded_file_patterns + list(exclude_file or []),
            excluded_path_substrings=rules.excluded_path_substrings + list(exclude_path or []),
            placeholder_pattern=rules.placeholder_pattern,
        )
    return settings


@app.command()
def run(
    kinds: Optional[str] = typer.Option(None, "--kinds", help="Comma-separated scan kinds: sbom, secret, config"),
    scan_root: Optional[str] = typer.Option(None, "--scan-root", help="Directory to scan (default: GITHUB_WORKSPACE or cwd)"),
    parallel: Optional[bool] = typer.Option(None, "--parallel/--sequential", help="Run scanners concurrently"),
    upload: bool = typer.Option(True, "--upload/--no-upload", help="Upload reports to the ingestion API"),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Per-scanner timeout in seconds"),
    fail_on: Optional[str] = typer.Option(None, "--fail-on", help="Lowest severity that fails the run"),
    exclude_path: Optional[List[str]] = typer.Option(None, "--exclude-path", help="Path substring to suppress"),
    exclude_file: Optional[List[str]] = typer.Option(None, "--exclude-file", help="File name glob to suppress"),
    report_dir: Optional[str] = typer.Option(None, "--report-dir", help="Where scanners write raw reports"),
    sarif: Optional[str] = typer.Option(None, "--sarif", help="Write all findings as SARIF to this path"),
    summary_out: Optional[str] = typer.Option(None, "--summary-out", help="Write the run summary JSON to this path"),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging, including full reports"),
):
    """Run the configured scanners and upload their reports."""
    settings = _load_settings(
        exclude_path=exclude_path,
        exclude_file=exclude_file,
        kinds=kinds,
        scan_root=scan_root,
        parallel=parallel,
        upload=upload,
        scan_timeout=timeout,
        fail_on=fail_on,
        report_dir=report_dir,
        debug=debug or None,
    )
    _configure_logging(settings.debug)

    summary = PipelineOrchestrator(settings).run()
    print_table(summary)

    if sarif:
        reports = [o.report for o in summary.outcomes if o.report is not None]
        export_sarif_report(reports, Path(sarif))
        typer.echo(f"SARIF report saved to: {sarif}")
    if summary_out:
        write_json(Path(summary_out), summary.model_dump(mode="json"))
        typer.echo(f"Run summary saved to: {summary_out}")

    failed = [o for o in summary.outcomes if o.failed]
    blocking = summary.blocking_findings()
    if failed:
        typer.echo(f"❌ {len(failed)} job(s) failed: {', '.join(o.kind.value for o in failed)}", err=True)
    if blocking:
        typer.echo(f"⛔ {len(blocking)} finding(s) at or above {settings.fail_on.value}", err=True)
    if summary.exit_code == 0:
        typer.echo("✅ Security scan complete.")
    raise typer.Exit(code=summary.exit_code)


@app.command()
def parse(
    report: Path = typer.Argument(..., help="Raw scanner report (JSON)"),
    kind: ToolKind = typer.Option(..., "--kind", help="Which scanner produced the report"),
    format: str = typer.Option("table", "--format", help="Output format: table, json, or sarif"),
    output: Optional[str] = typer.Option(None, "--output", help="Output file path (for json/sarif formats)"),
    scan_root: Optional[str] = typer.Option(None, "--scan-root", help="Root that file paths are made relative to"),
    filter_results: bool = typer.Option(True, "--filter/--no-filter", help="Apply false-positive filter rules"),
):
    """Normalize an existing scanner report without uploading it."""
    settings = _load_settings(scan_root=scan_root, upload=False)
    try:
        parsed = normalize.parse(report, kind, scan_root=settings.scan_root)
    except ScanRelayError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    if filter_results:
        parsed = filter_report(parsed, settings.filter_rules)

    if format == "json":
        output_data = json.dumps(parsed.model_dump(mode="json"), indent=2)
        if output:
            Path(output).write_text(output_data, encoding="utf-8")
            typer.echo(f"JSON report saved to: {output}")
        else:
            typer.echo(output_data)
    elif format == "sarif":
        output_path = Path(output or f"{kind.value}-results.sarif")
        export_sarif_report([parsed], output_path)
        typer.echo(f"SARIF report saved to: {output_path}")
    else:
        print_findings(parsed)
        typer.echo(f"\n{len(parsed.findings)} finding(s) in {parsed.artifact_name}")
        if format != "table":
            typer.echo(f"Warning: Unknown format '{format}', using table format")


@app.command()
def upload(
    report: Path = typer.Argument(..., help="Raw scanner report (JSON)"),
    kind: ToolKind = typer.Option(..., "--kind", help="Which scanner produced the report"),
    mode: Optional[UploadMode] = typer.Option(None, "--mode", help="Override the upload mode for this kind"),
    scan_root: Optional[str] = typer.Option(None, "--scan-root", help="Root that file paths are made relative to"),
    fail_on: Optional[str] = typer.Option(None, "--fail-on", help="Lowest severity that fails the command"),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging"),
):
    """Normalize, filter and upload an existing scanner report."""
    settings = _load_settings(scan_root=scan_root, fail_on=fail_on, debug=debug or None)
    _configure_logging(settings.debug)
    try:
        parsed = filter_report(normalize.parse(report, kind, scan_root=settings.scan_root), settings.filter_rules)
        endpoint = resolve_endpoint(kind, settings)
        result = ApiUploader.from_settings(settings).upload(endpoint, parsed, settings.credentials, mode)
    except ScanRelayError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)

    if not result.success:
        typer.echo(f"❌ Upload failed: HTTP {result.status}: {result.body}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"✅ {kind.value} report uploaded (HTTP {result.status}), {len(parsed.findings)} finding(s)")

    blocking = [f for f in parsed.findings if at_or_above(f.severity, settings.fail_on)]
    if blocking:
        typer.echo(f"⛔ {len(blocking)} finding(s) at or above {settings.fail_on.value}", err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
