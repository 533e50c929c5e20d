"""Command lines for the external scanners.

Each builder returns a ``ScanJob`` describing one subprocess: the command,
where it runs, where it writes its JSON report, and which exit codes mean the
tool ran to completion. The scanners themselves are opaque binaries.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import List, Optional

from scanrelay.core.config import Settings
from scanrelay.core.models import ScanJob, ToolKind

logger = logging.getLogger(__name__)

# gitleaks and trivy are told to exit with this code when they find something,
# so that 1 keeps meaning "the tool itself failed".
FINDINGS_EXIT_CODE = 2

SKIP_DIRS = {"node_modules", ".git", "dist", "build", ".venv", "venv", "vendor"}

GITLEAKS_RULES = """\
[extend]
useDefault = true

[[rules]]
id = "generic-password"
description = "Hardcoded password assignment"
regex = '''(?i)(password|passwd|pwd)\\s*=\\s*["'].*?["']'''
tags = ["key", "password"]

[[rules]]
id = "aws-secret-access-key"
description = "AWS Secret Access Key"
regex = '''AKIA[0-9A-Z]{16}'''
tags = ["key", "AWS"]
"""


def report_path(report_dir: Path, repo_name: str, kind: ToolKind) -> Path:
    stamp = int(time.time() * 1000)
    return report_dir / f"{repo_name}_{kind.value}_{stamp}.json"


def find_project_dirs(scan_root: Path, manifest: str = "package.json") -> List[Path]:
    """Directories under ``scan_root`` that hold ``manifest``, shallowest first."""
    found: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(scan_root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        if manifest in filenames:
            found.append(Path(dirpath))
    found.sort(key=lambda p: (len(p.relative_to(scan_root).parts), str(p)))
    return found


def sbom_job(settings: Settings, report_dir: Path) -> ScanJob:
    scan_root = Path(settings.scan_root)
    candidates = find_project_dirs(scan_root)
    if candidates:
        project_dir = candidates[0]
        logger.info("Using project directory %s for SBOM", project_dir)
    else:
        project_dir = scan_root
        logger.info("No package.json under %s, generating SBOM for the scan root", scan_root)

    output = report_path(report_dir, settings.repo_name, ToolKind.SBOM)
    cmd = ["cdxgen", str(project_dir), "-o", str(output)]
    if settings.sbom_project_type:
        cmd.extend(["--type", settings.sbom_project_type])
    return ScanJob(
        kind=ToolKind.SBOM,
        command=cmd,
        cwd=str(project_dir),
        output_path=str(output),
        accepted_exit_codes=[0],
        timeout=settings.scan_timeout,
    )


def write_gitleaks_rules(report_dir: Path) -> Path:
    fd, name = tempfile.mkstemp(prefix="gitleaks-rules-", suffix=".toml", dir=report_dir)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(GITLEAKS_RULES)
    return Path(name)


def secret_job(settings: Settings, report_dir: Path) -> ScanJob:
    output = report_path(report_dir, settings.repo_name, ToolKind.SECRET)
    cleanup: List[str] = []
    if settings.gitleaks_config:
        rules = Path(settings.gitleaks_config)
    else:
        rules = write_gitleaks_rules(report_dir)
        cleanup.append(str(rules))
    cmd = [
        "gitleaks",
        "detect",
        f"--source={settings.scan_root}",
        f"--report-path={output}",
        "--report-format=json",
        f"--config={rules}",
        "--no-banner",
        f"--exit-code={FINDINGS_EXIT_CODE}",
    ]
    return ScanJob(
        kind=ToolKind.SECRET,
        command=cmd,
        cwd=settings.scan_root,
        output_path=str(output),
        accepted_exit_codes=[0, FINDINGS_EXIT_CODE],
        timeout=settings.scan_timeout,
        cleanup_paths=cleanup,
    )


def config_job(settings: Settings, report_dir: Path) -> ScanJob:
    output = report_path(report_dir, settings.repo_name, ToolKind.CONFIG)
    cmd = [
        "trivy",
        "config",
        "--format",
        "json",
        "--output",
        str(output),
        "--exit-code",
        str(FINDINGS_EXIT_CODE),
        settings.scan_root,
    ]
    return ScanJob(
        kind=ToolKind.CONFIG,
        command=cmd,
        cwd=settings.scan_root,
        output_path=str(output),
        accepted_exit_codes=[0, FINDINGS_EXIT_CODE],
        timeout=settings.scan_timeout,
    )


JOB_BUILDERS = {
    ToolKind.SBOM: sbom_job,
    ToolKind.SECRET: secret_job,
    ToolKind.CONFIG: config_job,
}


def build_job(kind: ToolKind, settings: Settings, report_dir: Path) -> ScanJob:
    return JOB_BUILDERS[kind](settings, report_dir)


def exit_code_ok(job: ScanJob, returncode: Optional[int]) -> bool:
    return returncode is not None and returncode in job.accepted_exit_codes
