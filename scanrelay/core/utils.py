from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from scanrelay.core.errors import ProcessError

logger = logging.getLogger(__name__)

# How long to wait for pipes to drain once a timed-out process group is killed
DRAIN_TIMEOUT = 5


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def write_json(path: Path, data: dict) -> None:
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def remove_file(path: Path) -> bool:
    """Delete a file if present. Returns True when something was removed."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


def run_cmd(
    cmd: Iterable[str],
    timeout: int = 600,
    cwd: str | None = None,
    log_file: Path | None = None,
) -> subprocess.CompletedProcess:
    """Run a command and capture stdout/stderr separately.

    A nonzero exit code is returned to the caller, not raised: several
    scanners exit nonzero to signal "findings present". A missing binary or
    an expired timeout raises ProcessError. The command runs in its own
    process group so that on timeout everything it spawned is killed too.
    """
    cmd = list(cmd)
    try:
        process = subprocess.Popen(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=os.name == "posix",
        )
    except FileNotFoundError as exc:
        raise ProcessError(f"Command not found: {cmd[0]}") from exc
    except PermissionError as exc:
        raise ProcessError(f"Command not executable: {cmd[0]}") from exc

    try:
        stdout, stderr = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        _kill_tree(process)
        try:
            process.communicate(timeout=DRAIN_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.warning("Output of %s still open %ds after kill, abandoning it", cmd[0], DRAIN_TIMEOUT)
        raise ProcessError(f"Command timed out after {timeout}s: {' '.join(cmd)}") from exc

    if log_file:
        with log_file.open("a", encoding="utf-8") as f:
            f.write(stdout or "")
            f.write(stderr or "")

    return subprocess.CompletedProcess(
        args=cmd,
        returncode=process.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
    )


def _kill_tree(process: subprocess.Popen) -> None:
    if os.name == "posix":
        try:
            os.killpg(process.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            pass
    process.kill()
