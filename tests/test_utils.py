import os
import sys
import time

import pytest

from scanrelay.core.errors import ProcessError
from scanrelay.core.utils import remove_file, run_cmd, utc_now


def test_run_cmd_captures_streams_separately():
    code = "import sys; print('out'); print('err', file=sys.stderr)"
    result = run_cmd([sys.executable, "-c", code], timeout=30)

    assert result.returncode == 0
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"


def test_run_cmd_returns_nonzero_exit():
    result = run_cmd([sys.executable, "-c", "raise SystemExit(2)"], timeout=30)
    assert result.returncode == 2


def test_run_cmd_missing_binary():
    with pytest.raises(ProcessError) as excinfo:
        run_cmd(["scanrelay-no-such-binary-xyz"])
    assert "not found" in str(excinfo.value)


def test_run_cmd_timeout_kills_child():
    with pytest.raises(ProcessError) as excinfo:
        run_cmd([sys.executable, "-c", "import time; time.sleep(30)"], timeout=1)
    assert "timed out" in str(excinfo.value)


@pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX only")
def test_run_cmd_timeout_kills_grandchildren():
    # the backgrounded sleep inherits stdout/stderr and would keep them open
    started = time.monotonic()
    with pytest.raises(ProcessError):
        run_cmd(["sh", "-c", "sleep 8 & sleep 8; wait"], timeout=1)
    assert time.monotonic() - started < 5


def test_run_cmd_appends_to_log_file(tmp_path):
    log = tmp_path / "scan.log"
    run_cmd([sys.executable, "-c", "print('hello')"], timeout=30, log_file=log)
    assert "hello" in log.read_text(encoding="utf-8")


def test_remove_file(tmp_path):
    path = tmp_path / "report.json"
    path.write_text("{}", encoding="utf-8")

    assert remove_file(path) is True
    assert remove_file(path) is False


def test_utc_now_is_zulu():
    assert utc_now().endswith("Z")
