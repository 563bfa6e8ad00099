"""ralphci utility functions: timestamps, JSON I/O, redaction, and the run log."""

from __future__ import annotations

import json
import os
import re
import signal
import subprocess
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from ralphci.models import RunContext


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _utc_compact() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _clock_label() -> str:
    return datetime.now(timezone.utc).strftime("%H:%M:%S")


# ---------------------------------------------------------------------------
# JSON I/O helpers
# ---------------------------------------------------------------------------


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"object of type {type(value).__name__} is not JSON serializable")


def _render_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=_json_default) + "\n"


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_render_json(payload), encoding="utf-8")


def _write_text_atomic(path: Path, text: str) -> None:
    """Write *text* to a sibling temp file, then rename it over *path*.

    Readers observe either the previous file or the complete new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    _write_text_atomic(path, _render_json(payload))


def _append_jsonl(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(payload, default=_json_default, separators=(",", ":"))
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line + "\n")


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _head_lines(text: str, limit: int) -> str:
    lines = text.splitlines()
    return "\n".join(lines[:limit])


SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)\b(\w*(?:api[_-]?key|secret|token|password|credential)\w*)\s*[:=]\s*([^\s\"']+)"),
    re.compile(r"(?i)\b(authorization:\s*bearer)\s+([^\s]+)"),
    re.compile(r"\bsk-ant-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
)


def _redact_sensitive_text(text: str) -> str:
    redacted = str(text)
    for pattern in SECRET_PATTERNS:
        redacted = pattern.sub(
            lambda match: f"{match.group(1)}=***REDACTED***" if match.groups() else "***REDACTED***",
            redacted,
        )
    return redacted


# ---------------------------------------------------------------------------
# Child processes
# ---------------------------------------------------------------------------


def _signal_process_group(process: subprocess.Popen[str], sig: int) -> None:
    """Signal the session started for *process*; falls back to the child alone."""
    try:
        os.killpg(process.pid, sig)
        return
    except (ProcessLookupError, PermissionError):
        pass
    try:
        process.send_signal(sig)
    except OSError:
        pass


def _stop_process_group(process: subprocess.Popen[str], *, grace_seconds: float) -> str:
    """SIGTERM then SIGKILL the whole process group; return whatever stdout drained.

    Every wait is bounded by *grace_seconds*, so a descendant that escaped
    the group and still holds the pipe cannot block the caller.
    """
    for sig in (signal.SIGTERM, signal.SIGKILL):
        _signal_process_group(process, sig)
        try:
            output, _ = process.communicate(timeout=grace_seconds)
            return output or ""
        except subprocess.TimeoutExpired:
            continue
    for stream in (process.stdout, process.stderr):
        if stream is not None:
            stream.close()
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        pass
    return ""


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _append_log(context: RunContext, message: str, *, echo: bool = True) -> None:
    safe_message = _redact_sensitive_text(message)
    if echo:
        print(f"[{_clock_label()}][loop-{context.loop_id}] {safe_message}", flush=True)
    log_path = context.run_log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {safe_message}\n")


def _rotate_iteration_logs(context: RunContext, *, retention: int) -> int:
    """Keep the newest *retention* iteration logs for this loop; return removed count."""
    if retention < 0 or not context.log_dir.exists():
        return 0
    logs = [
        path
        for path in context.log_dir.glob(f"loop_{context.loop_id}_iter_*.log")
        if path.is_file()
    ]
    if len(logs) <= retention:
        return 0
    logs.sort(key=lambda path: path.stat().st_mtime, reverse=True)
    removed = 0
    for stale in logs[retention:]:
        stale.unlink(missing_ok=True)
        stale.with_name(stale.name[: -len(".log")] + ".check.json").unlink(missing_ok=True)
        removed += 1
    return removed
