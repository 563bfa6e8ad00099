"""ralphci workspace helpers: git probes, commits, reverts, and file snapshots."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

from ralphci.constants import (
    COMMIT_MESSAGE_TEMPLATE,
    NO_GIT_REVISION,
    PLAN_FILENAME,
    STATE_DIRNAME,
)
from ralphci.models import WorkspaceError
from ralphci.utils import _compact_log_text


# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------


def _run_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    command = ["git", "-C", str(repo_root), *args]
    try:
        return subprocess.run(
            command,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(command, 127, "", f"git not found: {exc}")
    except OSError as exc:
        return subprocess.CompletedProcess(command, 1, "", str(exc))


def _git_failure_detail(result: subprocess.CompletedProcess[str], fallback: str) -> str:
    return _compact_log_text((result.stderr or result.stdout or fallback).strip())


def _is_git_worktree(repo_root: Path) -> bool:
    check = _run_git(repo_root, ["rev-parse", "--is-inside-work-tree"])
    return check.returncode == 0 and check.stdout.strip() == "true"


def _head_revision(repo_root: Path, *, short: bool = False) -> str | None:
    args = ["rev-parse", "--short", "HEAD"] if short else ["rev-parse", "HEAD"]
    head = _run_git(repo_root, args)
    if head.returncode != 0:
        return None
    return head.stdout.strip() or None


def _current_branch(repo_root: Path) -> str | None:
    branch = _run_git(repo_root, ["rev-parse", "--abbrev-ref", "HEAD"])
    if branch.returncode != 0:
        return None
    return branch.stdout.strip() or None


def _unique_lines(text: str) -> list[str]:
    paths: list[str] = []
    seen: set[str] = set()
    for raw_line in text.splitlines():
        path = raw_line.strip()
        if not path or path in seen:
            continue
        seen.add(path)
        paths.append(path)
    return paths


def _diff_paths_between(repo_root: Path, before: str, after: str) -> list[str]:
    diff = _run_git(repo_root, ["diff", "--name-only", before, after])
    if diff.returncode != 0:
        raise WorkspaceError(
            f"git diff {before}..{after} failed: {_git_failure_detail(diff, 'unknown git error')}"
        )
    return [path for path in _unique_lines(diff.stdout) if not _is_harness_path(path)]


def _collect_git_status_entries(repo_root: Path) -> list[tuple[str, str]]:
    status = _run_git(repo_root, ["status", "--porcelain", "--untracked-files=all"])
    if status.returncode != 0:
        return []
    entries: list[tuple[str, str]] = []
    for raw_line in status.stdout.splitlines():
        line = raw_line.rstrip("\n")
        if len(line) < 4:
            continue
        status_code = line[:2]
        payload = line[3:].strip()
        if " -> " in payload:
            payload = payload.split(" -> ", 1)[1].strip()
        if payload.startswith('"') and payload.endswith('"') and len(payload) >= 2:
            payload = payload[1:-1]
        if payload:
            entries.append((payload, status_code))
    return entries


def _collect_pending_paths(repo_root: Path) -> list[str]:
    """Distinct staged, unstaged, and untracked paths, harness files excluded."""
    changed: list[str] = []
    seen: set[str] = set()
    for path, _status_code in _collect_git_status_entries(repo_root):
        if path in seen or _is_harness_path(path):
            continue
        seen.add(path)
        changed.append(path)
    return changed


_HARNESS_EXCLUDE_PATHSPECS = (
    f":(exclude){STATE_DIRNAME}/logs",
    f":(exclude){STATE_DIRNAME}/state_*",
    f":(exclude){STATE_DIRNAME}/report_*",
)


def _is_harness_path(path: str) -> bool:
    """Harness bookkeeping under the state dir; the plan file is agent work."""
    normalized = path.replace("\\", "/")
    if not normalized.startswith(f"{STATE_DIRNAME}/"):
        return False
    return normalized != f"{STATE_DIRNAME}/{PLAN_FILENAME}"


# ---------------------------------------------------------------------------
# Filesystem snapshots (non-git workspaces)
# ---------------------------------------------------------------------------


def _collect_filesystem_snapshot(repo_root: Path) -> dict[str, tuple[float, int]]:
    """Walk the workspace and collect (mtime, size) for every file."""
    snapshot: dict[str, tuple[float, int]] = {}
    root = repo_root.resolve()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [
            d for d in dirnames
            if not d.startswith(".") and d not in {"__pycache__", "node_modules"}
        ]
        for fname in filenames:
            fpath = Path(dirpath) / fname
            try:
                stat = fpath.stat()
                rel = fpath.relative_to(root).as_posix()
                snapshot[rel] = (stat.st_mtime, stat.st_size)
            except (OSError, ValueError):
                continue
    # The plan lives in a hidden dir but is agent work, as in git mode.
    plan_rel = f"{STATE_DIRNAME}/{PLAN_FILENAME}"
    try:
        stat = (root / plan_rel).stat()
    except OSError:
        return snapshot
    snapshot[plan_rel] = (stat.st_mtime, stat.st_size)
    return snapshot


def _filesystem_snapshot_delta_paths(
    before: dict[str, tuple[float, int]],
    after: dict[str, tuple[float, int]],
) -> list[str]:
    changed: set[str] = set()
    for path, signature in after.items():
        if before.get(path) != signature:
            changed.add(path)
    for path in before:
        if path not in after:
            changed.add(path)
    return sorted(changed)


# ---------------------------------------------------------------------------
# Workspace adapter
# ---------------------------------------------------------------------------


class Workspace:
    """Git operations the control loop performs on the managed project."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir

    def is_git(self) -> bool:
        return _is_git_worktree(self.project_dir)

    def revision(self) -> str | None:
        return _head_revision(self.project_dir)

    def short_revision(self) -> str:
        return _head_revision(self.project_dir, short=True) or NO_GIT_REVISION

    def branch(self) -> str:
        return _current_branch(self.project_dir) or NO_GIT_REVISION

    def changed_paths_between(self, before: str, after: str) -> list[str]:
        return _diff_paths_between(self.project_dir, before, after)

    def pending_paths(self) -> list[str]:
        return _collect_pending_paths(self.project_dir)

    def commit_all(self, *, loop_id: str, iteration: int) -> str:
        """Stage everything and create one commit; return a status line.

        Harness bookkeeping files stay out of the commit and git hooks are
        bypassed. An empty index is reported, not raised.
        """
        if not self.is_git():
            return "commit: skipped (not a git work tree)"
        add = _run_git(self.project_dir, ["add", "-A", "--", ".", *_HARNESS_EXCLUDE_PATHSPECS])
        if add.returncode != 0:
            raise WorkspaceError(f"git add failed: {_git_failure_detail(add, 'git add failed')}")

        staged = _run_git(self.project_dir, ["diff", "--cached", "--quiet"])
        if staged.returncode == 0:
            return "commit: skipped (no changes)"
        if staged.returncode != 1:
            raise WorkspaceError(
                f"staged check failed: {_git_failure_detail(staged, 'git diff --cached failed')}"
            )

        message = COMMIT_MESSAGE_TEMPLATE.format(loop_id=loop_id, iteration=iteration)
        commit = _run_git(self.project_dir, ["commit", "--no-verify", "-m", message])
        if commit.returncode != 0:
            raise WorkspaceError(
                f"git commit failed: {_git_failure_detail(commit, 'git commit failed')}"
            )
        commit_id = _head_revision(self.project_dir, short=True) or "<unknown>"
        return f"commit: created {commit_id}: {message}"

    def reset_hard(self, revision: str) -> None:
        reset = _run_git(self.project_dir, ["reset", "--hard", revision])
        if reset.returncode != 0:
            raise WorkspaceError(
                f"git reset --hard {revision} failed: "
                f"{_git_failure_detail(reset, 'git reset failed')}"
            )
