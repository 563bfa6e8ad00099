from __future__ import annotations

from pathlib import Path

from ralphci.models import WorkspaceSnapshot
from ralphci.workspace import (
    Workspace,
    _collect_filesystem_snapshot,
    _filesystem_snapshot_delta_paths,
)


class ProgressTracker:
    """Measures how many files an iteration touched.

    Git workspaces are compared by revision and, when HEAD did not move, by
    pending (staged, unstaged, untracked) paths.  Workspaces outside git fall
    back to an (mtime, size) walk of the project tree.
    """

    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace

    @property
    def project_dir(self) -> Path:
        return self.workspace.project_dir

    def snapshot(self) -> WorkspaceSnapshot:
        if self.workspace.is_git():
            return WorkspaceSnapshot(revision=self.workspace.revision())
        return WorkspaceSnapshot(
            revision=None,
            files=_collect_filesystem_snapshot(self.project_dir),
        )

    def count_changed(self, before: WorkspaceSnapshot, after: WorkspaceSnapshot) -> int:
        if before.files is not None and after.files is not None:
            return len(_filesystem_snapshot_delta_paths(before.files, after.files))
        if before.revision and after.revision and before.revision != after.revision:
            return len(self.workspace.changed_paths_between(before.revision, after.revision))
        return len(self.workspace.pending_paths())
