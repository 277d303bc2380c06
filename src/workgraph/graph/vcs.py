"""Version-control collaborator used by git-mode dispatch.

The coordinator talks to a :class:`VersionControl`; :class:`GitVersionControl`
implements it by shelling out to git.  Every failing command raises
:class:`~workgraph.errors.ExternalFailureError` (code ``GIT_COMMAND_FAILED``)
and nothing is retried.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol

from loguru import logger

from ..errors import PreconditionFailedError
from ..git_utils import (
    _ensure_ignore_entry,
    _git_branch_exists,
    _git_checked,
    _git_current_branch,
    _git_has_changes,
    _git_has_staged_changes,
    _git_is_repo,
    _git_list_branches,
    _git_log_range,
)


class VersionControl(Protocol):
    def is_available(self) -> bool: ...

    def current_branch(self) -> Optional[str]: ...

    def current_revision(self) -> str: ...

    def has_uncommitted_changes(self) -> bool: ...

    def ensure_excluded(self, path: Path) -> None: ...

    def branch_exists(self, name: str) -> bool: ...

    def list_branches(self, pattern: str) -> list[str]: ...

    def create_branch(self, name: str) -> None: ...

    def checkout(self, name: str) -> None: ...

    def commit(self, message: str, allow_empty: bool = False) -> str: ...

    def reset_hard(self, revision: str) -> None: ...

    def discard_untracked(self) -> None: ...

    def merge(self, strategy: str, source: str, target: str, message: Optional[str] = None) -> None: ...

    def delete_branch(self, name: str) -> None: ...

    def commits_between(self, base: str, tip: str) -> list[dict[str, str]]: ...


class GitVersionControl:
    """:class:`VersionControl` backed by the git CLI in *project_dir*."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir

    def is_available(self) -> bool:
        return self.project_dir.exists() and _git_is_repo(self.project_dir)

    def current_branch(self) -> Optional[str]:
        return _git_current_branch(self.project_dir)

    def current_revision(self) -> str:
        return _git_checked(self.project_dir, "rev-parse", "HEAD").strip()

    def revision_of(self, ref: str) -> str:
        return _git_checked(self.project_dir, "rev-parse", ref).strip()

    def has_uncommitted_changes(self) -> bool:
        return _git_has_changes(self.project_dir)

    def ensure_excluded(self, path: Path) -> None:
        """Keep *path* (e.g. the state directory) out of commits, resets and dirty checks."""
        try:
            relative = path.resolve().relative_to(self.project_dir.resolve())
        except ValueError:
            return
        exclude_path = Path(_git_checked(self.project_dir, "rev-parse", "--git-path", "info/exclude").strip())
        if not exclude_path.is_absolute():
            exclude_path = self.project_dir / exclude_path
        entry = f"/{relative.as_posix()}/"
        if _ensure_ignore_entry(exclude_path, entry):
            logger.debug("Excluded {} from git in {}", entry, self.project_dir)

    def branch_exists(self, name: str) -> bool:
        return _git_branch_exists(self.project_dir, name)

    def list_branches(self, pattern: str) -> list[str]:
        return _git_list_branches(self.project_dir, pattern)

    def create_branch(self, name: str) -> None:
        """Create *name* at HEAD and check it out."""
        _git_checked(self.project_dir, "checkout", "-b", name)

    def checkout(self, name: str) -> None:
        _git_checked(self.project_dir, "checkout", name)

    def commit(self, message: str, allow_empty: bool = False) -> str:
        """Stage everything and commit; returns HEAD (unchanged when nothing was staged)."""
        _git_checked(self.project_dir, "add", "-A")
        if _git_has_staged_changes(self.project_dir):
            _git_checked(self.project_dir, "commit", "-m", message)
        elif allow_empty:
            _git_checked(self.project_dir, "commit", "--allow-empty", "-m", message)
        return self.current_revision()

    def reset_hard(self, revision: str) -> None:
        _git_checked(self.project_dir, "reset", "--hard", revision)

    def discard_untracked(self) -> None:
        """Remove untracked files and directories; excluded paths such as the state directory survive."""
        _git_checked(self.project_dir, "clean", "-fd")

    def merge(self, strategy: str, source: str, target: str, message: Optional[str] = None) -> None:
        """Bring *source* onto *target* using one of the dispatch merge strategies.

        ``sequential`` rebases and fast-forwards (one commit per task),
        ``squash`` collapses everything into one commit, ``cherry-pick``
        applies the changes to the working tree without committing and
        ``skip`` only switches back to *target*.
        """
        logger.info("Merging {} into {} with strategy {}", source, target, strategy)
        if strategy == "sequential":
            _git_checked(self.project_dir, "checkout", source)
            _git_checked(self.project_dir, "rebase", target)
            _git_checked(self.project_dir, "checkout", target)
            _git_checked(self.project_dir, "merge", "--ff-only", source)
        elif strategy == "squash":
            _git_checked(self.project_dir, "checkout", target)
            _git_checked(self.project_dir, "merge", "--squash", source)
            if _git_has_staged_changes(self.project_dir):
                _git_checked(self.project_dir, "commit", "-m", message or f"Merge {source}")
        elif strategy == "cherry-pick":
            base = self.revision_of(target)
            _git_checked(self.project_dir, "checkout", target)
            if self.commits_between(base, source):
                _git_checked(self.project_dir, "cherry-pick", "--no-commit", f"{base}..{source}")
        elif strategy == "skip":
            _git_checked(self.project_dir, "checkout", target)
        else:
            raise PreconditionFailedError("INVALID_PARAMS", f"Unknown merge strategy '{strategy}'")

    def delete_branch(self, name: str) -> None:
        _git_checked(self.project_dir, "branch", "-D", name)

    def commits_between(self, base: str, tip: str) -> list[dict[str, str]]:
        return _git_log_range(self.project_dir, base, tip)
