"""Thin wrappers over the git CLI used by :mod:`workgraph.graph.vcs`."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from .errors import ExternalFailureError
from .git_coordinator import run_serialized


def _run_git(project_dir: Path, *args: str) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    return run_serialized(
        lambda: subprocess.run(command, cwd=project_dir, capture_output=True, text=True, check=False),
        " ".join(command[:2]),
    )


def _git_checked(project_dir: Path, *args: str) -> str:
    """Run git and return stdout; a non-zero exit raises ``GIT_COMMAND_FAILED``."""
    result = _run_git(project_dir, *args)
    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()
        logger.warning("git {} failed in {}: {}", " ".join(args), project_dir, detail)
        raise ExternalFailureError(
            "GIT_COMMAND_FAILED",
            f"git {' '.join(args)} failed: {detail or f'exit status {result.returncode}'}",
            {"args": list(args), "returncode": result.returncode},
        )
    return result.stdout


def _git_stdout(project_dir: Path, *args: str) -> Optional[str]:
    """Stripped stdout of a query, or None when git reports failure."""
    result = _run_git(project_dir, *args)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_is_repo(project_dir: Path) -> bool:
    try:
        return _git_stdout(project_dir, "rev-parse", "--is-inside-work-tree") == "true"
    except FileNotFoundError:
        # git binary missing
        return False


def _git_current_branch(project_dir: Path) -> Optional[str]:
    return _git_stdout(project_dir, "rev-parse", "--abbrev-ref", "HEAD")


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    return _run_git(project_dir, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}").returncode == 0


def _git_list_branches(project_dir: Path, pattern: str) -> list[str]:
    out = _git_stdout(project_dir, "branch", "--list", "--format=%(refname:short)", pattern)
    return [line.strip() for line in (out or "").splitlines() if line.strip()]


def _git_has_changes(project_dir: Path) -> bool:
    return bool(_git_stdout(project_dir, "status", "--porcelain"))


def _git_has_staged_changes(project_dir: Path) -> bool:
    # exit status 1 means the index differs from HEAD
    return _run_git(project_dir, "diff", "--cached", "--quiet").returncode == 1


def _git_log_range(project_dir: Path, base: str, tip: str) -> list[dict[str, str]]:
    """Commits in ``base..tip``, oldest first."""
    out = _git_stdout(project_dir, "log", "--reverse", "--format=%H%x09%s", f"{base}..{tip}")
    commits = []
    for line in (out or "").splitlines():
        sha, _, subject = line.partition("\t")
        if sha:
            commits.append({"sha": sha, "message": subject})
    return commits


def _ensure_ignore_entry(path: Path, entry: str) -> bool:
    """Append *entry* to an ignore/exclude file unless an equivalent line exists.

    Returns True when the file was changed.
    """
    existing = path.read_text(encoding="utf-8") if path.exists() else ""
    wanted = entry.strip().rstrip("/")
    for line in existing.splitlines():
        line = line.strip()
        if line and not line.startswith("#") and line.rstrip("/") == wanted:
            return False
    if existing and not existing.endswith("\n"):
        existing += "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(existing + entry + "\n", encoding="utf-8")
    return True
