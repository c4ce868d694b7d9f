"""Parser for ``git status --porcelain=v1 --branch`` output.

The output is treated as a two-production grammar: one branch header line
(``## ...``) and any number of file lines (``XY path``).  Both productions are
parsed by their own function so that every header shape is testable alone.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Optional

from .models import ChangedFile, StatusSummary

HEADER_MARKER = "## "
UNTRACKED_MARKER = "??"
RENAME_ARROW = " -> "
CONFLICT_CODE = "U"
NO_COMMITS_PREFIX = "No commits yet on "
DETACHED_PREFIX = "HEAD ("
DEFAULT_HEADER = "## HEAD (no branch)"

_AHEAD_RE = re.compile(r"ahead (\d+)")
_BEHIND_RE = re.compile(r"behind (\d+)")
_DETAIL_RE = re.compile(r"\[(.+?)\]")


class HeaderKind(enum.Enum):
    NO_COMMITS = "no_commits"
    DETACHED = "detached"
    TRACKING = "tracking"
    LOCAL = "local"


@dataclass(frozen=True)
class BranchHeader:
    kind: HeaderKind
    branch: str
    ahead: int = 0
    behind: int = 0

    @property
    def is_detached(self) -> bool:
        return self.kind is HeaderKind.DETACHED

    @property
    def has_upstream(self) -> bool:
        return self.kind is HeaderKind.TRACKING


def parse_branch_header(line: str) -> BranchHeader:
    summary = line[len(HEADER_MARKER):].strip() if line.startswith(HEADER_MARKER) else line.strip()
    if summary.startswith(DETACHED_PREFIX):
        return BranchHeader(HeaderKind.DETACHED, "detached")
    if summary.startswith(NO_COMMITS_PREFIX):
        return BranchHeader(HeaderKind.NO_COMMITS, summary[len(NO_COMMITS_PREFIX):].strip())
    local, sep, remote = summary.partition("...")
    branch = local.strip() or "unknown"
    if not sep:
        return BranchHeader(HeaderKind.LOCAL, branch)
    ahead = behind = 0
    detail = _DETAIL_RE.search(remote)
    if detail:
        ahead_match = _AHEAD_RE.search(detail.group(1))
        behind_match = _BEHIND_RE.search(detail.group(1))
        ahead = int(ahead_match.group(1)) if ahead_match else 0
        behind = int(behind_match.group(1)) if behind_match else 0
    return BranchHeader(HeaderKind.TRACKING, branch, ahead=ahead, behind=behind)


def _changed_path(raw: str) -> str:
    _, arrow, target = raw.partition(RENAME_ARROW)
    return target if arrow else raw


def parse_file_line(line: str) -> Optional[ChangedFile]:
    """Parse one ``XY path`` entry; returns None for lines too short to carry one."""
    if line.startswith(UNTRACKED_MARKER + " "):
        return ChangedFile(
            path=_changed_path(line[3:]),
            index_status="?",
            worktree_status="?",
            is_untracked=True,
            is_unstaged=True,
        )
    if len(line) < 4:
        return None
    index_status, worktree_status = line[0], line[1]
    return ChangedFile(
        path=_changed_path(line[3:]),
        index_status=index_status,
        worktree_status=worktree_status,
        is_staged=index_status not in (" ", "?"),
        is_unstaged=worktree_status != " ",
        is_conflicted=(
            CONFLICT_CODE in (index_status, worktree_status)
            or (index_status == "A" and worktree_status == "A")
            or (index_status == "D" and worktree_status == "D")
        ),
    )


def compute_needs_attention(
    *,
    dirty: bool,
    ahead: int = 0,
    behind: int = 0,
    conflicted: int = 0,
    merge_in_progress: bool = False,
    rebase_in_progress: bool = False,
    fetch_failed: bool = False,
) -> bool:
    return (
        dirty
        or ahead > 0
        or behind > 0
        or conflicted > 0
        or merge_in_progress
        or rebase_in_progress
        or fetch_failed
    )


def parse_status(text: str) -> StatusSummary:
    lines = [line for line in text.splitlines() if line]
    header_line = next((line for line in lines if line.startswith(HEADER_MARKER)), DEFAULT_HEADER)
    header = parse_branch_header(header_line)

    files: list[ChangedFile] = []
    staged = modified = untracked = conflicted = 0
    for line in lines:
        if line.startswith(HEADER_MARKER):
            continue
        changed = parse_file_line(line)
        if changed is None:
            continue
        files.append(changed)
        if changed.is_untracked:
            untracked += 1
            continue
        staged += changed.is_staged
        modified += changed.is_unstaged
        conflicted += changed.is_conflicted

    dirty = staged > 0 or modified > 0 or untracked > 0
    return StatusSummary(
        needs_attention=compute_needs_attention(
            dirty=dirty,
            ahead=header.ahead,
            behind=header.behind,
            conflicted=conflicted,
        ),
        is_dirty=dirty,
        has_staged=staged > 0,
        has_untracked=untracked > 0,
        staged_count=staged,
        modified_count=modified,
        untracked_count=untracked,
        conflicted_count=conflicted,
        changed_files=tuple(files),
        branch=header.branch,
        is_detached=header.is_detached,
        has_upstream=header.has_upstream,
        ahead=header.ahead,
        behind=header.behind,
    )
