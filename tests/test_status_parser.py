import itertools

import pytest

from gitdeck.status_parser import (
    HeaderKind,
    compute_needs_attention,
    parse_branch_header,
    parse_file_line,
    parse_status,
)


def test_parse_status_tracking_branch_with_mixed_changes() -> None:
    text = "## main...origin/main [ahead 2, behind 1]\n M src/a.ts\nA  src/b.ts\n?? src/c.ts"

    status = parse_status(text)

    assert status.branch == "main"
    assert status.has_upstream is True
    assert status.ahead == 2
    assert status.behind == 1
    assert status.modified_count == 1
    assert status.staged_count == 1
    assert status.untracked_count == 1
    assert status.is_dirty is True
    assert status.needs_attention is True
    assert [f.path for f in status.changed_files] == ["src/a.ts", "src/b.ts", "src/c.ts"]


def test_clean_tracking_branch_without_detail() -> None:
    status = parse_status("## main...origin/main\n")

    assert status.ahead == 0
    assert status.behind == 0
    assert status.has_upstream is True
    assert status.is_dirty is False
    assert status.needs_attention is False


def test_parse_is_deterministic() -> None:
    text = "## dev...origin/dev [behind 3]\nMM file.py\nR  old.py -> new.py\n"
    assert parse_status(text) == parse_status(text)


def test_short_lines_are_skipped() -> None:
    text = "## main\n M a.py\nM \nXY\n?? b.py\n"

    status = parse_status(text)

    assert status.modified_count == 1
    assert status.untracked_count == 1
    assert status.staged_count == 0
    assert len(status.changed_files) == 2


def test_empty_input_is_detached_zero_state() -> None:
    status = parse_status("")

    assert status.branch == "detached"
    assert status.is_detached is True
    assert status.is_dirty is False
    assert status.needs_attention is False
    assert status.changed_files == ()


@pytest.mark.parametrize(
    ("line", "kind", "branch", "ahead", "behind"),
    [
        ("## No commits yet on trunk", HeaderKind.NO_COMMITS, "trunk", 0, 0),
        ("## HEAD (no branch)", HeaderKind.DETACHED, "detached", 0, 0),
        ("## feature", HeaderKind.LOCAL, "feature", 0, 0),
        ("## main...origin/main [behind 4]", HeaderKind.TRACKING, "main", 0, 4),
        ("## main...origin/main [ahead 7]", HeaderKind.TRACKING, "main", 7, 0),
        ("## main...origin/main [gone]", HeaderKind.TRACKING, "main", 0, 0),
    ],
)
def test_parse_branch_header(line, kind, branch, ahead, behind) -> None:
    header = parse_branch_header(line)

    assert header.kind is kind
    assert header.branch == branch
    assert header.ahead == ahead
    assert header.behind == behind
    assert header.has_upstream is (kind is HeaderKind.TRACKING)


def test_local_branch_has_no_upstream() -> None:
    status = parse_status("## feature\n")

    assert status.branch == "feature"
    assert status.has_upstream is False
    assert status.is_detached is False


def test_rename_keeps_target_path() -> None:
    changed = parse_file_line("R  docs/old.md -> docs/new.md")

    assert changed is not None
    assert changed.path == "docs/new.md"
    assert changed.is_staged is True
    assert changed.is_unstaged is False


@pytest.mark.parametrize("code", ["UU", "AU", "UD", "AA", "DD"])
def test_conflict_codes(code: str) -> None:
    status = parse_status(f"## main\n{code} merge.txt\n")

    assert status.conflicted_count == 1
    assert status.changed_files[0].is_conflicted is True
    assert status.needs_attention is True


def test_untracked_entry_is_unstaged_only() -> None:
    changed = parse_file_line("?? notes.txt")

    assert changed is not None
    assert changed.is_untracked is True
    assert changed.is_unstaged is True
    assert changed.is_staged is False
    assert changed.code == "??"


def test_ahead_only_needs_attention_without_dirt() -> None:
    status = parse_status("## main...origin/main [ahead 1]\n")

    assert status.is_dirty is False
    assert status.needs_attention is True


def test_needs_attention_is_or_of_all_conditions() -> None:
    for combo in itertools.product([False, True], repeat=7):
        dirty, ahead, behind, conflicted, merge, rebase, fetch_failed = combo
        result = compute_needs_attention(
            dirty=dirty,
            ahead=1 if ahead else 0,
            behind=1 if behind else 0,
            conflicted=1 if conflicted else 0,
            merge_in_progress=merge,
            rebase_in_progress=rebase,
            fetch_failed=fetch_failed,
        )
        assert result is any(combo)
