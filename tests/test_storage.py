import json

from gitdeck.models import (
    GuestEnvironment,
    RepoRecord,
    Settings,
    StatusSummary,
    Transcript,
)
from gitdeck.status_parser import parse_status
from gitdeck.storage import JsonStateStore, PersistedState


def _record() -> RepoRecord:
    record = RepoRecord(
        id="repo_1",
        display_name="api",
        path="/home/me/api",
        environment=GuestEnvironment("Ubuntu"),
        created_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-01T00:00:00+00:00",
        status=parse_status("## main...origin/main [ahead 1]\n M a.py\n"),
        last_error="Push failed. Exit code 1.",
    )
    record.push_transcript(
        Transcript("git push --porcelain", 1, "", "rejected", "t0", "t1")
    )
    record.last_error_transcript = record.transcripts[-1]
    return record


def test_missing_file_loads_defaults(tmp_path) -> None:
    state = JsonStateStore(str(tmp_path / "nope.json")).load()

    assert state.settings == Settings()
    assert state.repositories == []


def test_corrupted_file_loads_defaults(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")

    state = JsonStateStore(str(path)).load()

    assert state.settings == Settings()
    assert state.repositories == []


def test_save_and_load_preserves_records(tmp_path) -> None:
    store = JsonStateStore(str(tmp_path / "nested" / "state.json"))
    store.save(PersistedState(settings=Settings(native_roots=("/src",)), repositories=[_record()]))

    state = store.load()

    assert state.settings.native_roots == ("/src",)
    loaded = state.repositories[0]
    assert loaded.environment == GuestEnvironment("Ubuntu")
    assert isinstance(loaded.status, StatusSummary)
    assert loaded.status.ahead == 1
    assert loaded.status.changed_files[0].path == "a.py"
    assert loaded.last_error_transcript.stderr == "rejected"
    assert loaded.transcripts[0].exit_code == 1
    assert not (tmp_path / "nested" / "state.json.tmp").exists()


def test_unreadable_records_are_dropped(tmp_path) -> None:
    path = tmp_path / "state.json"
    good = _record().to_dict()
    path.write_text(
        json.dumps({"repositories": [{"display_name": "no path"}, "junk", good]}),
        encoding="utf-8",
    )

    state = JsonStateStore(str(path)).load()

    assert [r.id for r in state.repositories] == ["repo_1"]
