from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union


HISTORY_LIMIT = 40
DEFAULT_IGNORE_PATTERNS = ("node_modules", "dist", "build", ".venv", ".idea")
DEFAULT_EDITOR_COMMAND = "code <path>"
PATH_PLACEHOLDER = "<path>"
MIN_REFRESH_INTERVAL = 30


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(6)}"


@dataclass(frozen=True)
class NativeEnvironment:
    kind = "native"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind}

    def describe(self) -> str:
        return "native"


@dataclass(frozen=True)
class GuestEnvironment:
    guest_id: str
    kind = "guest"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "guest_id": self.guest_id}

    def describe(self) -> str:
        return f"guest:{self.guest_id}"


RepoEnvironment = Union[NativeEnvironment, GuestEnvironment]


def environment_from_dict(data: object) -> RepoEnvironment:
    if isinstance(data, dict) and data.get("kind") == "guest":
        guest_id = str(data.get("guest_id") or "").strip()
        if guest_id:
            return GuestEnvironment(guest_id)
    return NativeEnvironment()


@dataclass(frozen=True)
class Transcript:
    command: str
    exit_code: Optional[int]
    stdout: str
    stderr: str
    started_at: str
    finished_at: str
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transcript":
        exit_code = data.get("exit_code")
        return cls(
            command=str(data.get("command", "")),
            exit_code=exit_code if isinstance(exit_code, int) else None,
            stdout=str(data.get("stdout", "")),
            stderr=str(data.get("stderr", "")),
            started_at=str(data.get("started_at", "")),
            finished_at=str(data.get("finished_at", "")),
            timed_out=bool(data.get("timed_out", False)),
        )


@dataclass(frozen=True)
class ChangedFile:
    path: str
    index_status: str
    worktree_status: str
    is_untracked: bool = False
    is_staged: bool = False
    is_unstaged: bool = False
    is_conflicted: bool = False

    @property
    def code(self) -> str:
        return f"{self.index_status}{self.worktree_status}"


@dataclass(frozen=True)
class StatusSummary:
    needs_attention: bool = False
    is_dirty: bool = False
    has_staged: bool = False
    has_untracked: bool = False
    staged_count: int = 0
    modified_count: int = 0
    untracked_count: int = 0
    conflicted_count: int = 0
    changed_files: tuple[ChangedFile, ...] = ()
    branch: str = "detached"
    is_detached: bool = False
    has_upstream: bool = False
    ahead: int = 0
    behind: int = 0
    merge_in_progress: bool = False
    rebase_in_progress: bool = False
    inaccessible: bool = False
    refreshed_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["changed_files"] = [asdict(item) for item in self.changed_files]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusSummary":
        known = {name for name in cls.__dataclass_fields__}
        values = {key: value for key, value in data.items() if key in known}
        values["changed_files"] = tuple(
            ChangedFile(**item)
            for item in data.get("changed_files") or []
            if isinstance(item, dict)
        )
        return cls(**values)


@dataclass(frozen=True)
class ActiveOperation:
    id: str
    name: str
    started_at: str


@dataclass
class RepoRecord:
    id: str
    display_name: str
    path: str
    environment: RepoEnvironment
    created_at: str
    updated_at: str
    status: Optional[StatusSummary] = None
    active_operation: Optional[ActiveOperation] = None
    last_error: Optional[str] = None
    last_error_transcript: Optional[Transcript] = None
    transcripts: list[Transcript] = field(default_factory=list)

    def push_transcript(self, transcript: Transcript, limit: int = HISTORY_LIMIT) -> None:
        self.transcripts.append(transcript)
        if len(self.transcripts) > limit:
            del self.transcripts[: len(self.transcripts) - limit]

    def clear_error(self) -> None:
        self.last_error = None
        self.last_error_transcript = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "path": self.path,
            "environment": self.environment.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "status": self.status.to_dict() if self.status else None,
            "last_error": self.last_error,
            "last_error_transcript": (
                self.last_error_transcript.to_dict()
                if self.last_error_transcript
                else None
            ),
            "transcripts": [item.to_dict() for item in self.transcripts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RepoRecord":
        status = data.get("status")
        error_transcript = data.get("last_error_transcript")
        return cls(
            id=str(data["id"]),
            display_name=str(data.get("display_name") or data["path"]),
            path=str(data["path"]),
            environment=environment_from_dict(data.get("environment")),
            created_at=str(data.get("created_at", "")),
            updated_at=str(data.get("updated_at", "")),
            status=StatusSummary.from_dict(status) if isinstance(status, dict) else None,
            last_error=data.get("last_error"),
            last_error_transcript=(
                Transcript.from_dict(error_transcript)
                if isinstance(error_transcript, dict)
                else None
            ),
            transcripts=[
                Transcript.from_dict(item)
                for item in data.get("transcripts") or []
                if isinstance(item, dict)
            ],
        )


@dataclass(frozen=True)
class GuestRoot:
    id: str
    guest_id: str
    path: str


@dataclass(frozen=True)
class Settings:
    native_roots: tuple[str, ...] = ()
    guest_roots: tuple[GuestRoot, ...] = ()
    ignore_patterns: tuple[str, ...] = DEFAULT_IGNORE_PATTERNS
    ignored_repositories: tuple[str, ...] = ()
    editor_command_native: str = DEFAULT_EDITOR_COMMAND
    editor_command_guest: str = DEFAULT_EDITOR_COMMAND
    refresh_interval_seconds: int = 180
    fetch_on_refresh: bool = True

    def editor_command_for(self, environment: RepoEnvironment) -> str:
        if isinstance(environment, GuestEnvironment):
            return self.editor_command_guest
        return self.editor_command_native

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, tuple):
                data[key] = list(value)
        return data


@dataclass(frozen=True)
class Snapshot:
    repositories: tuple[RepoRecord, ...]
    settings: Settings
    generated_at: str

    def find(self, repository_id: str) -> Optional[RepoRecord]:
        return next((r for r in self.repositories if r.id == repository_id), None)


@dataclass(frozen=True)
class ActionResult:
    ok: bool
    message: str
    snapshot: Snapshot
    transcript: Optional[Transcript] = None


@dataclass(frozen=True)
class AddRepositoryInput:
    path: str
    environment: RepoEnvironment = field(default_factory=NativeEnvironment)
    display_name: Optional[str] = None
