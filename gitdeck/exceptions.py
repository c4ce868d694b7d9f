"""Exception hierarchy shared by the engine and its collaborators."""

from __future__ import annotations

from typing import Optional

from .models import Transcript


class GitdeckError(Exception):
    """Base error for all custom exceptions."""


class ValidationError(GitdeckError):
    """Raised when input is rejected before any process is spawned."""


class RepositoryNotFound(ValidationError):
    def __init__(self, repository_id: str) -> None:
        super().__init__("Repository not found.")
        self.repository_id = repository_id


class CommandError(GitdeckError):
    """Raised when an external command could not complete successfully."""

    def __init__(self, message: str, transcript: Transcript) -> None:
        super().__init__(message)
        self.transcript = transcript

    @property
    def exit_code(self) -> Optional[int]:
        return self.transcript.exit_code


class SpawnError(CommandError):
    """Raised when the program could not be launched at all."""


class CommandFailedError(CommandError):
    """Raised when a process exited non-zero, timed out or was cancelled."""


class OperationCancelled(GitdeckError):
    """Raised when a queued operation is aborted before or while running."""
