"""JSON persistence for the repository catalog and settings."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field

from .config import parse_settings
from .models import RepoRecord, Settings

logger = logging.getLogger(__name__)


@dataclass
class PersistedState:
    settings: Settings = field(default_factory=Settings)
    repositories: list[RepoRecord] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "settings": self.settings.to_dict(),
            "repositories": [repo.to_dict() for repo in self.repositories],
        }


class JsonStateStore:
    def __init__(self, path: str) -> None:
        self.path = os.path.expanduser(path)

    def load(self) -> PersistedState:
        """Read the state file, falling back to defaults when it is unusable.

        Records that cannot be decoded are dropped one by one; the active
        operation of every record is always reset since nothing can be
        running in a fresh process.
        """
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return PersistedState()
        except json.JSONDecodeError as exc:
            logger.warning("Invalid state file format %s: %s", self.path, exc)
            return PersistedState()
        except OSError as exc:
            logger.warning("Failed to read state file %s: %s", self.path, exc)
            return PersistedState()
        if not isinstance(data, dict):
            return PersistedState()
        repositories: list[RepoRecord] = []
        raw_repositories = data.get("repositories")
        for item in raw_repositories if isinstance(raw_repositories, list) else []:
            if not isinstance(item, dict):
                continue
            try:
                record = RepoRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Dropping unreadable repository entry: %s", exc)
                continue
            record.active_operation = None
            repositories.append(record)
        return PersistedState(settings=parse_settings(data.get("settings")), repositories=repositories)

    def save(self, state: PersistedState) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(state.to_dict(), handle, indent=2)
        os.replace(tmp_path, self.path)
