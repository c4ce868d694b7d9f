from __future__ import annotations

from typing import Callable, Mapping, Optional, Sequence
import asyncio

from gitdeck.command_runner import CancellationToken, format_invocation
from gitdeck.config import AppConfig
from gitdeck.engine import RepoEngine
from gitdeck.environments import Invoker
from gitdeck.exceptions import CommandFailedError
from gitdeck.launcher import Launcher
from gitdeck.models import Transcript, utc_now
from gitdeck.storage import JsonStateStore


class FakeExecutor:
    """Stands in for ``command_runner.execute`` and records every invocation."""

    def __init__(self) -> None:
        self._outputs: dict[tuple[str, tuple[str, ...], str | None], tuple[int, str, str, float]] = {}
        self.calls: list[tuple[str, tuple[str, ...], str | None]] = []

    def set(
        self,
        args: Sequence[str],
        output: str = "",
        *,
        program: str = "git",
        cwd: str | None = None,
        exit_code: int = 0,
        stderr: str = "",
        delay: float = 0.0,
    ) -> None:
        self._outputs[(program, tuple(args), cwd)] = (exit_code, output, stderr, delay)

    def fail(self, args: Sequence[str], stderr: str = "fatal", **kwargs) -> None:
        self.set(args, exit_code=kwargs.pop("exit_code", 1), stderr=stderr, **kwargs)

    async def __call__(
        self,
        program: str,
        args: Sequence[str],
        *,
        cwd: str | None = None,
        timeout: float = 30.0,
        token: Optional[CancellationToken] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> Transcript:
        key = tuple(args)
        self.calls.append((program, key, cwd))
        exit_code, stdout, stderr, delay = self._outputs.get(
            (program, key, cwd),
            self._outputs.get((program, key, None), (0, "", "", 0.0)),
        )
        started_at = utc_now()
        if delay:
            await asyncio.sleep(delay)
        transcript = Transcript(
            command=format_invocation(program, args),
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            started_at=started_at,
            finished_at=utc_now(),
        )
        if exit_code != 0:
            raise CommandFailedError("Command failed", transcript)
        return transcript

    def git_calls(self) -> list[tuple[str, ...]]:
        return [args for program, args, _ in self.calls if program == "git"]

    def subcommands(self) -> list[str]:
        return [args[0] for args in self.git_calls()]


class RecordingSpawn:
    def __init__(self, error: Exception | None = None) -> None:
        self.launched: list[tuple[list[str], str | None]] = []
        self._error = error

    async def __call__(self, argv: Sequence[str], cwd: str | None = None) -> None:
        if self._error is not None:
            raise self._error
        self.launched.append((list(argv), cwd))


def make_engine(
    tmp_path,
    fake: FakeExecutor,
    spawn: Callable | None = None,
    **config_values,
) -> RepoEngine:
    config = AppConfig(state_path=str(tmp_path / "state.json"), **config_values)
    invoker = Invoker(runner=fake, bridge=config.guest_bridge)
    launcher = Launcher(
        invoker,
        config.file_manager_command,
        config.terminal_command,
        spawn=spawn or RecordingSpawn(),
    )
    return RepoEngine(JsonStateStore(config.state_path), config, invoker=invoker, launcher=launcher)
