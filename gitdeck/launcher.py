"""Fire-and-forget launching of editors, file managers and terminals."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Awaitable, Callable, Optional, Sequence

from .environments import Invoker
from .models import RepoEnvironment

logger = logging.getLogger(__name__)

SpawnFn = Callable[[Sequence[str], Optional[str]], Awaitable[None]]


async def spawn_detached(argv: Sequence[str], cwd: Optional[str] = None) -> None:
    """Start ``argv`` without waiting for it; raises OSError if it cannot start."""
    kwargs: dict = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = 0x00000008 | 0x00000200  # DETACHED_PROCESS | NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True
    await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        **kwargs,
    )


class Launcher:
    def __init__(
        self,
        invoker: Invoker,
        file_manager_command: str,
        terminal_command: str,
        spawn: SpawnFn = spawn_detached,
    ) -> None:
        self._invoker = invoker
        self._file_manager_command = file_manager_command
        self._terminal_command = terminal_command
        self._spawn = spawn

    async def _launch(self, argv: list[str], cwd: Optional[str]) -> None:
        if cwd is not None and not os.path.isdir(cwd):
            cwd = None
        logger.debug("Launching %s", argv)
        await self._spawn(argv, cwd)

    async def open_in_editor(self, environment: RepoEnvironment, path: str, template: str) -> None:
        argv = self._invoker.launch_argv(environment, path, template)
        await self._launch(argv, self._invoker.host_path(environment, path))

    async def open_in_file_manager(self, environment: RepoEnvironment, path: str) -> None:
        argv = self._invoker.host_launch_argv(environment, path, self._file_manager_command)
        await self._launch(argv, self._invoker.host_path(environment, path))

    async def open_in_terminal(self, environment: RepoEnvironment, path: str) -> None:
        argv = self._invoker.host_launch_argv(environment, path, self._terminal_command)
        await self._launch(argv, self._invoker.host_path(environment, path))
