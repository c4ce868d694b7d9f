"""Environment dispatch for git invocations and filesystem probes.

Every repository lives either on the host (``NativeEnvironment``) or inside a
guest reachable only through a bridge program (``GuestEnvironment``).  The
``Invoker`` picks the backend for a repository's environment; no other module
branches on the environment kind.
"""

from __future__ import annotations

import asyncio
import logging
import ntpath
import os
import posixpath
import shlex
import subprocess
import sys
from typing import Callable, Optional, Protocol, Sequence

from .command_runner import (
    CancellationToken,
    ExecuteFn,
    execute,
    non_interactive_env,
    shell_escape,
)
from .exceptions import CommandError
from .models import (
    PATH_PLACEHOLDER,
    GuestEnvironment,
    NativeEnvironment,
    RepoEnvironment,
    Transcript,
)

logger = logging.getLogger(__name__)

GIT_MARKER = ".git"
DEFAULT_BRIDGE = "wsl.exe"
PROBE_TIMEOUT = 10.0
GUEST_SCAN_TIMEOUT = 90.0
NON_INTERACTIVE_PREFIX = (
    "GIT_TERMINAL_PROMPT=0 GCM_INTERACTIVE=Never "
    "GIT_SSH_COMMAND='ssh -o BatchMode=yes'"
)

IgnoreFn = Callable[[str], bool]


class EnvironmentBackend(Protocol):
    async def run_git(
        self,
        path: str,
        args: Sequence[str],
        *,
        timeout: float,
        token: Optional[CancellationToken] = None,
    ) -> Transcript: ...

    async def path_exists(
        self, path: str, *, token: Optional[CancellationToken] = None
    ) -> Optional[bool]: ...

    async def git_path_exists(
        self,
        repo_path: str,
        resolved: str,
        *,
        directory: bool,
        token: Optional[CancellationToken] = None,
    ) -> bool: ...

    async def find_repositories(
        self, root: str, should_ignore: IgnoreFn, max_depth: int
    ) -> list[str]: ...

    def normalize_path(self, path: str) -> str: ...

    def host_path(self, path: str) -> str: ...

    def key(self, path: str) -> str: ...

    def render(self, template: str, path: str) -> str: ...

    def launch_argv(self, path: str, command: str) -> list[str]: ...


def render_template(template: str, quoted_path: str) -> str:
    if PATH_PLACEHOLDER in template:
        return template.replace(PATH_PLACEHOLDER, quoted_path)
    return f"{template} {quoted_path}"


def host_quote(path: str) -> str:
    if sys.platform == "win32":
        return subprocess.list2cmdline([path])
    return shlex.quote(path)


def walk_for_repositories(root: str, should_ignore: IgnoreFn, max_depth: int) -> list[str]:
    found: list[str] = []

    def walk(current: str, depth: int) -> None:
        if depth > max_depth or should_ignore(current):
            return
        try:
            with os.scandir(current) as it:
                entries = list(it)
        except OSError as exc:
            logger.debug("Skipping unreadable directory %s: %s", current, exc)
            return
        if any(e.name == GIT_MARKER and e.is_dir(follow_symlinks=False) for e in entries):
            found.append(current)
            return
        for entry in sorted(entries, key=lambda e: e.name):
            if entry.name == GIT_MARKER or not entry.is_dir(follow_symlinks=False):
                continue
            if should_ignore(entry.path):
                continue
            walk(entry.path, depth + 1)

    walk(root, 0)
    return found


class NativeBackend:
    def __init__(self, runner: ExecuteFn = execute) -> None:
        self._execute = runner

    async def run_git(
        self,
        path: str,
        args: Sequence[str],
        *,
        timeout: float,
        token: Optional[CancellationToken] = None,
    ) -> Transcript:
        return await self._execute(
            "git",
            list(args),
            cwd=path,
            timeout=timeout,
            token=token,
            env=non_interactive_env(),
        )

    async def path_exists(
        self, path: str, *, token: Optional[CancellationToken] = None
    ) -> Optional[bool]:
        try:
            os.stat(path)
        except (FileNotFoundError, NotADirectoryError):
            return False
        except OSError:
            return None
        return True

    async def git_path_exists(
        self,
        repo_path: str,
        resolved: str,
        *,
        directory: bool,
        token: Optional[CancellationToken] = None,
    ) -> bool:
        target = resolved if os.path.isabs(resolved) else os.path.join(repo_path, resolved)
        return os.path.isdir(target) if directory else os.path.exists(target)

    async def find_repositories(
        self, root: str, should_ignore: IgnoreFn, max_depth: int
    ) -> list[str]:
        return await asyncio.to_thread(walk_for_repositories, root, should_ignore, max_depth)

    def normalize_path(self, path: str) -> str:
        return os.path.abspath(os.path.expanduser(path))

    def host_path(self, path: str) -> str:
        return path

    def key(self, path: str) -> str:
        return "native:" + os.path.normcase(self.normalize_path(path))

    def render(self, template: str, path: str) -> str:
        return render_template(template, host_quote(path))

    def launch_argv(self, path: str, command: str) -> list[str]:
        if sys.platform == "win32":
            return ["cmd.exe", "/d", "/c", command]
        return ["/bin/sh", "-c", command]


class GuestBackend:
    def __init__(
        self, guest_id: str, bridge: str = DEFAULT_BRIDGE, runner: ExecuteFn = execute
    ) -> None:
        self.guest_id = guest_id
        self.bridge = bridge
        self._execute = runner

    def bridge_args(self, script: str, login: str = "-lc") -> list[str]:
        return ["-d", self.guest_id, "--", "bash", login, script]

    async def run_script(
        self,
        script: str,
        *,
        timeout: float,
        token: Optional[CancellationToken] = None,
    ) -> Transcript:
        return await self._execute(
            self.bridge, self.bridge_args(script), timeout=timeout, token=token
        )

    def git_script(self, path: str, args: Sequence[str]) -> str:
        quoted = " ".join(shell_escape(arg) for arg in args)
        return f"cd {shell_escape(path)} && {NON_INTERACTIVE_PREFIX} git {quoted}"

    async def run_git(
        self,
        path: str,
        args: Sequence[str],
        *,
        timeout: float,
        token: Optional[CancellationToken] = None,
    ) -> Transcript:
        return await self.run_script(self.git_script(path, args), timeout=timeout, token=token)

    async def path_exists(
        self, path: str, *, token: Optional[CancellationToken] = None
    ) -> Optional[bool]:
        script = f"[ -d {shell_escape(path)} ] && printf '1' || printf '0'"
        try:
            transcript = await self.run_script(script, timeout=PROBE_TIMEOUT, token=token)
        except CommandError as exc:
            logger.debug("Existence probe for %s in %s failed: %s", path, self.guest_id, exc)
            return None
        marker = transcript.stdout.strip()
        if marker == "1":
            return True
        if marker == "0":
            return False
        return None

    async def git_path_exists(
        self,
        repo_path: str,
        resolved: str,
        *,
        directory: bool,
        token: Optional[CancellationToken] = None,
    ) -> bool:
        flag = "-d" if directory else "-e"
        script = f"cd {shell_escape(repo_path)} && [ {flag} {shell_escape(resolved)} ]"
        try:
            await self.run_script(script, timeout=PROBE_TIMEOUT, token=token)
        except CommandError:
            return False
        return True

    async def find_repositories(
        self, root: str, should_ignore: IgnoreFn, max_depth: int
    ) -> list[str]:
        quoted = shell_escape(root)
        script = (
            f"if [ -d {quoted} ]; then find {quoted} -maxdepth {max_depth + 1} "
            f"-type d -name {GIT_MARKER} -prune 2>/dev/null; fi"
        )
        try:
            transcript = await self.run_script(script, timeout=GUEST_SCAN_TIMEOUT)
        except CommandError as exc:
            logger.warning("Scanning %s in guest %s failed: %s", root, self.guest_id, exc)
            return []
        found: list[str] = []
        for line in transcript.stdout.splitlines():
            line = line.strip()
            if not line or should_ignore(line):
                continue
            repo = posixpath.dirname(line) if posixpath.basename(line) == GIT_MARKER else line
            found.append(repo)
        return found

    def normalize_path(self, path: str) -> str:
        return posixpath.normpath(path)

    def host_path(self, path: str) -> str:
        relative = path.replace("/", "\\").lstrip("\\")
        return ntpath.join(f"\\\\wsl$\\{self.guest_id}", relative)

    def key(self, path: str) -> str:
        return f"guest:{self.guest_id}:{self.normalize_path(path)}"

    def render(self, template: str, path: str) -> str:
        return render_template(template, shell_escape(path))

    def launch_argv(self, path: str, command: str) -> list[str]:
        return [self.bridge, *self.bridge_args(f"cd {shell_escape(path)} && {command}")]


class Invoker:
    """Dispatches git commands and probes to the backend of an environment."""

    def __init__(self, runner: ExecuteFn = execute, bridge: str = DEFAULT_BRIDGE) -> None:
        self._execute = runner
        self.bridge = bridge

    def backend(self, environment: RepoEnvironment) -> EnvironmentBackend:
        if isinstance(environment, GuestEnvironment):
            return GuestBackend(environment.guest_id, self.bridge, self._execute)
        if isinstance(environment, NativeEnvironment):
            return NativeBackend(self._execute)
        raise TypeError(f"Unsupported environment: {environment!r}")

    async def run_git(
        self,
        environment: RepoEnvironment,
        path: str,
        args: Sequence[str],
        *,
        timeout: float,
        token: Optional[CancellationToken] = None,
    ) -> Transcript:
        return await self.backend(environment).run_git(
            path, args, timeout=timeout, token=token
        )

    async def path_exists(self, environment: RepoEnvironment, path: str) -> Optional[bool]:
        return await self.backend(environment).path_exists(path)

    async def git_path_exists(
        self,
        environment: RepoEnvironment,
        repo_path: str,
        name: str,
        *,
        directory: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> bool:
        """Resolve ``git rev-parse --git-path <name>`` and test it in place."""
        backend = self.backend(environment)
        try:
            transcript = await backend.run_git(
                repo_path,
                ["rev-parse", "--git-path", name],
                timeout=PROBE_TIMEOUT,
                token=token,
            )
        except CommandError:
            return False
        resolved = transcript.stdout.strip()
        if not resolved:
            return False
        return await backend.git_path_exists(
            repo_path, resolved, directory=directory, token=token
        )

    async def find_repositories(
        self,
        environment: RepoEnvironment,
        root: str,
        should_ignore: IgnoreFn,
        max_depth: int,
    ) -> list[str]:
        root = root.strip()
        if not root:
            return []
        return await self.backend(environment).find_repositories(
            root, should_ignore, max_depth
        )

    def normalize_path(self, environment: RepoEnvironment, path: str) -> str:
        return self.backend(environment).normalize_path(path.strip())

    def host_path(self, environment: RepoEnvironment, path: str) -> str:
        return self.backend(environment).host_path(path)

    def key(self, environment: RepoEnvironment, path: str) -> str:
        return self.backend(environment).key(path)

    def launch_argv(self, environment: RepoEnvironment, path: str, template: str) -> list[str]:
        """Argument vector that runs ``template`` for ``path`` inside its environment."""
        backend = self.backend(environment)
        return backend.launch_argv(path, backend.render(template, path))

    def host_launch_argv(self, environment: RepoEnvironment, path: str, template: str) -> list[str]:
        """Argument vector that runs ``template`` on the host for the host view of ``path``."""
        host = NativeBackend(self._execute)
        target = self.host_path(environment, path)
        return host.launch_argv(target, host.render(template, target))
