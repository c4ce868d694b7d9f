import asyncio
import logging
import os
import signal
import sys
from typing import Awaitable, Callable, Mapping, Optional, Sequence

from .exceptions import CommandFailedError, SpawnError
from .models import Transcript, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
KILL_GRACE = 2.0
EXIT_POLL_INTERVAL = 0.05
READ_CHUNK = 65536

ExecuteFn = Callable[..., Awaitable[Transcript]]


class CancellationToken:
    """Cooperative cancellation flag shared between a queue task and its commands."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


def format_invocation(program: str, args: Sequence[str]) -> str:
    return " ".join([program, *args])


def shell_escape(value: str) -> str:
    """Quote ``value`` for a POSIX shell, escaping embedded single quotes."""
    return "'" + value.replace("'", "'\"'\"'") + "'"


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    _send_stop(proc, force=False)
    if not await _wait_exit(proc, KILL_GRACE):
        _send_stop(proc, force=True)
        await _wait_exit(proc, KILL_GRACE)


def _send_stop(proc: asyncio.subprocess.Process, force: bool) -> None:
    # Children run in their own session, so the whole group is signalled and
    # helpers such as ssh that hold the pipes go down with git.
    try:
        if sys.platform == "win32":
            if force:
                proc.kill()
            else:
                proc.terminate()
        else:
            os.killpg(proc.pid, signal.SIGKILL if force else signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return


async def _wait_exit(proc: asyncio.subprocess.Process, timeout: float) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while proc.returncode is None and loop.time() < deadline:
        await asyncio.sleep(EXIT_POLL_INTERVAL)
    return proc.returncode is not None


async def _drain(stream: Optional[asyncio.StreamReader], chunks: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            return
        chunks.append(chunk)


async def execute(
    program: str,
    args: Sequence[str],
    *,
    cwd: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
    token: Optional[CancellationToken] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Transcript:
    command = format_invocation(program, args)
    started_at = utc_now()
    logger.debug("Running %s (cwd=%s, timeout=%ss)", command, cwd, timeout)
    kwargs: dict = {}
    if sys.platform != "win32":
        kwargs["start_new_session"] = True
    try:
        proc = await asyncio.create_subprocess_exec(
            program,
            *args,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **kwargs,
        )
    except OSError as exc:
        transcript = Transcript(
            command=command,
            exit_code=None,
            stdout="",
            stderr=str(exc),
            started_at=started_at,
            finished_at=utc_now(),
            timed_out=False,
        )
        raise SpawnError(f"Failed to start {program}: {exc}", transcript) from exc

    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    readers = [
        asyncio.ensure_future(_drain(proc.stdout, stdout_chunks)),
        asyncio.ensure_future(_drain(proc.stderr, stderr_chunks)),
    ]
    exited = asyncio.ensure_future(proc.wait())
    cancel_wait = asyncio.ensure_future(token.wait()) if token is not None else None
    waiters = {exited} if cancel_wait is None else {exited, cancel_wait}
    helpers = [*readers, exited] + ([cancel_wait] if cancel_wait is not None else [])
    timed_out = False
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if exited not in done:
            timed_out = True
            reason = "cancelled" if token is not None and token.cancelled else "timed out"
            logger.debug("Command %s %s, terminating", command, reason)
            await _terminate(proc)
        # Whatever was read so far is kept if a leftover process holds the pipes.
        _, unfinished = await asyncio.wait(readers, timeout=KILL_GRACE)
        if unfinished:
            logger.debug("Output of %s still open after exit, keeping partial output", command)
    except asyncio.CancelledError:
        await _terminate(proc)
        raise
    finally:
        for helper in helpers:
            helper.cancel()
        await asyncio.gather(*helpers, return_exceptions=True)

    transcript = Transcript(
        command=command,
        exit_code=proc.returncode,
        stdout=b"".join(stdout_chunks).decode(errors="replace"),
        stderr=b"".join(stderr_chunks).decode(errors="replace"),
        started_at=started_at,
        finished_at=utc_now(),
        timed_out=timed_out,
    )
    if transcript.succeeded:
        return transcript
    if timed_out:
        message = f"Command timed out: {command}"
    else:
        message = f"Command failed: {command} (exit {proc.returncode})"
    raise CommandFailedError(message, transcript)


def non_interactive_env(base: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["GCM_INTERACTIVE"] = "Never"
    env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
    return env
