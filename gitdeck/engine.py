"""Repository engine: owns the catalog and runs every repository operation.

All per-repository work goes through the ``OperationQueue`` so that a
repository never has two operations in flight.  Whole-catalog methods
(registration, pruning, settings) run on the event loop between awaits and
never touch a record's status while one of its tasks is running.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import ntpath
from typing import Any, Awaitable, Callable, Optional

from .command_runner import CancellationToken
from .config import AppConfig, merge_settings
from .environments import Invoker
from .exceptions import (
    CommandError,
    GitdeckError,
    OperationCancelled,
    RepositoryNotFound,
    ValidationError,
)
from .launcher import Launcher
from .models import (
    MIN_REFRESH_INTERVAL,
    ActionResult,
    ActiveOperation,
    AddRepositoryInput,
    GuestEnvironment,
    NativeEnvironment,
    RepoEnvironment,
    RepoRecord,
    Settings,
    Snapshot,
    StatusSummary,
    Transcript,
    new_id,
    utc_now,
)
from .operation_queue import OperationQueue
from .status_parser import compute_needs_attention, parse_status
from .storage import JsonStateStore, PersistedState

logger = logging.getLogger(__name__)

STATUS_ARGS = ("status", "--porcelain=v1", "--branch", "-uall")
REFRESH_FETCH_ARGS = ("fetch", "--all", "--prune", "--quiet")
VERIFY_ARGS = ("rev-parse", "--is-inside-work-tree")
SYNC_FETCH_ARGS = ("fetch", "--all", "--prune")
PULL_ARGS = ("pull",)
PUSH_ARGS = ("push", "--porcelain")
QUEUE_SLACK = 15.0

FETCH_STALE_MESSAGE = "Fetch failed (see transcript). Status may be stale against upstream."
INACCESSIBLE_MESSAGE = "Repository inaccessible or git command failed."

ActionBody = Callable[[RepoRecord, CancellationToken], Awaitable[Optional[Transcript]]]


def display_name_for(path: str) -> str:
    cleaned = path.rstrip("/\\")
    return ntpath.basename(cleaned) or cleaned or path


class RepoEngine:
    def __init__(
        self,
        store: JsonStateStore,
        config: Optional[AppConfig] = None,
        invoker: Optional[Invoker] = None,
        launcher: Optional[Launcher] = None,
    ) -> None:
        self.config = config or AppConfig()
        self._store = store
        self._invoker = invoker or Invoker(bridge=self.config.guest_bridge)
        self._launcher = launcher or Launcher(
            self._invoker,
            self.config.file_manager_command,
            self.config.terminal_command,
        )
        self._queue = OperationQueue(
            on_start=self._on_operation_start,
            on_finish=self._on_operation_finish,
        )
        self._settings = Settings()
        self._records: list[RepoRecord] = []
        self._refresh_task: Optional[asyncio.Future] = None
        self._auto_refresh_task: Optional[asyncio.Task] = None
        self._on_auto_refresh: Optional[Callable[[Snapshot], None]] = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def queue(self) -> OperationQueue:
        return self._queue

    async def initialize(self) -> Snapshot:
        state = self._store.load()
        self._settings = state.settings
        self._records = state.repositories
        for record in self._records:
            record.active_operation = None
        logger.debug("Loaded %d repositories from %s", len(self._records), self._store.path)
        return self.get_snapshot()

    async def aclose(self) -> None:
        self.stop_auto_refresh()
        for record in list(self._records):
            self._queue.cancel_repository(record.id)

    # -- snapshot -----------------------------------------------------------

    def get_snapshot(self) -> Snapshot:
        repositories = sorted(
            (
                dataclasses.replace(record, transcripts=list(record.transcripts))
                for record in self._records
            ),
            key=lambda r: (
                not (r.status is not None and r.status.needs_attention),
                r.display_name.lower(),
            ),
        )
        return Snapshot(
            repositories=tuple(repositories),
            settings=self._settings,
            generated_at=utc_now(),
        )

    def _result(
        self, ok: bool, message: str, transcript: Optional[Transcript] = None
    ) -> ActionResult:
        return ActionResult(
            ok=ok, message=message, snapshot=self.get_snapshot(), transcript=transcript
        )

    # -- catalog ------------------------------------------------------------

    def _find(self, repository_id: str) -> Optional[RepoRecord]:
        return next((r for r in self._records if r.id == repository_id), None)

    def _get(self, repository_id: str) -> RepoRecord:
        record = self._find(repository_id)
        if record is None:
            raise RepositoryNotFound(repository_id)
        return record

    def _key(self, record: RepoRecord) -> str:
        return self._invoker.key(record.environment, record.path)

    def _register(
        self, path: str, environment: RepoEnvironment, display_name: Optional[str] = None
    ) -> RepoRecord:
        key = self._invoker.key(environment, path)
        existing = next((r for r in self._records if self._key(r) == key), None)
        if existing is not None:
            return existing
        now = utc_now()
        record = RepoRecord(
            id=new_id("repo"),
            display_name=display_name or display_name_for(path),
            path=path,
            environment=environment,
            created_at=now,
            updated_at=now,
        )
        self._records.append(record)
        logger.info("Registered %s (%s) at %s", record.display_name, environment.describe(), path)
        return record

    def _persist(self) -> None:
        state = PersistedState(settings=self._settings, repositories=list(self._records))
        try:
            self._store.save(state)
        except OSError as exc:
            logger.error("Failed to write state file %s: %s", self._store.path, exc)

    def _on_operation_start(self, repository_id: str, operation: ActiveOperation) -> None:
        record = self._find(repository_id)
        if record is not None:
            record.active_operation = operation

    def _on_operation_finish(self, repository_id: str, operation_id: str) -> None:
        record = self._find(repository_id)
        if record is not None:
            record.active_operation = None

    async def add_repository(self, repo_input: AddRepositoryInput) -> ActionResult:
        if not repo_input.path.strip():
            return self._result(False, "Repository path is required.")
        environment = repo_input.environment
        path = self._invoker.normalize_path(environment, repo_input.path)
        try:
            transcript = await self._invoker.run_git(
                environment, path, VERIFY_ARGS, timeout=self.config.verify_timeout
            )
        except CommandError as exc:
            return self._result(False, f"Not a git working tree: {path}", exc.transcript)
        if transcript.stdout.strip() != "true":
            return self._result(False, f"Not a git working tree: {path}", transcript)
        record = self._register(path, environment, (repo_input.display_name or "").strip() or None)
        key = self._key(record)
        if key in self._settings.ignored_repositories:
            self._settings = dataclasses.replace(
                self._settings,
                ignored_repositories=tuple(
                    k for k in self._settings.ignored_repositories if k != key
                ),
            )
        self._persist()
        return self._result(True, f"Added {record.display_name}.", transcript)

    async def remove_repository(self, repository_id: str, ignore: bool = False) -> Snapshot:
        record = self._find(repository_id)
        if record is None:
            return self.get_snapshot()
        self._queue.cancel_repository(record.id)
        self._records = [r for r in self._records if r.id != record.id]
        if ignore:
            key = self._key(record)
            if key not in self._settings.ignored_repositories:
                self._settings = dataclasses.replace(
                    self._settings,
                    ignored_repositories=(*self._settings.ignored_repositories, key),
                )
        logger.info("Removed %s", record.display_name)
        self._persist()
        return self.get_snapshot()

    async def update_settings(self, **changes: Any) -> Snapshot:
        unknown = set(changes) - set(Settings.__dataclass_fields__)
        if unknown:
            logger.warning("Ignoring unknown settings: %s", ", ".join(sorted(unknown)))
        self._settings = merge_settings(self._settings, changes)
        self._persist()
        if self._auto_refresh_task is not None:
            self.start_auto_refresh()
        return self.get_snapshot()

    async def cancel_repository_operation(self, repository_id: str) -> Snapshot:
        self._queue.cancel_repository(repository_id)
        return self.get_snapshot()

    # -- refresh ------------------------------------------------------------

    async def _run_git(
        self,
        record: RepoRecord,
        args: tuple[str, ...] | list[str],
        token: CancellationToken,
        timeout: float,
        record_history: bool = True,
    ) -> Transcript:
        transcript = await self._invoker.run_git(
            record.environment, record.path, args, timeout=timeout, token=token
        )
        if record_history:
            record.push_transcript(transcript, self.config.history_limit)
        return transcript

    async def _refresh_direct(self, record: RepoRecord, token: CancellationToken) -> None:
        fetch_failure: Optional[Transcript] = None
        if self._settings.fetch_on_refresh:
            try:
                await self._run_git(record, REFRESH_FETCH_ARGS, token, self.config.fetch_timeout)
            except CommandError as exc:
                if token.cancelled:
                    raise OperationCancelled("Refresh cancelled") from exc
                fetch_failure = exc.transcript
                record.push_transcript(exc.transcript, self.config.history_limit)
                logger.warning("Fetch failed for %s: %s", record.display_name, exc)

        try:
            status_transcript = await self._run_git(
                record, STATUS_ARGS, token, self.config.status_timeout
            )
        except CommandError as exc:
            if token.cancelled:
                raise OperationCancelled("Refresh cancelled") from exc
            record.push_transcript(exc.transcript, self.config.history_limit)
            record.status = StatusSummary(
                needs_attention=True,
                branch="unknown",
                inaccessible=True,
                refreshed_at=utc_now(),
            )
            record.last_error = INACCESSIBLE_MESSAGE
            record.last_error_transcript = exc.transcript
            record.updated_at = utc_now()
            logger.warning("Status failed for %s: %s", record.display_name, exc)
            return

        parsed = parse_status(status_transcript.stdout)
        merge_in_progress = await self._invoker.git_path_exists(
            record.environment, record.path, "MERGE_HEAD", token=token
        )
        rebase_in_progress = await self._invoker.git_path_exists(
            record.environment, record.path, "rebase-merge", directory=True, token=token
        ) or await self._invoker.git_path_exists(
            record.environment, record.path, "rebase-apply", directory=True, token=token
        )
        record.status = dataclasses.replace(
            parsed,
            merge_in_progress=merge_in_progress,
            rebase_in_progress=rebase_in_progress,
            inaccessible=False,
            needs_attention=compute_needs_attention(
                dirty=parsed.is_dirty,
                ahead=parsed.ahead,
                behind=parsed.behind,
                conflicted=parsed.conflicted_count,
                merge_in_progress=merge_in_progress,
                rebase_in_progress=rebase_in_progress,
                fetch_failed=fetch_failure is not None,
            ),
            refreshed_at=utc_now(),
        )
        if fetch_failure is not None:
            record.last_error = FETCH_STALE_MESSAGE
            record.last_error_transcript = fetch_failure
        else:
            record.clear_error()
        record.updated_at = utc_now()

    def _refresh_timeout(self) -> float:
        fetch = self.config.fetch_timeout if self._settings.fetch_on_refresh else 0.0
        return fetch + self.config.status_timeout + QUEUE_SLACK

    async def refresh_repository(self, repository_id: str) -> ActionResult:
        async def body(record: RepoRecord, token: CancellationToken) -> Optional[Transcript]:
            await self._refresh_direct(record, token)
            return None

        return await self._run_action(repository_id, "Refresh", body, self._refresh_timeout())

    async def refresh_all(self) -> Snapshot:
        if self._refresh_task is None:
            task = asyncio.ensure_future(self._refresh_all_pass())
            self._refresh_task = task
            task.add_done_callback(self._clear_refresh_task)
        await asyncio.shield(self._refresh_task)
        return self.get_snapshot()

    def _clear_refresh_task(self, task: asyncio.Future) -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _refresh_all_pass(self) -> None:
        if await self._prune_missing():
            self._persist()
        for record in list(self._records):
            if self._find(record.id) is not record:
                continue

            async def body(token: CancellationToken, record: RepoRecord = record) -> None:
                await self._refresh_direct(record, token)
                self._persist()

            try:
                await self._queue.enqueue(record.id, "Refresh", body, self._refresh_timeout())
            except GitdeckError as exc:
                logger.warning("Refresh of %s did not complete: %s", record.display_name, exc)

    async def _prune_missing(self) -> bool:
        removed: set[str] = set()
        for record in list(self._records):
            exists = await self._invoker.path_exists(record.environment, record.path)
            if exists is False:
                removed.add(record.id)
        if not removed:
            return False
        for repository_id in removed:
            self._queue.cancel_repository(repository_id)
        for record in self._records:
            if record.id in removed:
                logger.info("Pruning missing repository %s at %s", record.display_name, record.path)
        self._records = [r for r in self._records if r.id not in removed]
        return True

    # -- discovery ----------------------------------------------------------

    def _should_ignore(self, path: str) -> bool:
        normalized = path.lower()
        for pattern in self._settings.ignore_patterns:
            token = pattern.strip().lower()
            if token and token in normalized:
                return True
        return False

    async def scan_configured_roots(self) -> Snapshot:
        await self._prune_missing()
        depth = self.config.scan_max_depth
        discovered: list[tuple[RepoEnvironment, str]] = []
        native = NativeEnvironment()
        for root in self._settings.native_roots:
            for path in await self._invoker.find_repositories(
                native, root, self._should_ignore, depth
            ):
                discovered.append((native, path))
        for guest_root in self._settings.guest_roots:
            guest = GuestEnvironment(guest_root.guest_id)
            for path in await self._invoker.find_repositories(
                guest, guest_root.path, self._should_ignore, depth
            ):
                discovered.append((guest, path))

        ignored = set(self._settings.ignored_repositories)
        for environment, path in discovered:
            path = self._invoker.normalize_path(environment, path)
            if self._invoker.key(environment, path) in ignored:
                continue
            self._register(path, environment)
        logger.info("Scan found %d repositories", len(discovered))
        self._persist()
        return await self.refresh_all()

    # -- actions ------------------------------------------------------------

    async def _run_action(
        self, repository_id: str, name: str, body: ActionBody, timeout: float
    ) -> ActionResult:
        try:
            record = self._get(repository_id)
        except RepositoryNotFound as exc:
            return self._result(False, str(exc))

        async def task(token: CancellationToken) -> Optional[Transcript]:
            transcript = await body(record, token)
            record.updated_at = utc_now()
            self._persist()
            return transcript

        try:
            transcript = await self._queue.enqueue(record.id, name, task, timeout)
        except GitdeckError as exc:
            return self._handle_failure(record, f"{name} failed.", exc)
        return self._result(True, f"{name} completed.", transcript)

    def _handle_failure(
        self, record: RepoRecord, fallback: str, error: GitdeckError
    ) -> ActionResult:
        if isinstance(error, CommandError):
            transcript = error.transcript
            if transcript.timed_out:
                message = f"{fallback} Timed out or cancelled."
            else:
                code = transcript.exit_code if transcript.exit_code is not None else "unknown"
                message = f"{fallback} Exit code {code}."
            record.last_error = message
            record.last_error_transcript = transcript
            record.push_transcript(transcript, self.config.history_limit)
            record.updated_at = utc_now()
            self._persist()
            return self._result(False, message, transcript)
        if isinstance(error, OperationCancelled):
            message = f"{fallback} {error}."
        else:
            message = str(error) or fallback
        record.last_error = message
        record.updated_at = utc_now()
        self._persist()
        return self._result(False, message)

    async def _single_command(
        self, repository_id: str, name: str, args: list[str] | tuple[str, ...], timeout: float
    ) -> ActionResult:
        async def body(record: RepoRecord, token: CancellationToken) -> Optional[Transcript]:
            transcript = await self._run_git(record, args, token, timeout)
            await self._refresh_direct(record, token)
            return transcript

        return await self._run_action(
            repository_id, name, body, timeout + self._refresh_timeout()
        )

    async def stage_file(self, repository_id: str, file_path: str) -> ActionResult:
        if not file_path.strip():
            return self._result(False, "File path is required.")
        return await self._single_command(
            repository_id,
            f"Stage {file_path}",
            ["add", "--", file_path],
            self.config.status_timeout,
        )

    async def unstage_file(self, repository_id: str, file_path: str) -> ActionResult:
        if not file_path.strip():
            return self._result(False, "File path is required.")
        return await self._single_command(
            repository_id,
            f"Unstage {file_path}",
            ["restore", "--staged", "--", file_path],
            self.config.status_timeout,
        )

    async def commit_repository(self, repository_id: str, message: str) -> ActionResult:
        text = message.strip()
        if not text:
            return self._result(False, "Commit message is required.")

        async def body(record: RepoRecord, token: CancellationToken) -> Optional[Transcript]:
            status = await self._run_git(
                record, STATUS_ARGS, token, self.config.status_timeout, record_history=False
            )
            parsed = parse_status(status.stdout)
            if not parsed.is_dirty:
                raise ValidationError("No changes to commit.")
            if not parsed.has_staged:
                # Untracked files are included; ignore patterns only apply to scanning.
                await self._run_git(record, ["add", "-A"], token, self.config.status_timeout)
            transcript = await self._run_git(
                record, ["commit", "-m", text], token, self.config.fetch_timeout
            )
            await self._refresh_direct(record, token)
            return transcript

        timeout = 2 * self.config.status_timeout + self.config.fetch_timeout
        return await self._run_action(
            repository_id, "Commit", body, timeout + self._refresh_timeout()
        )

    async def push_repository(self, repository_id: str) -> ActionResult:
        return await self._single_command(
            repository_id, "Push", PUSH_ARGS, self.config.network_timeout
        )

    async def sync_repository(self, repository_id: str) -> ActionResult:
        steps = (
            (SYNC_FETCH_ARGS, self.config.fetch_timeout),
            (PULL_ARGS, self.config.network_timeout),
            (PUSH_ARGS, self.config.network_timeout),
        )

        async def body(record: RepoRecord, token: CancellationToken) -> Optional[Transcript]:
            transcript: Optional[Transcript] = None
            for args, step_timeout in steps:
                transcript = await self._run_git(record, args, token, step_timeout)
            await self._refresh_direct(record, token)
            return transcript

        timeout = sum(step_timeout for _, step_timeout in steps)
        return await self._run_action(
            repository_id, "Sync", body, timeout + self._refresh_timeout()
        )

    # -- launching ----------------------------------------------------------

    async def _launch(
        self,
        repository_id: str,
        target: str,
        launch: Callable[[RepoRecord], Awaitable[None]],
        ok_message: str,
    ) -> ActionResult:
        try:
            record = self._get(repository_id)
        except RepositoryNotFound as exc:
            return self._result(False, str(exc))
        try:
            await launch(record)
        except OSError as exc:
            logger.warning("Failed to open %s for %s: %s", target, record.display_name, exc)
            return self._result(False, f"Failed to open {target}: {exc}")
        return self._result(True, ok_message)

    async def open_in_editor(self, repository_id: str) -> ActionResult:
        return await self._launch(
            repository_id,
            "editor",
            lambda r: self._launcher.open_in_editor(
                r.environment, r.path, self._settings.editor_command_for(r.environment)
            ),
            "Editor command launched.",
        )

    async def open_in_file_manager(self, repository_id: str) -> ActionResult:
        return await self._launch(
            repository_id,
            "file manager",
            lambda r: self._launcher.open_in_file_manager(r.environment, r.path),
            "File manager opened.",
        )

    async def open_in_terminal(self, repository_id: str) -> ActionResult:
        return await self._launch(
            repository_id,
            "terminal",
            lambda r: self._launcher.open_in_terminal(r.environment, r.path),
            "Terminal opened.",
        )

    # -- auto refresh -------------------------------------------------------

    def refresh_interval(self) -> int:
        return max(MIN_REFRESH_INTERVAL, self._settings.refresh_interval_seconds)

    def start_auto_refresh(self, on_pass: Optional[Callable[[Snapshot], None]] = None) -> None:
        """(Re)start the periodic refresh; ``on_pass`` receives each resulting snapshot."""
        if on_pass is not None:
            self._on_auto_refresh = on_pass
        self.stop_auto_refresh()
        self._auto_refresh_task = asyncio.ensure_future(self._auto_refresh_loop())

    def stop_auto_refresh(self) -> None:
        if self._auto_refresh_task is not None:
            self._auto_refresh_task.cancel()
            self._auto_refresh_task = None

    async def _auto_refresh_loop(self) -> None:
        while True:
            try:
                snapshot = await self.refresh_all()
                if self._on_auto_refresh is not None:
                    self._on_auto_refresh(snapshot)
            except Exception:
                logger.exception("Automatic refresh pass failed")
            await asyncio.sleep(self.refresh_interval())
