"""
Main orchestration of a migration run.

The orchestrator wires the remote client, the limiter, the forwarder and the
realtime sync queue together, walks the run through its phases and owns the
progress snapshot. Conversations are processed strictly one after another;
progress is saved after every forwarded batch and after every conversation,
so a crash or Ctrl+C never loses more than the batch in flight.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from dialog_migrator.constants import ENUMERATE_RETRY_DELAY
from dialog_migrator.core.config import MigrationConfig, filter_conversations
from dialog_migrator.core.forwarder import (
    ConversationForwarder,
    DialogMigrationResult,
    ForwarderState,
    ProgressEvent,
    ProgressEventKind,
)
from dialog_migrator.core.progress import (
    add_dialog_error,
    add_failed_messages,
    create_empty_progress,
    get_resume_point,
    initialize_dialog,
    load_progress,
    mark_dialog_complete,
    mark_dialog_failed,
    mark_dialog_partially_migrated,
    mark_dialog_started,
    record_rate_exceeded_event,
    save_progress,
    set_accounts,
    set_dialog_total,
    set_phase,
    update_dialog_progress,
)
from dialog_migrator.core.realtime_sync import RealtimeSyncQueue
from dialog_migrator.core.report import MigrationReport, generate_report
from dialog_migrator.core.shutdown import ShutdownCoordinator
from dialog_migrator.core.state import MigrationProgress
from dialog_migrator.result import (
    Failure,
    MigrationError,
    MigrationErrorKind,
    Result,
    Success,
)
from dialog_migrator.services.client import RemoteClient
from dialog_migrator.services.rate_limiter import RateLimiter, with_rate_limit_retry
from dialog_migrator.types import (
    ConversationInfo,
    DateRange,
    DestinationInfo,
    MigrationPhase,
)
from dialog_migrator.utils.logging import log_with_context, remove_handler, setup_dialog_log


@dataclass(frozen=True)
class MigrationOptions:
    """Per-run switches that do not belong in the config file."""

    dry_run: bool = False
    conversation_id: Optional[str] = None
    date_range: Optional[DateRange] = None


@dataclass(frozen=True)
class CountdownTick:
    """One second of a platform-induced wait, for display."""

    remaining: int
    operation: str


@dataclass(frozen=True)
class MigrationOutcome:
    progress: MigrationProgress
    report: Optional[MigrationReport] = None
    dry_run: bool = False
    interrupted: bool = False
    planned: tuple[ConversationInfo, ...] = ()
    estimated_messages: int = 0
    skipped_count: int = 0
    results: tuple[DialogMigrationResult, ...] = field(default=())


EventCallback = Callable[[Union[ProgressEvent, CountdownTick]], None]


class MigrationOrchestrator:
    """Runs a migration from enumeration to the final report."""

    def __init__(
        self,
        client: RemoteClient,
        config: MigrationConfig,
        progress_path: Optional[Union[str, Path]] = None,
        limiter: Optional[RateLimiter] = None,
        sync_queue: Optional[RealtimeSyncQueue] = None,
        forwarder: Optional[ConversationForwarder] = None,
        shutdown: Optional[ShutdownCoordinator] = None,
        on_event: Optional[EventCallback] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Build the orchestrator; any collaborator left out is built from ``config``.

        Args:
            client: Remote platform client
            config: Loaded and validated configuration
            progress_path: Progress file; defaults to ``config.progress_path``
            limiter: Shared flow-control limiter
            sync_queue: Realtime sync queue; None with realtime sync disabled
                means live messages are not captured
            forwarder: Per-conversation forwarder
            shutdown: Cooperative stop coordinator
            on_event: Receives forwarder progress events and countdown ticks
            sleep: Coroutine used for the enumeration retry delay
        """
        self.client = client
        self.config = config
        self.progress_path = Path(progress_path or config.progress_path)

        self.limiter = limiter or RateLimiter(
            config.rate_limit.to_limiter_config(),
            recovery_window=config.rate_limit.recovery_window,
        )
        if sync_queue is None and config.realtime_sync.enabled:
            sync_queue = RealtimeSyncQueue(
                max_queue_size=config.realtime_sync.max_queue_size,
                max_retries=config.realtime_sync.max_retries,
                limiter=self.limiter,
            )
        self.sync_queue = sync_queue
        self.forwarder = forwarder or ConversationForwarder(
            client, self.limiter, batch_size=config.batch_size
        )
        self.shutdown = shutdown or ShutdownCoordinator(config.shutdown_grace_period)
        self.on_event = on_event
        self._sleep = sleep

        if on_event is not None and self.limiter.on_rate_exceeded is None:
            self.limiter.on_rate_exceeded = self._countdown

        self._progress = create_empty_progress()
        self._synced_events = 0
        self._skipped = 0
        self._recipient: Optional[str] = None
        # Dry runs and unreadable progress files are never written
        self._persist = False
        self.shutdown.on_save(self._save)
        self.shutdown.on_request(self.limiter.interrupt_waits)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_progress(self) -> MigrationProgress:
        return self._progress

    def request_shutdown(self, reason: str = "requested") -> None:
        """Stop after the batch in flight; progress is saved on the way out."""
        self.shutdown.request_shutdown(reason)

    async def run_migration(
        self, options: Optional[MigrationOptions] = None
    ) -> Result[MigrationOutcome, MigrationError]:
        """
        Run the migration.

        Only a progress file that cannot be read and a conversation list that
        cannot be fetched abort the run. Every other failure is confined to the
        conversation it happened in and recorded in the progress file.

        Args:
            options: Dry-run, single-conversation and date window switches

        Returns:
            Success with the outcome, or Failure for the two fatal cases
        """
        options = options or MigrationOptions()
        prefix = "[DRY RUN] " if options.dry_run else ""
        log_with_context(logging.INFO, f"{prefix}Starting migration")

        loaded = load_progress(self.progress_path)
        if isinstance(loaded, Failure):
            # Never overwrite a file we could not read
            log_with_context(
                logging.ERROR,
                f"Cannot load progress from {self.progress_path}: {loaded.error.message}",
            )
            return Failure(
                MigrationError(
                    MigrationErrorKind.PROGRESS_LOAD_FAILED,
                    f"Failed to load progress: {loaded.error}",
                )
            )
        self._progress = loaded.value
        self._persist = not options.dry_run
        self._synced_events = len(self.limiter.get_events())
        self._skipped = 0
        self._progress = set_accounts(
            self._progress,
            self.config.source_account or self._progress.source_account,
            self.config.target_recipient or self._progress.target_account,
        )

        log_with_context(logging.INFO, f"{prefix}Step 1/3: Resolving target recipient")
        self._set_phase(MigrationPhase.AUTHENTICATING)
        self._recipient = await self._resolve_recipient()

        log_with_context(logging.INFO, f"{prefix}Step 2/3: Enumerating conversations")
        self._set_phase(MigrationPhase.ENUMERATING_CONVERSATIONS)
        enumerated = await self._enumerate()
        if isinstance(enumerated, Failure):
            await self._save()
            return enumerated

        conversations = filter_conversations(
            enumerated.value, self.config.filters, options.conversation_id
        )
        if options.conversation_id is not None and not conversations:
            log_with_context(
                logging.WARNING,
                f"Conversation {options.conversation_id} not found or excluded by filters",
            )
        log_with_context(
            logging.INFO,
            f"{prefix}{len(conversations)} of {len(enumerated.value)} conversations selected",
        )

        if options.dry_run:
            return Success(self._plan(conversations))

        for conversation in conversations:
            self._progress = initialize_dialog(self._progress, conversation)
        await self._save()

        log_with_context(
            logging.INFO, f"Step 3/3: Migrating {len(conversations)} conversations"
        )
        results: list[DialogMigrationResult] = []
        for index, conversation in enumerate(conversations, start=1):
            if self.shutdown.is_shutting_down:
                log_with_context(
                    logging.WARNING,
                    f"Shutdown requested, stopping before conversation {index}/{len(conversations)}",
                )
                break
            result = await self._process_conversation(conversation, index, len(conversations), options)
            if result is not None:
                results.append(result)

        interrupted = self.shutdown.is_shutting_down
        if not interrupted:
            self._set_phase(MigrationPhase.COMPLETED)
        await self._save()

        report = generate_report(self._progress, self.limiter.get_stats())
        stats = self._progress.stats
        log_with_context(
            logging.INFO,
            f"Migration {'interrupted' if interrupted else 'finished'}: "
            f"{stats.completed_dialogs}/{stats.total_dialogs} conversations completed, "
            f"{stats.migrated_messages} messages migrated, {stats.failed_messages} failed",
        )
        return Success(
            MigrationOutcome(
                progress=self._progress,
                report=report,
                interrupted=interrupted,
                planned=tuple(conversations),
                estimated_messages=sum(c.message_count for c in conversations),
                skipped_count=self._skipped,
                results=tuple(results),
            )
        )

    # ------------------------------------------------------------------
    # Run phases
    # ------------------------------------------------------------------

    def _plan(self, conversations: list[ConversationInfo]) -> MigrationOutcome:
        pending = [c for c in conversations if not self._is_completed(c.id)]
        estimated = sum(c.message_count for c in pending)
        for conversation in pending:
            log_with_context(
                logging.INFO,
                f"[DRY RUN] Would migrate '{conversation.name}' "
                f"({conversation.message_count} messages) to "
                f"'{self.config.destination_prefix}{conversation.name}'",
                dialog=conversation.id,
            )
        log_with_context(
            logging.INFO,
            f"[DRY RUN] {len(pending)} conversations, about {estimated} messages would be migrated",
        )
        return MigrationOutcome(
            progress=self._progress,
            dry_run=True,
            planned=tuple(pending),
            estimated_messages=estimated,
            skipped_count=len(conversations) - len(pending),
        )

    async def _resolve_recipient(self) -> Optional[str]:
        identifier = self.config.target_recipient
        if not identifier:
            log_with_context(
                logging.WARNING,
                "No target recipient configured; destinations will not be shared",
            )
            return None

        try:
            entity = await with_rate_limit_retry(
                lambda: self.client.resolve_entity(identifier),
                self.limiter,
                "resolve_entity",
                self.config.rate_limit.max_retries,
            )
        except Exception as e:  # An unknown recipient only disables invites
            log_with_context(
                logging.WARNING, f"Could not resolve target recipient {identifier!r}: {e}"
            )
            entity = None
        finally:
            self._sync_rate_events()

        if entity is None:
            log_with_context(
                logging.WARNING,
                f"Target recipient {identifier!r} not found; destinations will not be shared",
            )
            return None
        return identifier

    async def _enumerate(self) -> Result[list[ConversationInfo], MigrationError]:
        attempts = self.config.max_enumerate_retries
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                conversations = await with_rate_limit_retry(
                    self.client.enumerate_conversations,
                    self.limiter,
                    "enumerate_conversations",
                    self.config.rate_limit.max_retries,
                )
            except Exception as e:  # Retried below, fatal once attempts run out
                last_error = e
                log_with_context(
                    logging.WARNING,
                    f"Failed to enumerate conversations (attempt {attempt}/{attempts}): {e}",
                )
                if attempt < attempts:
                    await self._sleep(ENUMERATE_RETRY_DELAY * attempt)
                continue
            finally:
                self._sync_rate_events()

            log_with_context(logging.INFO, f"Found {len(conversations)} conversations")
            return Success(list(conversations))

        log_with_context(
            logging.ERROR, f"Giving up on enumerating conversations: {last_error}"
        )
        return Failure(
            MigrationError(
                MigrationErrorKind.DIALOG_FETCH_FAILED,
                f"Failed to enumerate conversations after {attempts} attempts: {last_error}",
            )
        )

    # ------------------------------------------------------------------
    # Per conversation
    # ------------------------------------------------------------------

    async def _process_conversation(
        self,
        conversation: ConversationInfo,
        index: int,
        total: int,
        options: MigrationOptions,
    ) -> Optional[DialogMigrationResult]:
        dialog = self._progress.get_dialog(conversation.id)
        if dialog is not None and dialog.is_completed:
            self._skipped += 1
            log_with_context(
                logging.INFO,
                f"Skipping '{conversation.name}' ({index}/{total}): already completed",
                dialog=conversation.id,
            )
            return None

        dialog_log = (
            setup_dialog_log(self.config.dialog_log_dir, conversation.id)
            if self.config.dialog_log_dir
            else None
        )
        log_with_context(
            logging.INFO,
            f"Migrating '{conversation.name}' ({index}/{total})",
            dialog=conversation.id,
        )

        listening = False
        if self.sync_queue is not None:
            started = self.sync_queue.start_listening(self.client, conversation.id)
            listening = started.ok
            if not listening:
                log_with_context(
                    logging.WARNING,
                    "Continuing without realtime sync for this conversation",
                    dialog=conversation.id,
                )

        try:
            return await self._migrate_conversation(conversation, options)
        except Exception as e:  # Confine unexpected failures to this conversation
            log_with_context(
                logging.ERROR,
                f"Unexpected error migrating '{conversation.name}': {e}",
                dialog=conversation.id,
                exc_info=True,
            )
            self._progress = mark_dialog_failed(
                self._progress, conversation.id, f"Unexpected error: {e}"
            )
            return None
        finally:
            if listening:
                self.sync_queue.stop_listening(conversation.id)
            await self._save()
            if dialog_log is not None:
                remove_handler(dialog_log)

    async def _migrate_conversation(
        self, conversation: ConversationInfo, options: MigrationOptions
    ) -> Optional[DialogMigrationResult]:
        self._set_phase(MigrationPhase.CREATING_DESTINATIONS)
        destination_id = await self._ensure_destination(conversation)
        if destination_id is None:
            return None

        if self.sync_queue is not None:
            self.sync_queue.register_mapping(conversation.id, destination_id)

        self._set_phase(MigrationPhase.FORWARDING_CONTENT)
        result = await self._forward_with_resume(conversation, destination_id, options)

        if result.final_state == ForwarderState.COMPLETED:
            await self._drain_queue(conversation)
            self._progress = mark_dialog_complete(self._progress, conversation.id)
            log_with_context(
                logging.INFO,
                f"Completed '{conversation.name}'",
                dialog=conversation.id,
            )
        elif result.interrupted:
            log_with_context(
                logging.WARNING,
                f"'{conversation.name}' interrupted, it will resume on the next run",
                dialog=conversation.id,
            )
        elif result.rate_exceeded:
            reason = result.errors[-1] if result.errors else "Rate exceeded"
            self._progress = mark_dialog_partially_migrated(
                self._progress, conversation.id, result.last_message_id, reason
            )
            log_with_context(
                logging.WARNING,
                f"'{conversation.name}' partially migrated: {reason}",
                dialog=conversation.id,
            )
        else:
            message = "; ".join(result.errors) or "Forwarding failed"
            self._progress = mark_dialog_failed(
                self._progress,
                conversation.id,
                message,
                result.last_message_id,
                error_type=MigrationErrorKind.FORWARD_FAILED.value,
            )
            log_with_context(
                logging.ERROR,
                f"'{conversation.name}' failed: {message}",
                dialog=conversation.id,
            )
        return result

    async def _ensure_destination(self, conversation: ConversationInfo) -> Optional[str]:
        """Reuse the recorded destination or create and share a new one."""
        dialog = self._progress.get_dialog(conversation.id)
        title = f"{self.config.destination_prefix}{conversation.name}"

        if dialog is not None and dialog.destination_id:
            log_with_context(
                logging.INFO,
                f"Reusing destination {dialog.destination_id}",
                dialog=conversation.id,
            )
            latest = dialog.latest_error
            if latest is not None and latest.error_type == MigrationErrorKind.INVITE_FAILED.value:
                destination = DestinationInfo(id=dialog.destination_id, title=title)
                if not await self._invite(conversation, destination):
                    return None
            self._progress = mark_dialog_started(
                self._progress, conversation.id, dialog.destination_id
            )
            return dialog.destination_id

        try:
            destination = await with_rate_limit_retry(
                lambda: self.client.create_destination(title),
                self.limiter,
                "create_destination",
                self.config.rate_limit.max_retries,
            )
        except Exception as e:  # Fails this conversation only
            log_with_context(
                logging.ERROR,
                f"Failed to create destination '{title}': {e}",
                dialog=conversation.id,
            )
            self._progress = mark_dialog_failed(
                self._progress,
                conversation.id,
                f"Failed to create destination: {e}",
                error_type=MigrationErrorKind.GROUP_CREATE_FAILED.value,
            )
            return None
        finally:
            self._sync_rate_events()

        log_with_context(
            logging.INFO,
            f"Created destination '{title}' ({destination.id})",
            dialog=conversation.id,
        )
        # Record it before inviting so a later run reuses it
        self._progress = mark_dialog_started(self._progress, conversation.id, destination.id)
        await self._save()

        if not await self._invite(conversation, destination):
            return None
        return destination.id

    async def _invite(
        self, conversation: ConversationInfo, destination: DestinationInfo
    ) -> bool:
        recipient = self._recipient
        if recipient is None:
            return True

        try:
            await with_rate_limit_retry(
                lambda: self.client.invite_recipient(destination, recipient),
                self.limiter,
                "invite_recipient",
                self.config.rate_limit.max_retries,
            )
        except Exception as e:  # Fails this conversation only
            log_with_context(
                logging.ERROR,
                f"Failed to invite {recipient} to {destination.id}: {e}",
                dialog=conversation.id,
            )
            self._progress = mark_dialog_failed(
                self._progress,
                conversation.id,
                f"Failed to invite recipient: {e}",
                error_type=MigrationErrorKind.INVITE_FAILED.value,
            )
            return False
        finally:
            self._sync_rate_events()

        log_with_context(
            logging.DEBUG,
            f"Invited {recipient} to {destination.id}",
            dialog=conversation.id,
        )
        return True

    async def _forward_with_resume(
        self,
        conversation: ConversationInfo,
        destination_id: str,
        options: MigrationOptions,
    ) -> DialogMigrationResult:
        threshold = self.config.rate_limit.rate_exceeded_threshold
        max_attempts = self.config.max_resume_attempts
        attempts = 0

        while True:
            result = await self.forwarder.migrate_dialog(
                conversation,
                destination_id,
                on_progress=self._handle_progress,
                resume_from=get_resume_point(self._progress, conversation.id),
                date_range=options.date_range,
                should_stop=lambda: self.shutdown.is_shutting_down,
            )
            self._progress = add_failed_messages(
                self._progress, conversation.id, result.failed_count
            )
            if not result.rate_exceeded:
                return result

            seconds = result.rate_exceeded_seconds or 0
            if seconds > threshold:
                log_with_context(
                    logging.WARNING,
                    f"Requested wait of {seconds}s exceeds the {threshold}s threshold",
                    dialog=conversation.id,
                )
                return result
            if attempts >= max_attempts or self.shutdown.is_shutting_down:
                return result

            attempts += 1
            await self._save()
            log_with_context(
                logging.INFO,
                f"Waiting {seconds}s before resuming (attempt {attempts}/{max_attempts})",
                dialog=conversation.id,
            )
            await self.limiter.wait_rate_exceeded(seconds, "forward_batch")

    async def _handle_progress(self, event: ProgressEvent) -> None:
        if event.kind == ProgressEventKind.DIALOG_STARTED:
            dialog = self._progress.get_dialog(event.dialog_id)
            already = dialog.migrated_count if dialog is not None else 0
            self._progress = set_dialog_total(self._progress, event.dialog_id, already + event.total)
        elif event.kind == ProgressEventKind.BATCH_COMPLETED:
            if event.last_message_id is not None:
                self._progress = update_dialog_progress(
                    self._progress, event.dialog_id, event.last_message_id, event.batch_count
                )
            await self._save()
        elif event.kind == ProgressEventKind.RATE_EXCEEDED:
            self.limiter.record_rate_exceeded(
                event.rate_exceeded_seconds or 0, event.operation or "forward_batch"
            )
            self._sync_rate_events()

        if self.on_event is not None:
            self.on_event(event)

    async def _drain_queue(self, conversation: ConversationInfo) -> None:
        """Forward the live messages captured while the history was forwarded."""
        if self.sync_queue is None or not self.sync_queue.is_listening(conversation.id):
            return

        passes = 0
        while passes < self.config.realtime_sync.max_retries:
            dialog = self._progress.get_dialog(conversation.id)
            last_id = dialog.last_message_id if dialog is not None else None
            processed = await self.sync_queue.process_queue(conversation.id, last_id)
            self._sync_rate_events()
            if isinstance(processed, Failure):
                log_with_context(
                    logging.WARNING,
                    f"Realtime sync skipped: {processed.error}",
                    dialog=conversation.id,
                )
                return

            outcome = processed.value
            if outcome.success_count and outcome.last_synced_id is not None:
                dialog = self._progress.get_dialog(conversation.id)
                self._progress = set_dialog_total(
                    self._progress,
                    conversation.id,
                    dialog.total_count + outcome.success_count,
                )
                self._progress = update_dialog_progress(
                    self._progress,
                    conversation.id,
                    outcome.last_synced_id,
                    outcome.success_count,
                )
            if outcome.failed_count:
                self._progress = add_failed_messages(
                    self._progress, conversation.id, outcome.failed_count
                )
                self._progress = add_dialog_error(
                    self._progress,
                    conversation.id,
                    "realtime_sync_failed",
                    f"{outcome.failed_count} live messages could not be forwarded: "
                    f"{list(outcome.failed_message_ids)}",
                )
            if not self.sync_queue.get_pending_ids(conversation.id):
                return
            if outcome.rate_exceeded_seconds is not None:
                # Rate signals wait instead of spending a pass
                if self.shutdown.is_shutting_down or self.limiter.waits_interrupted:
                    return
                await self.limiter.wait_rate_exceeded(
                    outcome.rate_exceeded_seconds, "realtime_sync"
                )
                continue
            passes += 1

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_phase(self, phase: MigrationPhase) -> None:
        if self._progress.current_phase != phase:
            log_with_context(logging.DEBUG, f"Phase: {phase.value}")
        self._progress = set_phase(self._progress, phase)

    def _sync_rate_events(self) -> None:
        """Copy limiter events recorded since the last sync into the progress."""
        events = self.limiter.get_events()
        for event in events[self._synced_events :]:
            self._progress = record_rate_exceeded_event(
                self._progress, event.seconds, event.operation, event.timestamp
            )
        self._synced_events = len(events)

    def _countdown(self, remaining: int, operation: str) -> None:
        if self.on_event is not None:
            self.on_event(CountdownTick(remaining=remaining, operation=operation))

    def _is_completed(self, dialog_id: str) -> bool:
        dialog = self._progress.get_dialog(dialog_id)
        return dialog is not None and dialog.is_completed

    async def _save(self) -> None:
        if not self._persist:
            return
        saved = save_progress(self.progress_path, self._progress)
        if isinstance(saved, Failure):
            log_with_context(
                logging.WARNING,
                f"Could not save progress, continuing: {saved.error.message}",
            )
            return
        self._progress = saved.value
