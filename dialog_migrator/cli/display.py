"""Console progress display for the migrate command."""

from __future__ import annotations

from typing import Optional, Union

from tqdm import tqdm

from dialog_migrator.core.forwarder import ProgressEvent, ProgressEventKind
from dialog_migrator.core.orchestrator import CountdownTick
from dialog_migrator.utils.formatting import truncate


class ProgressDisplay:
    """Renders forwarder events as one tqdm bar per conversation.

    Instances are callable so they can be handed straight to the
    orchestrator as its ``on_event`` callback.
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._bar: Optional[tqdm] = None
        self._dialog_id: Optional[str] = None

    def __call__(self, event: Union[ProgressEvent, CountdownTick]) -> None:
        if isinstance(event, CountdownTick):
            self._countdown(event)
            return

        if event.kind == ProgressEventKind.DIALOG_STARTED:
            self._open(event)
        elif event.kind == ProgressEventKind.BATCH_COMPLETED:
            if self._bar is not None and event.dialog_id == self._dialog_id:
                self._bar.set_postfix_str("")
                self._bar.update(event.batch_count)
        elif event.kind == ProgressEventKind.RATE_EXCEEDED:
            self._write(
                f"Rate limit hit in '{event.dialog_name}' "
                f"({event.operation or 'forward_batch'}): platform asked for "
                f"{event.rate_exceeded_seconds}s"
            )
        elif event.kind == ProgressEventKind.DIALOG_COMPLETED:
            self.close()

    def _open(self, event: ProgressEvent) -> None:
        self.close()
        self._dialog_id = event.dialog_id
        self._bar = tqdm(
            total=event.total,
            desc=truncate(event.dialog_name or event.dialog_id, 30),
            unit="msg",
            disable=not self.enabled,
        )

    def _countdown(self, tick: CountdownTick) -> None:
        if self._bar is not None:
            self._bar.set_postfix_str(f"waiting {tick.remaining}s ({tick.operation})")
        elif tick.remaining % 10 == 0 or tick.remaining <= 3:
            self._write(f"Waiting {tick.remaining}s before retrying {tick.operation}")

    def _write(self, message: str) -> None:
        if self.enabled:
            tqdm.write(message)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
        self._bar = None
        self._dialog_id = None
