"""
Sequential upload queue.

Files are processed one at a time in submission order. Items are addressed by a stable
id, so removing one item never disturbs another, including the one being processed.
"""

import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import StrEnum
from pathlib import Path
from typing import Generic, TypeVar

from loguru import logger

from imagemeta.errors import HALTED_MESSAGE, friendly_message


R = TypeVar("R")


class ItemStatus(StrEnum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


class ErrorPolicy(StrEnum):
    """What the queue does with the remaining items after a failure."""

    HALT = "halt"
    CONTINUE = "continue"


@dataclass(frozen=True)
class QueueItem(Generic[R]):
    id: str
    path: Path
    status: ItemStatus = ItemStatus.QUEUED
    result: R | None = None
    error: str | None = None


class UploadQueue(Generic[R]):
    """
    FIFO of files consumed by a single worker loop.

    Args:
        processor: Called once per item with its path; returns the item's result.
        policy: HALT fails every remaining queued item after the first error;
            CONTINUE only fails the item that raised.
        on_change: Optional callback receiving each item after a status change.

    """

    def __init__(
        self,
        processor: Callable[[Path], R],
        *,
        policy: ErrorPolicy = ErrorPolicy.HALT,
        on_change: Callable[[QueueItem[R]], None] | None = None,
    ) -> None:
        self._processor = processor
        self.policy = policy
        self._on_change = on_change
        self._items: dict[str, QueueItem[R]] = {}
        self._pending: deque[str] = deque()
        self._busy = False
        self.halted = False

    def add(self, paths: Iterable[Path]) -> list[str]:
        """Queue files in order and return their ids."""
        ids: list[str] = []
        for path in paths:
            item_id = uuid.uuid4().hex
            self._items[item_id] = QueueItem(id=item_id, path=path)
            self._pending.append(item_id)
            ids.append(item_id)
        logger.debug("files_queued", count=len(ids), pending=len(self._pending))
        return ids

    def remove(self, item_id: str) -> None:
        """Drop an item. Unknown ids are ignored; a processing item's result is discarded."""
        item = self._items.pop(item_id, None)
        if item is not None:
            logger.debug("queue_item_removed", file=item.path.name, status=item.status.value)

    def clear(self) -> None:
        """Forget every item and lift a halt."""
        self._items.clear()
        self._pending.clear()
        self.halted = False

    def get(self, item_id: str) -> QueueItem[R] | None:
        return self._items.get(item_id)

    def items(self) -> list[QueueItem[R]]:
        """Snapshot of all items in submission order."""
        return list(self._items.values())

    def summary(self) -> dict[str, int]:
        counts = {status.value: 0 for status in ItemStatus}
        for item in self._items.values():
            counts[item.status.value] += 1
        return counts

    def _update(self, item_id: str, **changes: object) -> QueueItem[R] | None:
        current = self._items.get(item_id)
        if current is None:
            return None
        updated = replace(current, **changes)  # type: ignore[arg-type]
        self._items[item_id] = updated
        if self._on_change is not None:
            self._on_change(updated)
        return updated

    def _halt_remaining(self) -> None:
        self.halted = True
        while self._pending:
            item_id = self._pending.popleft()
            item = self._items.get(item_id)
            if item is not None and item.status is ItemStatus.QUEUED:
                self._update(item_id, status=ItemStatus.ERROR, error=HALTED_MESSAGE)
        logger.warning("queue_halted_after_error")

    def _next_queued(self) -> str | None:
        while self._pending:
            item_id = self._pending.popleft()
            item = self._items.get(item_id)
            if item is not None and item.status is ItemStatus.QUEUED:
                return item_id
        return None

    def run(self) -> None:
        """Process queued items until none remain, or until the queue halts."""
        if self._busy:
            return
        if self.halted:
            logger.info("queue_halted_clear_to_resume", pending=len(self._pending))
            return

        self._busy = True
        try:
            while (item_id := self._next_queued()) is not None:
                item = self._update(item_id, status=ItemStatus.PROCESSING)
                if item is None:
                    continue
                with logger.contextualize(file=item.path.name):
                    failed = self._process(item)
                if failed and self.policy is ErrorPolicy.HALT:
                    self._halt_remaining()
                    break
        finally:
            self._busy = False

    def _process(self, item: QueueItem[R]) -> bool:
        """Run the processor for one item. Returns True when a still-tracked item failed."""
        try:
            result = self._processor(item.path)
        except Exception as exc:  # noqa: BLE001
            message = friendly_message(exc)
            logger.error("processing_failed", error=str(exc))
            # A removed item no longer counts towards halting the batch.
            return self._update(item.id, status=ItemStatus.ERROR, error=message) is not None

        if self._update(item.id, status=ItemStatus.SUCCESS, result=result) is None:
            logger.debug("result_discarded_item_removed")
        else:
            logger.info("processing_success")
        return False
