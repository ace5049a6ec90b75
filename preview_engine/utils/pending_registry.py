"""
In-flight generation registry: at most one pending generation per style,
with cooperative cancellation of superseded requests
"""
import asyncio
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Shared abort signal for one generation request.

    Cancelling the token cancels the bound generation task. The flag stays set
    so a continuation that resumes after a slow abort can tell it lost.
    """
    def __init__(self):
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def bind(self, task: asyncio.Task) -> None:
        self._task = task
        if self._cancelled:
            task.cancel()

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


@dataclass
class PendingGenerationRecord:
    style_id: str
    slot: str
    token: CancellationToken = field(default_factory=CancellationToken)
    started_at: float = field(default_factory=time.time)


class PendingGenerationRegistry:
    """
    Arena of PendingGenerationRecords keyed by style id.

    All methods are synchronous; within one event loop they cannot interleave,
    so check-then-register is atomic.
    """
    def __init__(self):
        self._records: Dict[str, PendingGenerationRecord] = {}
        self._total_registered = 0
        self._total_aborted = 0

    def get(self, style_id: str) -> Optional[PendingGenerationRecord]:
        return self._records.get(style_id)

    def for_slot(self, slot: str) -> Optional[PendingGenerationRecord]:
        for record in self._records.values():
            if record.slot == slot:
                return record
        return None

    def register(self, style_id: str, slot: str) -> PendingGenerationRecord:
        """
        Create the pending record for a style.

        Raises:
            RuntimeError: If the style already has a pending generation
        """
        if style_id in self._records:
            raise RuntimeError(f"Generation already pending for style {style_id}")

        record = PendingGenerationRecord(style_id=style_id, slot=slot)
        self._records[style_id] = record
        self._total_registered += 1
        return record

    def supersede(self, style_id: str, slot: str) -> PendingGenerationRecord:
        """Abort the pending generation for a style and register a new one"""
        previous = self._records.pop(style_id, None)
        if previous is not None:
            previous.token.cancel()
            self._total_aborted += 1
            logger.info(
                f"Style {style_id} | Superseded pending generation "
                f"(age {time.time() - previous.started_at:.2f}s)"
            )
        return self.register(style_id, slot)

    def is_active(self, record: PendingGenerationRecord) -> bool:
        return self._records.get(record.style_id) is record and not record.token.cancelled

    def release(self, record: PendingGenerationRecord) -> None:
        """Remove the record if it is still the current one for its style"""
        if self._records.get(record.style_id) is record:
            del self._records[record.style_id]

    def abort(self, style_id: str) -> bool:
        record = self._records.pop(style_id, None)
        if record is None:
            return False
        record.token.cancel()
        self._total_aborted += 1
        logger.info(f"Style {style_id} | Pending generation aborted")
        return True

    def abort_slot(self, slot: str) -> bool:
        record = self.for_slot(slot)
        return self.abort(record.style_id) if record else False

    def __contains__(self, style_id: str) -> bool:
        return style_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get_stats(self) -> Dict:
        """Get registry statistics for monitoring"""
        return {
            "pending": len(self._records),
            "total_registered": self._total_registered,
            "total_aborted": self._total_aborted,
        }
