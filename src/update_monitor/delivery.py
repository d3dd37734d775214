"""
Update delivery for the update ingestion monitor.

Both the poll runner and the webhook receiver hand updates to the consumer
through ``UpdateDelivery``, which owns the ordering, deduplication and offset
persistence rules.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from .exceptions import ConsumerError, StorageError
from .models import UpdateRecord
from .state.offset_store import OffsetStore

Consumer = Callable[[UpdateRecord], Awaitable[bool | None] | bool | None]


class UpdateDelivery:
    """
    Delivers updates to the consumer at most once per session cursor.

    An update is handed to the consumer only if its id is greater than the
    cursor. The cursor advances after the consumer succeeds, and the offset is
    then persisted; a failed persist is logged and delivery continues.

    With ``ordered=False`` (pushed updates) ids are compared against the offset
    persisted at startup instead of the moving cursor, so an update arriving
    after a higher id is still delivered. The persisted offset never moves
    backwards.
    """

    def __init__(
        self,
        account_id: str,
        consumer: Consumer,
        offset_store: OffsetStore,
        last_sequence_id: int | None = None,
        logger: Any = None,
        ordered: bool = True,
    ):
        self.account_id = account_id
        self.consumer = consumer
        self.offset_store = offset_store
        self.last_sequence_id = last_sequence_id
        self.ordered = ordered
        self.floor_sequence_id = last_sequence_id
        self.logger = logger or structlog.get_logger(__name__).bind(
            account_id=account_id
        )
        self._lock = asyncio.Lock()

    def is_new(self, sequence_id: int) -> bool:
        """Check if an update id is past the cursor (or the startup offset)."""
        floor = self.last_sequence_id if self.ordered else self.floor_sequence_id
        return floor is None or sequence_id > floor

    async def deliver(self, record: UpdateRecord) -> bool:
        """
        Deliver one update.

        Returns:
            True if the consumer handled it, False if it was stale

        Raises:
            ConsumerError: If the consumer failed; the cursor is not advanced
        """
        async with self._lock:
            if not self.is_new(record.sequence_id):
                self.logger.debug(
                    "Skipping already delivered update",
                    update_id=record.sequence_id,
                    last_update_id=self.last_sequence_id,
                )
                return False

            await self._invoke_consumer(record)
            if self.last_sequence_id is None or record.sequence_id > self.last_sequence_id:
                self.last_sequence_id = record.sequence_id
            await self._persist(record.sequence_id)
            return True

    async def _invoke_consumer(self, record: UpdateRecord) -> None:
        try:
            result = self.consumer(record)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ConsumerError(
                f"Consumer failed for update {record.sequence_id} "
                f"on account {self.account_id}: {e}",
                sequence_id=record.sequence_id,
                context={"account_id": self.account_id, "operation": "consume"},
            ) from e

        if result is False:
            raise ConsumerError(
                f"Consumer rejected update {record.sequence_id} "
                f"on account {self.account_id}",
                sequence_id=record.sequence_id,
                context={"account_id": self.account_id, "operation": "consume"},
            )

    async def _persist(self, sequence_id: int) -> None:
        try:
            await self.offset_store.write(self.account_id, sequence_id)
        except StorageError as e:
            self.logger.error(
                "Failed to persist update offset",
                update_id=sequence_id,
                error=str(e),
            )
