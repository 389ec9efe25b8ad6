"""In-memory store holding the current set of conversations."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from ..models import ActiveProject, ConversationRecord, Summary, TokenUsage
from ..utils.logger import get_app_logger
from ..utils.timefmt import utc_now


@dataclass(frozen=True)
class StoreSnapshot:
    """Immutable view of the store at one point in time."""

    conversations: tuple = ()
    summary: Summary = field(default_factory=Summary)
    active_projects: tuple = ()
    detailed_token_usage: TokenUsage = field(default_factory=TokenUsage)
    last_update: Optional[datetime] = None
    version: int = 0

    def get(self, conversation_id: str) -> Optional[ConversationRecord]:
        for record in self.conversations:
            if record.id == conversation_id:
                return record
        return None


class ConversationStore:
    """
    Single owner of the conversation list.

    Writers go through ``replace``/``merge`` which hold an
    ``asyncio.Lock`` and swap in a new snapshot; readers call ``snapshot()``
    and get an immutable view without locking.
    """

    def __init__(self, max_conversations: int = 150):
        self.max_conversations = max_conversations
        self._lock = asyncio.Lock()
        self._snapshot = StoreSnapshot()
        self.logger = get_app_logger()

    def snapshot(self) -> StoreSnapshot:
        return self._snapshot

    def get(self, conversation_id: str) -> Optional[ConversationRecord]:
        return self._snapshot.get(conversation_id)

    async def replace(
        self,
        conversations: Sequence[ConversationRecord],
        summary: Summary,
        active_projects: Sequence[ActiveProject] = (),
        detailed_token_usage: Optional[TokenUsage] = None,
    ) -> StoreSnapshot:
        """
        Replace the whole data set (full reload).

        Returns:
            The new snapshot
        """
        async with self._lock:
            current = self._snapshot
            self._snapshot = StoreSnapshot(
                conversations=tuple(self._trim(conversations)),
                summary=summary,
                active_projects=tuple(active_projects),
                detailed_token_usage=detailed_token_usage or current.detailed_token_usage,
                last_update=utc_now(),
                version=current.version + 1,
            )
            return self._snapshot

    async def merge(
        self,
        build: Callable[[StoreSnapshot], Tuple[Sequence[ConversationRecord], Optional[Summary]]],
    ) -> Tuple[StoreSnapshot, StoreSnapshot]:
        """
        Rebuild the conversation list from the snapshot current at lock time.

        ``build`` runs under the lock and must not await. Use it when the new
        records were prepared from an older snapshot that a concurrent
        ``replace`` may have superseded.

        Returns:
            (snapshot ``build`` saw, new snapshot)
        """
        async with self._lock:
            current = self._snapshot
            records, summary = build(current)
            self._snapshot = StoreSnapshot(
                conversations=tuple(self._trim(records)),
                summary=summary or current.summary,
                active_projects=current.active_projects,
                detailed_token_usage=current.detailed_token_usage,
                last_update=utc_now(),
                version=current.version + 1,
            )
            return current, self._snapshot

    def _trim(self, records: Sequence[ConversationRecord]) -> List[ConversationRecord]:
        """Keep the ``max_conversations`` most recently modified records, preserving order."""
        records = list(records)
        if len(records) <= self.max_conversations:
            return records

        newest = sorted(records, key=lambda record: record.last_modified, reverse=True)
        keep = {record.id for record in newest[:self.max_conversations]}
        self.logger.info(
            f"[ConversationStore] trimming {len(records) - len(keep)} oldest conversations"
        )
        return [record for record in records if record.id in keep]
