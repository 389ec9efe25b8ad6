"""Conversation state inference."""

from datetime import datetime
from typing import Mapping, Optional, Sequence

from ..models import (
    ConversationRecord,
    ConversationState,
    ConversationStatus,
    Message,
    ProcessInfo,
)
from ..utils.timefmt import utc_now
from .process_detector import process_matches_conversation


WAITING_WINDOW_SECONDS = 5 * 60
RECENT_WINDOW_SECONDS = 30 * 60


class StateCalculator:
    """
    Derives a ConversationState from the last message, the file mtime and
    whether an agent process is matched. All methods are pure given ``now``.
    """

    def __init__(self, activity_threshold: float = 15.0):
        """
        Args:
            activity_threshold: Seconds since the last write below which an
                assistant-ended conversation is still considered in progress
        """
        self.activity_threshold = activity_threshold

    def determine_conversation_state(
        self,
        messages: Sequence[Message],
        file_mod_time: datetime,
        matched_process: Optional[ProcessInfo],
        now: Optional[datetime] = None,
    ) -> ConversationState:
        """
        Classify a conversation.

        Args:
            messages: Messages in file order (the last element is the most recent)
            file_mod_time: Modification time of the backing file
            matched_process: Agent process matched this cycle, if any
            now: Reference time (defaults to the current time)

        Returns:
            The conversation state
        """
        if not messages:
            return ConversationState.IDLE

        if matched_process is None:
            return ConversationState.AWAITING_USER_INPUT

        last_role = messages[-1].role
        if last_role == "user":
            return ConversationState.AGENT_WORKING

        if last_role == "assistant":
            now = now or utc_now()
            if (now - file_mod_time).total_seconds() < self.activity_threshold:
                return ConversationState.AGENT_WORKING
            return ConversationState.USER_TYPING

        return ConversationState.IDLE

    def find_fresh_process(
        self,
        conversation: ConversationRecord,
        processes: Sequence[ProcessInfo],
        matches: Optional[Mapping[str, ProcessInfo]] = None,
    ) -> Optional[ProcessInfo]:
        """
        Pick the process for ``conversation`` from a freshly detected list.

        Args:
            conversation: Conversation with its last known process
            processes: Freshly detected processes
            matches: Assignment of ``processes`` over all conversations, as
                made by ``ProcessDetector.match_conversations``. When given it
                is authoritative. Without it, only a direct match or the
                previously matched pid is considered.
        """
        if matches is not None:
            return matches.get(conversation.id)

        for process in processes:
            if process_matches_conversation(process, conversation):
                return process

        previous = conversation.running_process
        if previous is not None:
            for process in processes:
                if process.pid == previous.pid:
                    return process

        return None

    def quick_state_calculation(
        self,
        conversation: ConversationRecord,
        processes: Sequence[ProcessInfo],
        now: Optional[datetime] = None,
        matches: Optional[Mapping[str, ProcessInfo]] = None,
    ) -> ConversationState:
        """Recompute the state from in-memory messages and fresh processes only."""
        process = self.find_fresh_process(conversation, processes, matches)
        return self.determine_conversation_state(
            conversation.messages,
            conversation.last_modified,
            process,
            now=now,
        )

    def determine_conversation_status(
        self,
        messages: Sequence[Message],
        last_modified: datetime,
        running_process: Optional[ProcessInfo],
        now: Optional[datetime] = None,
    ) -> ConversationStatus:
        if running_process is not None:
            return ConversationStatus.ACTIVE

        if not messages:
            return ConversationStatus.IDLE

        now = now or utc_now()
        age = (now - last_modified).total_seconds()
        last_role = messages[-1].role

        if age < WAITING_WINDOW_SECONDS:
            return ConversationStatus.WAITING if last_role == "user" else ConversationStatus.ACTIVE

        if age < RECENT_WINDOW_SECONDS:
            return ConversationStatus.ACTIVE if last_role == "user" else ConversationStatus.COMPLETED

        return ConversationStatus.IDLE
