"""Tests for conversation state inference."""

from datetime import timedelta

import pytest

from claude_analytics.models import ConversationState, ConversationStatus
from claude_analytics.services import ConversationAnalyzer, ProcessDetector, StateCalculator

from factories import BASE_TIME, FakeClock, FakeLister, make_message, make_process, make_record


AGENT = ConversationState.AGENT_WORKING
TYPING = ConversationState.USER_TYPING
AWAITING = ConversationState.AWAITING_USER_INPUT
IDLE = ConversationState.IDLE


class TestDetermineConversationState:
    """SUT: StateCalculator.determine_conversation_state"""

    def setup_method(self):
        self.calculator = StateCalculator(activity_threshold=15)
        self.process = make_process(working_dir="/home/alice/myapp")

    def test_no_messages_is_idle(self):
        """An empty conversation is idle, process or not."""
        assert self.calculator.determine_conversation_state([], BASE_TIME, self.process, now=BASE_TIME) == IDLE

    def test_user_message_with_process(self):
        """Scenario: a single user message and a running process means the agent works."""
        messages = [make_message("user")]
        assert self.calculator.determine_conversation_state(messages, BASE_TIME, self.process, now=BASE_TIME) == AGENT

    def test_recent_assistant_reply(self):
        """Scenario: assistant reply written 5s ago, process alive, still working."""
        messages = [make_message("user"), make_message("assistant", offset=1)]
        now = BASE_TIME + timedelta(seconds=5)
        assert self.calculator.determine_conversation_state(messages, BASE_TIME, self.process, now=now) == AGENT

    def test_quiet_assistant_reply(self):
        """Scenario: 20s after the assistant reply the user is typing."""
        messages = [make_message("user"), make_message("assistant", offset=1)]
        now = BASE_TIME + timedelta(seconds=20)
        assert self.calculator.determine_conversation_state(messages, BASE_TIME, self.process, now=now) == TYPING

    def test_threshold_is_configurable(self):
        """A longer threshold keeps the agent working longer."""
        calculator = StateCalculator(activity_threshold=60)
        messages = [make_message("assistant")]
        now = BASE_TIME + timedelta(seconds=20)
        assert calculator.determine_conversation_state(messages, BASE_TIME, self.process, now=now) == AGENT

    @pytest.mark.parametrize("last_role", ["user", "assistant"])
    @pytest.mark.parametrize("age", [0, 5, 20, 3600])
    def test_no_process_awaits_input(self, last_role, age):
        """Scenario: without a matched process the state is AwaitingUserInput regardless of age."""
        messages = [make_message(last_role)]
        now = BASE_TIME + timedelta(seconds=age)
        state = self.calculator.determine_conversation_state(messages, BASE_TIME, None, now=now)
        assert state == AWAITING
        assert state != AGENT

    def test_deterministic(self):
        """The same inputs always give the same label."""
        messages = [make_message("user"), make_message("assistant")]
        now = BASE_TIME + timedelta(seconds=9)
        results = {
            self.calculator.determine_conversation_state(messages, BASE_TIME, self.process, now=now)
            for _ in range(10)
        }
        assert results == {AGENT}


class TestQuickStateCalculation:
    """SUT: StateCalculator.quick_state_calculation"""

    def setup_method(self):
        self.calculator = StateCalculator(activity_threshold=15)

    @pytest.mark.parametrize("age", [0, 5, 20])
    @pytest.mark.parametrize("with_process", [True, False])
    @pytest.mark.parametrize("last_role", ["user", "assistant"])
    def test_matches_full_calculation(self, age, with_process, last_role):
        """Quick and full calculation agree on identical inputs."""
        messages = [make_message("user"), make_message(last_role, offset=1)]
        record = make_record("conv-1", "myapp", last_modified=BASE_TIME, messages=messages)
        process = make_process(working_dir="/home/alice/myapp")
        processes = [process] if with_process else []
        now = BASE_TIME + timedelta(seconds=age)

        quick = self.calculator.quick_state_calculation(record, processes, now=now)
        full = self.calculator.determine_conversation_state(
            messages, BASE_TIME, process if with_process else None, now=now
        )
        assert quick == full

    def test_keeps_previous_process_by_pid(self):
        """A process matched earlier by fallback stays matched while its pid is alive."""
        previous = make_process(pid=77)
        record = make_record("conv-1", "myapp", messages=[make_message("user")], running_process=previous)
        assert self.calculator.quick_state_calculation(record, [make_process(pid=77)], now=BASE_TIME) == AGENT

    def test_terminated_process(self):
        """Scenario: once the process is gone the conversation awaits input."""
        record = make_record(
            "conv-1", "myapp", messages=[make_message("user")], running_process=make_process(pid=77)
        )
        assert self.calculator.quick_state_calculation(record, [], now=BASE_TIME) == AWAITING

    def test_matches_full_classification_with_fallback(self):
        """When an unknown-cwd process moves to a newer conversation, quick and full labels agree."""
        previous = make_process(pid=1)
        older = make_record(
            "conv-b", "alpha", last_modified=BASE_TIME - timedelta(minutes=5),
            messages=[make_message("user")], running_process=previous,
        )
        newer = make_record("conv-c", "beta", last_modified=BASE_TIME, messages=[make_message("user")])
        processes = [make_process(pid=1)]
        detector = ProcessDetector(FakeLister(processes), clock=FakeClock())

        full = ConversationAnalyzer("/nonexistent").classify(
            [older, newer], processes, self.calculator, detector, now=BASE_TIME
        )
        matches = detector.match_conversations([older, newer], processes)
        quick = {
            record.id: self.calculator.quick_state_calculation(record, processes, now=BASE_TIME, matches=matches)
            for record in (older, newer)
        }

        assert {record.id: record.conversation_state for record in full} == {"conv-b": AWAITING, "conv-c": AGENT}
        assert quick == {record.id: record.conversation_state for record in full}


class TestDetermineConversationStatus:
    """SUT: StateCalculator.determine_conversation_status"""

    def setup_method(self):
        self.calculator = StateCalculator()

    def test_running_process_is_active(self):
        """A matched process always means active."""
        status = self.calculator.determine_conversation_status([], BASE_TIME, make_process(), now=BASE_TIME)
        assert status == ConversationStatus.ACTIVE

    def test_recent_user_message_is_waiting(self):
        """A fresh user message without a process is waiting."""
        now = BASE_TIME + timedelta(minutes=1)
        status = self.calculator.determine_conversation_status([make_message("user")], BASE_TIME, None, now=now)
        assert status == ConversationStatus.WAITING

    def test_older_assistant_message_is_completed(self):
        """An assistant reply within half an hour is completed."""
        now = BASE_TIME + timedelta(minutes=10)
        status = self.calculator.determine_conversation_status([make_message("assistant")], BASE_TIME, None, now=now)
        assert status == ConversationStatus.COMPLETED

    def test_old_conversation_is_idle(self):
        """Anything older than half an hour is idle."""
        now = BASE_TIME + timedelta(hours=2)
        status = self.calculator.determine_conversation_status([make_message("user")], BASE_TIME, None, now=now)
        assert status == ConversationStatus.IDLE
