"""Tests for conversation log analysis."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from claude_analytics.models import ConversationState
from claude_analytics.services import ConversationAnalyzer, DataCache, ProcessDetector, StateCalculator
from claude_analytics.services.conversation_analyzer import (
    compute_usage_sessions,
    format_bytes,
    project_status,
)

from factories import (
    BASE_TIME,
    FakeClock,
    FakeLister,
    assistant_entry,
    make_message,
    make_process,
    make_record,
    user_entry,
    write_conversation,
)


def tool_use_entry(timestamp, tool_id="toolu_1", name="Bash"):
    return assistant_entry(
        [
            {"type": "text", "text": "Running tests"},
            {"type": "tool_use", "id": tool_id, "name": name, "input": {"command": "pytest"}},
        ],
        timestamp,
    )


def tool_result_entry(timestamp, tool_id="toolu_1"):
    return {
        "type": "user",
        "uuid": f"r-{timestamp}",
        "timestamp": timestamp,
        "message": {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": tool_id, "content": "3 passed"}],
        },
    }


class TestParseEntries:
    """SUT: ConversationAnalyzer.parse_entries"""

    def setup_method(self):
        self.analyzer = ConversationAnalyzer("/nonexistent")

    def test_skips_non_message_entries(self):
        """Only user and assistant entries with a message object become messages."""
        entries = [
            {"type": "summary", "summary": "Login fix"},
            user_entry("hi", "2025-07-01T12:00:00Z"),
            {"type": "user"},
            assistant_entry("hello", "2025-07-01T12:00:05Z"),
        ]
        messages = self.analyzer.parse_entries(entries)
        assert [m.role for m in messages] == ["user", "assistant"]

    def test_tool_results_attach_to_tool_use(self):
        """A tool_result entry is folded into the assistant message that issued the call."""
        entries = [
            user_entry("run tests", "2025-07-01T12:00:00Z"),
            tool_use_entry("2025-07-01T12:00:01Z"),
            tool_result_entry("2025-07-01T12:00:02Z"),
        ]
        messages = self.analyzer.parse_entries(entries)

        assert len(messages) == 2
        assert messages[1].tool_results == [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": "3 passed"}
        ]

    def test_orphan_tool_result_is_kept(self):
        """A tool_result without a matching tool_use stays a user message."""
        messages = self.analyzer.parse_entries([tool_result_entry("2025-07-01T12:00:02Z", tool_id="toolu_x")])
        assert len(messages) == 1
        assert messages[0].role == "user"

    def test_missing_timestamp_uses_default(self):
        """Entries without a valid timestamp get the supplied fallback."""
        entry = user_entry("hi", "not-a-time")
        messages = self.analyzer.parse_entries([entry], default_timestamp=BASE_TIME)
        assert messages[0].timestamp == BASE_TIME

    def test_wrongly_typed_entry_is_dropped(self):
        """An entry whose model or id has the wrong type is dropped and reported, the rest survives."""
        bad_model = assistant_entry("hello", "2025-07-01T12:00:01Z", model=7)
        bad_id = assistant_entry("again", "2025-07-01T12:00:02Z")
        bad_id["message"]["id"] = ["msg", 1]
        rejected = []

        messages = self.analyzer.parse_entries(
            [user_entry("hi", "2025-07-01T12:00:00Z"), bad_model, bad_id],
            rejected=rejected,
        )

        assert [m.text() for m in messages] == ["hi"]
        assert rejected == [bad_model, bad_id]

    def test_unhashable_tool_ids_are_ignored(self):
        """Non-string tool ids neither correlate nor raise."""
        call = tool_use_entry("2025-07-01T12:00:01Z", tool_id=["toolu_1"])
        result = tool_result_entry("2025-07-01T12:00:02Z", tool_id={"id": "toolu_1"})
        messages = self.analyzer.parse_entries([call, result])
        assert [m.role for m in messages] == ["assistant", "user"]


class TestExtractProjectName:
    """SUT: ConversationAnalyzer.extract_project_name"""

    async def test_from_cwd(self, tmp_path):
        """The cwd recorded in the log wins."""
        analyzer = ConversationAnalyzer(tmp_path)
        entries = [{"type": "summary"}, user_entry("hi", "2025-07-01T12:00:00Z", cwd="/home/alice/myapp/")]
        assert await analyzer.extract_project_name(tmp_path / "x.jsonl", entries) == "myapp"

    async def test_from_settings(self, tmp_path):
        """Without a cwd the directory's settings.json names the project."""
        folder = tmp_path / "work"
        folder.mkdir()
        (folder / "settings.json").write_text(json.dumps({"projectName": "Widget"}), encoding="utf-8")
        analyzer = ConversationAnalyzer(tmp_path)
        assert await analyzer.extract_project_name(folder / "x.jsonl", []) == "Widget"

    async def test_from_settings_project_path(self, tmp_path):
        """A projectPath in settings.json contributes its basename."""
        folder = tmp_path / "work"
        folder.mkdir()
        (folder / "settings.json").write_text(json.dumps({"projectPath": "/srv/shop"}), encoding="utf-8")
        analyzer = ConversationAnalyzer(tmp_path)
        assert await analyzer.extract_project_name(folder / "x.jsonl", []) == "shop"

    async def test_from_encoded_directory(self, tmp_path):
        """The encoded ``projects/`` directory name gives the last path segment."""
        analyzer = ConversationAnalyzer(tmp_path)
        path = tmp_path / "projects" / "-Users-bob-code-webapp" / "x.jsonl"
        assert await analyzer.extract_project_name(path, []) == "webapp"

    async def test_unknown(self, tmp_path):
        """With no hint at all the project is Unknown."""
        analyzer = ConversationAnalyzer(tmp_path)
        assert await analyzer.extract_project_name(tmp_path / "x.jsonl", []) == "Unknown"


class TestAggregations:
    """SUT: ConversationAnalyzer aggregations"""

    def setup_method(self):
        self.analyzer = ConversationAnalyzer("/nonexistent")
        self.messages = self.analyzer.parse_entries([
            user_entry("run tests", "2025-07-01T12:00:00Z"),
            assistant_entry(
                "[Tool: Read] then [Tool: Bash]",
                "2025-07-01T12:00:01Z",
                usage={"input_tokens": 100, "output_tokens": 50, "cache_read_input_tokens": 10,
                       "service_tier": "standard"},
                model="claude-sonnet-4",
            ),
            tool_use_entry("2025-07-01T12:00:02Z"),
            assistant_entry(
                "done",
                "2025-07-01T12:00:03Z",
                usage={"input_tokens": 20, "output_tokens": 5},
                model="claude-opus-4",
            ),
        ])

    def test_token_usage(self):
        """Usage metadata is summed; total is input plus output."""
        usage = self.analyzer.calculate_token_usage(self.messages)
        assert usage.input_tokens == 120
        assert usage.output_tokens == 55
        assert usage.cache_read_tokens == 10
        assert usage.total == 175
        assert usage.messages_with_usage == 2
        assert usage.total_messages == 4

    def test_model_info(self):
        """All models are listed; the most recent one is primary."""
        info = self.analyzer.extract_model_info(self.messages)
        assert info.models == ["claude-sonnet-4", "claude-opus-4"]
        assert info.primary_model == "claude-opus-4"
        assert info.current_service_tier == "standard"
        assert info.has_multiple_models

    def test_tool_usage(self):
        """Tool markers in text and tool_use blocks are both counted."""
        usage = self.analyzer.extract_tool_usage(self.messages)
        assert usage.tool_stats == {"Read": 1, "Bash": 2}
        assert usage.total_tool_calls == 3
        assert usage.unique_tools == 2

    def test_non_integer_counters_count_as_zero(self):
        """String, float, boolean or negative counters are ignored rather than summed."""
        messages = self.analyzer.parse_entries([
            assistant_entry(
                "a",
                "2025-07-01T12:00:01Z",
                usage={"input_tokens": "12", "output_tokens": 3.5, "cache_read_input_tokens": True,
                       "cache_creation_input_tokens": -4, "service_tier": 1},
            ),
            assistant_entry("b", "2025-07-01T12:00:02Z", usage={"input_tokens": 7, "output_tokens": 2}),
        ])

        usage = self.analyzer.calculate_token_usage(messages)

        assert (usage.input_tokens, usage.output_tokens, usage.total) == (7, 2, 9)
        assert usage.cache_read_tokens == 0
        assert usage.cache_creation_tokens == 0
        assert usage.messages_with_usage == 2
        assert self.analyzer.extract_model_info(messages).service_tiers == []

    def test_estimate_tokens(self):
        """Without usage data tokens are estimated from the file size."""
        assert self.analyzer.estimate_tokens(10) == 3
        assert self.analyzer.estimate_tokens(0) == 0


class TestLoadConversation:
    """SUT: ConversationAnalyzer.load_conversation"""

    async def test_counts_malformed_lines(self, tmp_path):
        """Malformed lines are skipped and reported; the rest still loads."""
        path = write_conversation(
            tmp_path / "projects" / "-home-alice-myapp" / "abc.jsonl",
            [user_entry("hi", "2025-07-01T12:00:00Z"), "{broken", assistant_entry("hello", "2025-07-01T12:00:01Z")],
        )
        loaded = await ConversationAnalyzer(tmp_path).load_conversation(path)

        assert loaded.skipped_lines == 1
        assert loaded.record.id == "abc"
        assert loaded.record.message_count == 2
        assert loaded.record.project == "myapp"
        assert not loaded.degraded

    async def test_reuses_cached_parse(self, tmp_path):
        """An unchanged file is served from the cache."""
        path = write_conversation(tmp_path / "abc.jsonl", [user_entry("hi", "2025-07-01T12:00:00Z")])
        cache = DataCache(clock=FakeClock())
        analyzer = ConversationAnalyzer(tmp_path, cache=cache)

        await analyzer.load_conversation(path)
        await analyzer.load_conversation(path)

        stats = cache.stats()
        assert stats["sets"] == 1
        assert stats["hits"] == 1

    async def test_changed_file_is_reparsed(self, tmp_path):
        """A new mtime or size invalidates the cached parse."""
        path = write_conversation(tmp_path / "abc.jsonl", [user_entry("hi", "2025-07-01T12:00:00Z")], mtime=1000)
        analyzer = ConversationAnalyzer(tmp_path, cache=DataCache(clock=FakeClock()))
        first = await analyzer.load_conversation(path)

        write_conversation(
            path,
            [user_entry("hi", "2025-07-01T12:00:00Z"), assistant_entry("hello", "2025-07-01T12:00:01Z")],
            mtime=2000,
        )
        second = await analyzer.load_conversation(path)

        assert first.record.message_count == 1
        assert second.record.message_count == 2

    async def test_unreadable_file_serves_stale(self, tmp_path):
        """If the file vanishes the last good parse is served in degraded mode."""
        clock = FakeClock()
        path = write_conversation(tmp_path / "abc.jsonl", [user_entry("hi", "2025-07-01T12:00:00Z")])
        analyzer = ConversationAnalyzer(tmp_path, cache=DataCache(clock=clock), parsed_data_ttl=15)
        await analyzer.load_conversation(path)

        path.unlink()
        clock.advance(60)
        loaded = await analyzer.load_conversation(path)

        assert loaded.degraded
        assert loaded.record.message_count == 1

    async def test_unreadable_file_without_cache_raises(self, tmp_path):
        """With nothing cached an I/O error propagates."""
        with pytest.raises(OSError):
            await ConversationAnalyzer(tmp_path).load_conversation(tmp_path / "missing.jsonl")


class TestLoadAll:
    """SUT: ConversationAnalyzer.load_all"""

    async def test_missing_root(self, tmp_path):
        """A missing log root is an error, not an empty result."""
        analyzer = ConversationAnalyzer(tmp_path / "missing")
        with pytest.raises(FileNotFoundError):
            await analyzer.load_all(StateCalculator(), ProcessDetector(FakeLister(), clock=FakeClock()))

    async def test_loads_and_classifies(self, tmp_path):
        """Every file is loaded, matched against processes, classified and sorted newest first."""
        projects = tmp_path / "projects"
        now_ts = BASE_TIME.timestamp()
        write_conversation(
            projects / "-home-alice-myapp" / "conv-app.jsonl",
            [user_entry("fix it", "2025-07-01T11:59:50Z", cwd="/home/alice/myapp")],
            mtime=now_ts - 10,
        )
        write_conversation(
            projects / "-home-alice-docs" / "conv-docs.jsonl",
            [
                user_entry("write docs", "2025-07-01T10:00:00Z", cwd="/home/alice/docs"),
                assistant_entry("done", "2025-07-01T10:00:30Z"),
                "not json",
            ],
            mtime=now_ts - 3600,
        )
        lister = FakeLister([make_process(working_dir="/home/alice/myapp")])
        analyzer = ConversationAnalyzer(tmp_path, cache=DataCache())

        result = await analyzer.load_all(
            StateCalculator(), ProcessDetector(lister, clock=FakeClock()), now=BASE_TIME
        )

        assert [c.id for c in result.conversations] == ["conv-app", "conv-docs"]
        states = {c.id: c.conversation_state for c in result.conversations}
        assert states == {
            "conv-app": ConversationState.AGENT_WORKING,
            "conv-docs": ConversationState.AWAITING_USER_INPUT,
        }
        assert result.conversations[0].running_process.pid == 4242
        assert result.skipped_lines == 1
        assert result.active_process_count == 1
        assert result.summary.total_conversations == 2
        assert result.summary.active_conversations == 1
        assert result.summary.skipped_lines == 1
        assert [p.name for p in result.active_projects] == ["projects"]

    async def test_wrongly_typed_lines_do_not_abort(self, tmp_path):
        """A string token counter in one file and a numeric model in another still load both files."""
        write_conversation(
            tmp_path / "conv-usage.jsonl",
            [
                user_entry("hi", "2025-07-01T12:00:00Z"),
                assistant_entry("ok", "2025-07-01T12:00:01Z", usage={"input_tokens": "12", "output_tokens": 4}),
            ],
        )
        write_conversation(
            tmp_path / "conv-model.jsonl",
            [user_entry("hi", "2025-07-01T12:00:00Z"), assistant_entry("ok", "2025-07-01T12:00:01Z", model=7)],
        )
        analyzer = ConversationAnalyzer(tmp_path, cache=DataCache())

        result = await analyzer.load_all(StateCalculator(), ProcessDetector(FakeLister(), clock=FakeClock()))

        records = {c.id: c for c in result.conversations}
        assert set(records) == {"conv-usage", "conv-model"}
        assert records["conv-usage"].token_usage.output_tokens == 4
        assert records["conv-usage"].token_usage.input_tokens == 0
        assert records["conv-model"].message_count == 1
        assert result.skipped_lines == 1
        assert result.skipped_files == 0

    async def test_invalid_file_is_skipped(self, tmp_path, monkeypatch):
        """A file that fails validation is counted as skipped; the other files still load."""
        write_conversation(tmp_path / "good.jsonl", [user_entry("hi", "2025-07-01T12:00:00Z")])
        write_conversation(tmp_path / "bad.jsonl", [user_entry("hi", "2025-07-01T12:00:00Z")])
        analyzer = ConversationAnalyzer(tmp_path)
        load = analyzer.load_conversation

        async def failing_load(path):
            if path.name == "bad.jsonl":
                raise TypeError("unsupported operand")
            return await load(path)

        monkeypatch.setattr(analyzer, "load_conversation", failing_load)
        result = await analyzer.load_all(StateCalculator(), ProcessDetector(FakeLister(), clock=FakeClock()))

        assert [c.id for c in result.conversations] == ["good"]
        assert result.skipped_files == 1
        assert result.summary.skipped_files == 1


class TestUsageSessions:
    """SUT: compute_usage_sessions"""

    def test_five_hour_windows(self):
        """User messages inside an open window extend it; later ones open a new one."""
        start = datetime(2025, 7, 1, 8, tzinfo=timezone.utc)
        record = make_record("c1", "alpha", messages=[
            make_message("user").model_copy(update={"timestamp": start}),
            make_message("user").model_copy(update={"timestamp": start + timedelta(hours=1)}),
            make_message("assistant").model_copy(update={"timestamp": start + timedelta(hours=7)}),
            make_message("user").model_copy(update={"timestamp": start + timedelta(hours=7)}),
        ])
        sessions = compute_usage_sessions([record], now=datetime(2025, 7, 2, tzinfo=timezone.utc))
        assert sessions.total == 2
        assert sessions.current_month == 2
        assert sessions.this_week == 2

    def test_no_user_messages(self):
        """No user messages means no sessions."""
        assert compute_usage_sessions([make_record("c1", "alpha")]).total == 0

    async def test_cached_until_records_change(self, tmp_path):
        """The session count is computed once per set of file versions."""
        cache = DataCache(clock=FakeClock())
        analyzer = ConversationAnalyzer(tmp_path, cache=cache)
        records = [make_record("c1", "alpha", messages=[make_message("user")])]

        analyzer.usage_sessions(records)
        analyzer.usage_sessions(records)
        assert cache.stats()["sets"] == 1

        cache.invalidate_file(records[0].file_path)
        analyzer.usage_sessions(records)
        assert cache.stats()["sets"] == 2


class TestFormatting:
    """SUT: format_bytes, project_status"""

    @pytest.mark.parametrize("size,expected", [
        (0, "0 Bytes"),
        (500, "500 Bytes"),
        (1024, "1 KB"),
        (1536, "1.5 KB"),
        (5 * 1024 * 1024, "5 MB"),
    ])
    def test_format_bytes(self, size, expected):
        """Sizes are rendered with the largest fitting unit."""
        assert format_bytes(size) == expected

    def test_project_status(self):
        """Activity is bucketed by age."""
        assert project_status(BASE_TIME, BASE_TIME + timedelta(minutes=30)) == "active"
        assert project_status(BASE_TIME, BASE_TIME + timedelta(hours=5)) == "recent"
        assert project_status(BASE_TIME, BASE_TIME + timedelta(days=2)) == "inactive"
