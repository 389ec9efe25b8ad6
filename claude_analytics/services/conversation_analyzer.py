"""Conversation log analysis: parsing, aggregation and summary statistics."""

import json
import math
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import aiofiles
from pydantic import ValidationError

from ..models import (
    ActiveProject,
    ConversationRecord,
    ConversationStatus,
    Message,
    ModelInfo,
    ProcessInfo,
    Summary,
    TokenUsage,
    ToolUsage,
    UsageSessions,
)
from ..utils.jsonl_parser import JSONLParser
from ..utils.logger import get_app_logger
from ..utils.timefmt import from_timestamp, parse_iso, utc_now
from .data_cache import DataCache
from .process_detector import ProcessDetector
from .state_calculator import StateCalculator


UNKNOWN_PROJECT = "Unknown"
PROJECT_SCAN_ENTRIES = 10
SESSION_WINDOW = timedelta(hours=5)
SESSIONS_CACHE_KEY = "computation::sessions"

_TOOL_MARKER = re.compile(r"\[Tool:\s*([^\]]+)\]")


@dataclass(frozen=True)
class FileStamp:
    """The stat() fields a parsed file is cached against."""

    mtime: float
    size: int
    created: float


@dataclass
class ParsedConversation:
    messages: List[Message]
    project: str
    skipped_lines: int = 0


@dataclass
class ConversationLoad:
    """One loaded conversation plus how it was obtained."""

    record: ConversationRecord
    skipped_lines: int = 0
    degraded: bool = False


@dataclass
class AnalysisResult:
    conversations: List[ConversationRecord] = field(default_factory=list)
    summary: Summary = field(default_factory=Summary)
    active_projects: List[ActiveProject] = field(default_factory=list)
    detailed_token_usage: TokenUsage = field(default_factory=TokenUsage)
    skipped_lines: int = 0
    skipped_files: int = 0
    degraded_files: int = 0
    active_process_count: int = 0


class ConversationAnalyzer:
    """
    Reads conversation logs under a root directory and turns them into
    ConversationRecords.

    Parsed files are cached in the DataCache under ``"<path>::parsed"`` and
    reused while the file's mtime and size are unchanged. The cache is an
    optimisation only: any cache failure is logged and treated as a miss.
    """

    def __init__(
        self,
        root_dir: Path,
        cache: Optional[DataCache] = None,
        parsed_data_ttl: float = 15.0,
        computation_ttl: float = 10.0,
    ):
        """
        Initialize the analyzer.

        Args:
            root_dir: Directory searched recursively for ``*.jsonl`` files
            cache: Shared DataCache (optional)
            parsed_data_ttl: TTL for parsed files
            computation_ttl: TTL for derived computations
        """
        self.root_dir = Path(root_dir)
        self.cache = cache
        self.parsed_data_ttl = parsed_data_ttl
        self.computation_ttl = computation_ttl
        self.logger = get_app_logger()

    # === Full load ===

    async def load_all(
        self,
        state_calculator: StateCalculator,
        process_detector: ProcessDetector,
        now: Optional[datetime] = None,
    ) -> AnalysisResult:
        """
        Load every conversation, match processes and classify state.

        Args:
            state_calculator: Classifier for conversation state and status
            process_detector: Source of running agent processes (queried once)
            now: Reference time

        Returns:
            AnalysisResult

        Raises:
            FileNotFoundError: If the root directory does not exist
        """
        if not self.root_dir.is_dir():
            raise FileNotFoundError(f"Conversation directory not found: {self.root_dir}")

        now = now or utc_now()
        result = AnalysisResult()
        records: List[ConversationRecord] = []

        for path in self.find_conversation_files():
            try:
                loaded = await self.load_conversation(path)
            except OSError as e:
                result.skipped_files += 1
                self.logger.warning(f"[ConversationAnalyzer] skipping unreadable file {path}: {e}")
                continue
            except (ValueError, TypeError) as e:
                result.skipped_files += 1
                self.logger.error(f"[ConversationAnalyzer] skipping invalid file {path}: {e}")
                continue

            records.append(loaded.record)
            result.skipped_lines += loaded.skipped_lines
            if loaded.degraded:
                result.degraded_files += 1

        processes = await process_detector.detect_running_agent_processes()
        records = self.classify(records, processes, state_calculator, process_detector, now=now)
        records.sort(key=lambda record: record.last_modified, reverse=True)

        result.conversations = records
        result.active_process_count = len(processes)
        result.active_projects = self.load_active_projects(now=now)
        result.detailed_token_usage = self.detailed_token_usage(records)
        result.summary = self.summarize(
            records,
            result.active_projects,
            skipped_lines=result.skipped_lines,
            skipped_files=result.skipped_files,
            degraded_files=result.degraded_files,
            active_process_count=result.active_process_count,
            now=now,
        )

        self.logger.info(
            f"[ConversationAnalyzer] loaded {len(records)} conversations "
            f"({result.skipped_files} skipped, {result.degraded_files} degraded, "
            f"{result.skipped_lines} malformed lines)"
        )
        return result

    def find_conversation_files(self) -> List[Path]:
        """All ``*.jsonl`` files below the root, sorted by path."""
        return sorted(path for path in self.root_dir.rglob("*.jsonl") if path.is_file())

    def classify(
        self,
        records: Sequence[ConversationRecord],
        processes: Sequence[ProcessInfo],
        state_calculator: StateCalculator,
        process_detector: ProcessDetector,
        now: Optional[datetime] = None,
    ) -> List[ConversationRecord]:
        """
        Attach this cycle's processes and recompute state and status.

        Returns:
            New records; the inputs are left untouched
        """
        now = now or utc_now()
        matches = process_detector.match_conversations(records, processes)

        classified = []
        for record in records:
            process = matches.get(record.id)
            classified.append(record.model_copy(update={
                "running_process": process,
                "conversation_state": state_calculator.determine_conversation_state(
                    record.messages, record.last_modified, process, now=now
                ),
                "status": state_calculator.determine_conversation_status(
                    record.messages, record.last_modified, process, now=now
                ),
            }))
        return classified

    # === Single file ===

    async def load_conversation(self, path: Path) -> ConversationLoad:
        """
        Load one conversation file through the cache.

        The returned record has no process or state attached yet.

        Raises:
            OSError: If the file cannot be read and no earlier parse is cached
        """
        path = Path(path)
        key = self.parsed_key(path)
        previous = self._cache_get_stale(key)

        try:
            stamp = self._stamp(path)
            cached = self._cache_get(key)
            if cached is not None and cached[0] == stamp:
                parsed = cached[1]
            else:
                parsed = await self._parse_file(path, stamp)
                self._cache_set(key, (stamp, parsed), ttl=self.parsed_data_ttl)
        except OSError as e:
            if previous is None:
                raise
            self.logger.warning(f"[ConversationAnalyzer] serving stale data for {path}: {e}")
            stamp, parsed = previous
            return ConversationLoad(self._build_record(path, stamp, parsed), parsed.skipped_lines, degraded=True)

        return ConversationLoad(self._build_record(path, stamp, parsed), parsed.skipped_lines)

    @staticmethod
    def parsed_key(path: Path) -> str:
        return f"{path}::parsed"

    async def _parse_file(self, path: Path, stamp: FileStamp) -> ParsedConversation:
        read = await JSONLParser(str(path)).read_all_lines()
        fallback_time = from_timestamp(stamp.mtime)
        rejected: List[Dict[str, Any]] = []
        messages = self.parse_entries(read.entries, default_timestamp=fallback_time, rejected=rejected)
        project = await self.extract_project_name(path, read.entries)

        skipped = read.skipped_lines + len(rejected)
        if skipped:
            self.logger.debug(f"[ConversationAnalyzer] {skipped} malformed lines in {path}")

        return ParsedConversation(messages=messages, project=project, skipped_lines=skipped)

    def _build_record(self, path: Path, stamp: FileStamp, parsed: ParsedConversation) -> ConversationRecord:
        token_usage = self.calculate_token_usage(parsed.messages)
        tokens = token_usage.total if token_usage.total > 0 else self.estimate_tokens(stamp.size)

        return ConversationRecord(
            id=path.stem,
            project=parsed.project,
            file_path=str(path),
            file_name=path.name,
            messages=parsed.messages,
            message_count=len(parsed.messages),
            file_size=stamp.size,
            created=from_timestamp(stamp.created),
            last_modified=from_timestamp(stamp.mtime),
            tokens=tokens,
            token_usage=token_usage,
            model_info=self.extract_model_info(parsed.messages),
            tool_usage=self.extract_tool_usage(parsed.messages),
        )

    @staticmethod
    def _stamp(path: Path) -> FileStamp:
        stat = path.stat()
        created = getattr(stat, "st_birthtime", stat.st_ctime)
        return FileStamp(mtime=stat.st_mtime, size=stat.st_size, created=created)

    # === Parsing ===

    def parse_entries(
        self,
        entries: Sequence[Dict[str, Any]],
        default_timestamp: Optional[datetime] = None,
        rejected: Optional[List[Dict[str, Any]]] = None,
    ) -> List[Message]:
        """
        Convert raw log entries to Messages.

        Only ``user``/``assistant`` entries with a ``message`` object are kept.
        A user entry whose content is a ``tool_result`` for a known
        ``tool_use`` id is attached to that assistant message's
        ``tool_results`` and not emitted on its own. An entry whose fields
        have the wrong types is dropped.

        Args:
            entries: Parsed JSONL objects in file order
            default_timestamp: Used for entries without a valid timestamp
            rejected: If given, dropped entries are appended to it

        Returns:
            Messages in file order
        """
        kept = []
        tool_use_owner: Dict[str, int] = {}

        for entry in entries:
            if entry.get("type") not in ("user", "assistant"):
                continue
            if not isinstance(entry.get("message"), dict):
                continue

            index = len(kept)
            kept.append(entry)
            if entry["type"] == "assistant":
                for block in _content_blocks(entry["message"].get("content")):
                    if block.get("type") == "tool_use" and isinstance(block.get("id"), str):
                        tool_use_owner[block["id"]] = index

        attached: Dict[int, List[Dict[str, Any]]] = {}
        emitted = []
        for index, entry in enumerate(kept):
            if entry["type"] == "user":
                result_block = next(
                    (b for b in _content_blocks(entry["message"].get("content")) if b.get("type") == "tool_result"),
                    None,
                )
                tool_use_id = result_block.get("tool_use_id") if result_block else None
                if isinstance(tool_use_id, str) and tool_use_id in tool_use_owner:
                    attached.setdefault(tool_use_owner[tool_use_id], []).append(result_block)
                    continue
            emitted.append(index)

        default_timestamp = default_timestamp or utc_now()
        messages = []
        for index in emitted:
            try:
                messages.append(self._convert_entry(kept[index], attached.get(index), default_timestamp))
            except (ValidationError, TypeError, ValueError) as e:
                if rejected is not None:
                    rejected.append(kept[index])
                self.logger.debug(f"[ConversationAnalyzer] dropping entry {kept[index].get('uuid')!r}: {e}")
        return messages

    @staticmethod
    def _convert_entry(
        entry: Dict[str, Any],
        tool_results: Optional[List[Dict[str, Any]]],
        default_timestamp: datetime,
    ) -> Message:
        message = entry["message"]
        content = message.get("content", "")
        if isinstance(content, list):
            content = [block for block in content if isinstance(block, dict)]
        elif not isinstance(content, str):
            content = ""

        usage = message.get("usage")
        return Message(
            role=message.get("role") or entry["type"],
            content=content,
            timestamp=parse_iso(entry.get("timestamp")) or default_timestamp,
            usage=usage if isinstance(usage, dict) else None,
            model=message.get("model"),
            id=message.get("id") or entry.get("uuid"),
            uuid=entry.get("uuid"),
            type=entry.get("type"),
            tool_results=tool_results,
            is_compact_summary=bool(entry.get("isCompactSummary", False)),
        )

    async def extract_project_name(self, path: Path, entries: Sequence[Dict[str, Any]]) -> str:
        """
        Resolve the project a conversation belongs to.

        Order: ``cwd`` in the first entries, the directory's ``settings.json``,
        the ``projects/<encoded-path>`` directory name, then ``Unknown``.
        """
        for entry in entries[:PROJECT_SCAN_ENTRIES]:
            cwd = entry.get("cwd")
            if not cwd and isinstance(entry.get("message"), dict):
                cwd = entry["message"].get("cwd")
            if isinstance(cwd, str) and cwd:
                return os.path.basename(cwd.rstrip("/")) or cwd

        from_settings = await self._project_from_settings(path.parent / "settings.json")
        if from_settings:
            return from_settings

        parts = path.parts
        if "projects" in parts:
            index = parts.index("projects")
            if index + 1 < len(parts) - 1:
                segments = [segment for segment in parts[index + 1].split("-") if segment]
                if segments:
                    return segments[-1]

        return UNKNOWN_PROJECT

    async def _project_from_settings(self, settings_path: Path) -> Optional[str]:
        if not settings_path.is_file():
            return None
        try:
            async with aiofiles.open(settings_path, mode="r", encoding="utf-8") as f:
                data = json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning(f"[ConversationAnalyzer] could not read {settings_path}: {e}")
            return None

        if not isinstance(data, dict):
            return None
        if data.get("projectName"):
            return str(data["projectName"])
        if data.get("projectPath"):
            return os.path.basename(str(data["projectPath"]).rstrip("/"))
        return None

    # === Aggregations ===

    @staticmethod
    def calculate_token_usage(messages: Sequence[Message]) -> TokenUsage:
        input_tokens = output_tokens = cache_creation = cache_read = with_usage = 0
        for message in messages:
            if not message.usage:
                continue
            input_tokens += _token_count(message.usage, "input_tokens")
            output_tokens += _token_count(message.usage, "output_tokens")
            cache_creation += _token_count(message.usage, "cache_creation_input_tokens")
            cache_read += _token_count(message.usage, "cache_read_input_tokens")
            with_usage += 1

        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_creation_tokens=cache_creation,
            cache_read_tokens=cache_read,
            total=input_tokens + output_tokens,
            messages_with_usage=with_usage,
            total_messages=len(messages),
        )

    @staticmethod
    def estimate_tokens(size: int) -> int:
        """Rough fallback: four characters per token."""
        return math.ceil(size / 4)

    @staticmethod
    def extract_model_info(messages: Sequence[Message]) -> ModelInfo:
        models: List[str] = []
        tiers: List[str] = []
        last_model = None
        last_tier = None

        for message in messages:
            if message.model:
                if message.model not in models:
                    models.append(message.model)
                last_model = message.model
            tier = (message.usage or {}).get("service_tier")
            if tier and isinstance(tier, str):
                if tier not in tiers:
                    tiers.append(tier)
                last_tier = tier

        return ModelInfo(
            models=models,
            primary_model=last_model or "Unknown",
            service_tiers=tiers,
            current_service_tier=last_tier or "Unknown",
            has_multiple_models=len(models) > 1,
        )

    @staticmethod
    def extract_tool_usage(messages: Sequence[Message]) -> ToolUsage:
        stats: Dict[str, int] = {}
        for message in messages:
            if message.role != "assistant":
                continue
            if isinstance(message.content, str):
                names = [match.strip() for match in _TOOL_MARKER.findall(message.content)]
            else:
                names = [
                    block["name"] if isinstance(block.get("name"), str) and block["name"] else "Unknown Tool"
                    for block in message.content_blocks()
                    if block.get("type") == "tool_use"
                ]
            for name in names:
                stats[name] = stats.get(name, 0) + 1

        return ToolUsage(tool_stats=stats, total_tool_calls=sum(stats.values()), unique_tools=len(stats))

    @staticmethod
    def detailed_token_usage(records: Sequence[ConversationRecord]) -> TokenUsage:
        totals = TokenUsage()
        for record in records:
            usage = record.token_usage
            totals = totals.model_copy(update={
                "input_tokens": totals.input_tokens + usage.input_tokens,
                "output_tokens": totals.output_tokens + usage.output_tokens,
                "cache_creation_tokens": totals.cache_creation_tokens + usage.cache_creation_tokens,
                "cache_read_tokens": totals.cache_read_tokens + usage.cache_read_tokens,
                "messages_with_usage": totals.messages_with_usage + usage.messages_with_usage,
                "total_messages": totals.total_messages + usage.total_messages,
            })
        return totals.model_copy(update={"total": totals.input_tokens + totals.output_tokens})

    def summarize(
        self,
        records: Sequence[ConversationRecord],
        active_projects: Sequence[ActiveProject],
        skipped_lines: int = 0,
        skipped_files: int = 0,
        degraded_files: int = 0,
        active_process_count: int = 0,
        now: Optional[datetime] = None,
    ) -> Summary:
        total_tokens = sum(record.tokens for record in records)
        total = len(records)

        return Summary(
            total_conversations=total,
            total_tokens=total_tokens,
            active_conversations=sum(1 for r in records if r.status == ConversationStatus.ACTIVE),
            active_projects=sum(1 for p in active_projects if p.status == "active"),
            avg_tokens_per_conversation=round(total_tokens / total) if total else 0,
            total_file_size=format_bytes(sum(record.file_size for record in records)),
            last_activity=max((record.last_modified for record in records), default=None),
            sessions=self.usage_sessions(records, now=now),
            skipped_lines=skipped_lines,
            skipped_files=skipped_files,
            degraded_files=degraded_files,
            active_process_count=active_process_count,
        )

    def usage_sessions(
        self,
        records: Sequence[ConversationRecord],
        now: Optional[datetime] = None,
    ) -> UsageSessions:
        """
        Count five-hour usage windows opened by user messages.

        A user message outside the current window opens a new one; one inside
        extends it to five hours past that message. Cached until one of the
        source files changes or the computation TTL passes.
        """
        fingerprint = frozenset((r.file_path, r.last_modified) for r in records)
        cached = self._cache_get(SESSIONS_CACHE_KEY)
        if cached is not None and cached[0] == fingerprint:
            return cached[1]

        sessions = compute_usage_sessions(records, now=now)
        self._cache_set(
            SESSIONS_CACHE_KEY,
            (fingerprint, sessions),
            ttl=self.computation_ttl,
            dependencies=[r.file_path for r in records],
        )
        return sessions

    def load_active_projects(self, now: Optional[datetime] = None) -> List[ActiveProject]:
        """Top-level, non-hidden directories of the root with an activity status from their mtime."""
        now = now or utc_now()
        projects = []
        try:
            with os.scandir(self.root_dir) as entries:
                for entry in entries:
                    if entry.name.startswith(".") or not entry.is_dir():
                        continue
                    last_activity = from_timestamp(entry.stat().st_mtime)
                    projects.append(ActiveProject(
                        name=entry.name,
                        path=entry.path,
                        last_activity=last_activity,
                        status=project_status(last_activity, now),
                    ))
        except OSError as e:
            self.logger.error(f"[ConversationAnalyzer] error loading projects from {self.root_dir}: {e}")
            return []

        projects.sort(key=lambda project: project.last_activity, reverse=True)
        return projects

    # === Cache access ===

    def _cache_get(self, key: str) -> Any:
        if self.cache is None:
            return None
        try:
            return self.cache.get(key)
        except Exception as e:
            self.logger.warning(f"[ConversationAnalyzer] cache read failed for {key}: {e}")
            return None

    def _cache_get_stale(self, key: str) -> Any:
        if self.cache is None:
            return None
        try:
            return self.cache.get_stale(key)
        except Exception as e:
            self.logger.warning(f"[ConversationAnalyzer] stale cache read failed for {key}: {e}")
            return None

    def _cache_set(self, key: str, value: Any, ttl: float, dependencies: Sequence[str] = ()) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set(key, value, ttl=ttl, dependencies=dependencies)
        except Exception as e:
            self.logger.warning(f"[ConversationAnalyzer] cache write failed for {key}: {e}")


def _token_count(usage: Dict[str, Any], key: str) -> int:
    """Non-negative integer counters only; anything else counts as zero."""
    value = usage.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return 0
    return value


def _content_blocks(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, list):
        return [block for block in content if isinstance(block, dict)]
    if isinstance(content, dict):
        return [content]
    return []


def compute_usage_sessions(
    records: Sequence[ConversationRecord],
    now: Optional[datetime] = None,
) -> UsageSessions:
    starts = sorted(
        message.timestamp
        for record in records
        for message in record.messages
        if message.role == "user"
    )
    if not starts:
        return UsageSessions()

    session_starts = []
    window_end = None
    for timestamp in starts:
        if window_end is None or timestamp > window_end:
            session_starts.append(timestamp)
        window_end = max(window_end or timestamp, timestamp + SESSION_WINDOW)

    now = now or utc_now()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    week_start = now - timedelta(days=7)

    return UsageSessions(
        total=len(session_starts),
        current_month=sum(1 for start in session_starts if start >= month_start),
        this_week=sum(1 for start in session_starts if start >= week_start),
    )


def project_status(last_activity: datetime, now: datetime) -> str:
    hours = (now - last_activity).total_seconds() / 3600
    if hours < 1:
        return "active"
    if hours < 24:
        return "recent"
    return "inactive"


def format_bytes(size: int) -> str:
    """Human readable size: ``0 Bytes``, ``1.5 KB``, ``12.34 MB``."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"
