"""Detection of running agent CLI processes and matching them to conversations."""

import asyncio
import os
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import psutil

from ..models import ProcessInfo, ConversationRecord, UNKNOWN_WORKING_DIR
from ..utils.logger import get_app_logger
from ..utils.timefmt import from_timestamp, utc_now


_CWD_PATTERN = re.compile(r"--cwd(?:=|\s+)(\S+)")


class ProcessLister(ABC):
    """Source of candidate agent processes for one detection cycle."""

    @abstractmethod
    async def list_candidate_processes(self) -> List[ProcessInfo]:
        """
        List running agent CLI processes.

        Implementations must not raise; failures yield an empty list.
        """
        pass


class PsProcessLister(ProcessLister):
    """Lists processes by running ``ps aux``."""

    def __init__(
        self,
        command_name: str = "claude",
        exclusions: Sequence[str] = (),
        timeout: float = 5.0,
    ):
        """
        Initialize the lister.

        Args:
            command_name: Executable name of the agent CLI
            exclusions: Substrings that disqualify a ``ps`` row
            timeout: Seconds before the ``ps`` call is killed
        """
        self.command_name = command_name
        self.exclusions = list(exclusions)
        self.timeout = timeout
        self.cycle = 0
        self.logger = get_app_logger()

    async def list_candidate_processes(self) -> List[ProcessInfo]:
        self.cycle += 1
        output = await self._run_ps()
        if output is None:
            return []

        return parse_ps_output(
            output,
            command_name=self.command_name,
            exclusions=self.exclusions,
            own_pid=os.getpid(),
            cycle=self.cycle,
        )

    async def _run_ps(self) -> Optional[str]:
        try:
            process = await asyncio.create_subprocess_exec(
                "ps", "aux",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            self.logger.warning(f"[ProcessDetector] cannot run ps: {e}")
            return None

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"[ProcessDetector] ps timed out after {self.timeout}s")
            process.kill()
            await process.wait()
            return None

        if process.returncode != 0:
            self.logger.warning(
                f"[ProcessDetector] ps exited with {process.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()}"
            )
            return None

        return stdout.decode("utf-8", errors="replace")


class PsutilProcessLister(ProcessLister):
    """
    Lists processes through psutil.

    Unlike ``ps aux`` this can read each process's real working directory,
    so fewer processes end up with an unknown cwd.
    """

    def __init__(self, command_name: str = "claude", exclusions: Sequence[str] = ()):
        self.command_name = command_name
        self.exclusions = list(exclusions)
        self.cycle = 0
        self.logger = get_app_logger()

    async def list_candidate_processes(self) -> List[ProcessInfo]:
        self.cycle += 1
        try:
            return await asyncio.to_thread(self._scan, self.cycle)
        except Exception as e:
            self.logger.error(f"[ProcessDetector] psutil scan failed: {e}")
            return []

    def _scan(self, cycle: int) -> List[ProcessInfo]:
        own_pid = os.getpid()
        processes = []
        for proc in psutil.process_iter(["pid", "cmdline", "create_time", "username"]):
            try:
                cmdline = proc.info["cmdline"]
                if not cmdline or proc.info["pid"] == own_pid:
                    continue

                command = " ".join(cmdline)
                if os.path.basename(cmdline[0]) != self.command_name:
                    continue
                if any(exclusion in command for exclusion in self.exclusions):
                    continue

                match = _CWD_PATTERN.search(command)
                working_dir = match.group(1) if match else (_process_cwd(proc) or UNKNOWN_WORKING_DIR)
                processes.append(ProcessInfo(
                    pid=proc.info["pid"],
                    command=command,
                    working_dir=working_dir,
                    start_time=from_timestamp(proc.info["create_time"]),
                    user=proc.info.get("username"),
                    cycle=cycle,
                ))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        return processes


def _process_cwd(proc: "psutil.Process") -> Optional[str]:
    try:
        return proc.cwd()
    except (psutil.AccessDenied, psutil.NoSuchProcess, psutil.ZombieProcess):
        return None


def create_process_lister(
    kind: str,
    command_name: str,
    exclusions: Sequence[str],
    timeout: float,
) -> ProcessLister:
    """Build the lister named by the ``process_lister`` setting (``ps`` or ``psutil``)."""
    if kind == "psutil":
        return PsutilProcessLister(command_name=command_name, exclusions=exclusions)
    if kind == "ps":
        return PsProcessLister(command_name=command_name, exclusions=exclusions, timeout=timeout)
    raise ValueError(f"Unknown process lister: {kind}")


def parse_ps_output(
    text: str,
    command_name: str = "claude",
    exclusions: Sequence[str] = (),
    own_pid: Optional[int] = None,
    cycle: int = 0,
    now: Optional[datetime] = None,
) -> List[ProcessInfo]:
    """
    Parse ``ps aux`` output into agent processes.

    A row is kept when the basename of its executable equals ``command_name``,
    it contains none of the ``exclusions`` and it is not our own process.

    Args:
        text: Raw ``ps aux`` output, header included
        command_name: Executable name of the agent CLI
        exclusions: Substrings that disqualify a row
        own_pid: Pid of the current process
        cycle: Detection cycle number stamped on each entry
        now: Detection time used as ``start_time``

    Returns:
        List of ProcessInfo in ``ps`` order
    """
    now = now or utc_now()
    processes = []

    for line in text.splitlines():
        columns = line.split(None, 10)
        if len(columns) < 11 or not columns[1].isdigit():
            continue

        user, pid_text, command = columns[0], columns[1], columns[10].strip()
        pid = int(pid_text)
        if own_pid is not None and pid == own_pid:
            continue

        if any(exclusion in command for exclusion in exclusions):
            continue

        executable = command.split()[0] if command else ""
        if os.path.basename(executable) != command_name:
            continue

        match = _CWD_PATTERN.search(command)
        processes.append(ProcessInfo(
            pid=pid,
            command=command,
            working_dir=match.group(1) if match else UNKNOWN_WORKING_DIR,
            start_time=now,
            user=user,
            cycle=cycle,
        ))

    return processes


def process_matches_conversation(process: ProcessInfo, conversation: ConversationRecord) -> bool:
    """A process matches when the conversation's project name appears in its cwd or command line."""
    project = conversation.project
    if not project:
        return False
    return project in process.working_dir or project in process.command


class ProcessDetector:
    """
    Cached process detection plus the process-to-conversation matching policy.

    The process list is cached globally for ``cache_ttl`` seconds; every caller
    inside the window receives the same list object.
    """

    def __init__(
        self,
        lister: ProcessLister,
        cache_ttl: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.lister = lister
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._cached: Optional[List[ProcessInfo]] = None
        self._cached_at = 0.0
        self.detection_count = 0
        self.logger = get_app_logger()

    async def detect_running_agent_processes(self) -> List[ProcessInfo]:
        """
        Return the current agent processes, served from cache inside the TTL.

        Returns:
            List of ProcessInfo (empty when detection fails)
        """
        now = self._clock()
        if self._cached is not None and now - self._cached_at < self.cache_ttl:
            return self._cached

        try:
            processes = await self.lister.list_candidate_processes()
        except Exception as e:
            self.logger.error(f"[ProcessDetector] process listing failed: {e}")
            processes = []

        self.detection_count += 1
        self._cached = processes
        self._cached_at = self._clock()
        self.logger.debug(f"[ProcessDetector] detected {len(processes)} agent processes")
        return processes

    def clear_cache(self) -> None:
        self._cached = None
        self._cached_at = 0.0

    def get_cached_processes(self) -> List[ProcessInfo]:
        """Last detected list without triggering detection."""
        return self._cached or []

    async def has_active_processes(self) -> bool:
        return bool(await self.detect_running_agent_processes())

    def get_process_stats(self) -> Dict[str, Any]:
        """Counts by working-dir knowledge for the last detected list."""
        processes = self.get_cached_processes()
        known = sum(1 for process in processes if process.has_known_working_dir)
        return {
            "total": len(processes),
            "withKnownWorkingDir": known,
            "withUnknownWorkingDir": len(processes) - known,
            "detections": self.detection_count,
            "processes": [process.model_dump(mode="json", by_alias=True) for process in processes],
        }

    def match_process_to_conversation(
        self,
        process: ProcessInfo,
        conversations: Sequence[ConversationRecord],
    ) -> Optional[ConversationRecord]:
        """
        Find the conversation a process belongs to.

        Direct matches win. A process whose working directory is unknown falls
        back to the most recently modified conversation.
        """
        for conversation in conversations:
            if process_matches_conversation(process, conversation):
                return conversation

        if not process.has_known_working_dir and conversations:
            return max(conversations, key=lambda c: c.last_modified)

        return None

    def match_conversations(
        self,
        conversations: Sequence[ConversationRecord],
        processes: Sequence[ProcessInfo],
    ) -> Dict[str, ProcessInfo]:
        """
        Assign processes to conversations for one cycle.

        Each conversation gets its first directly matching process. Then the
        first process with an unknown working directory is assigned to the
        most recently modified conversation left without a match. Further
        unknown processes are not assigned.

        Returns:
            Mapping of conversation id to matched ProcessInfo
        """
        matches: Dict[str, ProcessInfo] = {}
        for conversation in conversations:
            for process in processes:
                if process_matches_conversation(process, conversation):
                    matches[conversation.id] = process
                    break

        unknown = [process for process in processes if not process.has_known_working_dir]
        unmatched = [c for c in conversations if c.id not in matches]
        if unknown and unmatched:
            target = max(unmatched, key=lambda c: c.last_modified)
            matches[target.id] = unknown[0]
            self.logger.debug(
                f"[ProcessDetector] fallback: pid {unknown[0].pid} -> conversation {target.id}"
            )
            for process in unknown[1:]:
                self.logger.debug(
                    f"[ProcessDetector] unassigned process with unknown cwd: pid {process.pid}"
                )

        return matches
