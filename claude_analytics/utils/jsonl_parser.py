"""JSONL file parser utility."""

import json
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
import aiofiles

from .logger import get_app_logger


@dataclass
class JSONLReadResult:
    """Entries read from a JSONL file plus the number of lines that failed to parse."""

    entries: List[Dict[str, Any]] = field(default_factory=list)
    skipped_lines: int = 0


class JSONLParser:
    """Parser for JSONL (JSON Lines) files."""

    def __init__(self, file_path: str):
        """
        Initialize the JSONL parser.

        Args:
            file_path: Path to the JSONL file
        """
        self.file_path = str(file_path)
        self.logger = get_app_logger()

    async def read_all_lines(self) -> JSONLReadResult:
        """
        Read all lines from the file.

        Unparseable lines are skipped and counted. I/O errors propagate so the
        caller can decide whether to skip the file for this cycle.

        Returns:
            JSONLReadResult with parsed objects and the skipped line count
        """
        result = JSONLReadResult()

        async with aiofiles.open(self.file_path, mode='r', encoding='utf-8', errors='replace') as f:
            async for line in f:
                self._parse_into(line, result)

        return result

    def _parse_into(self, line: str, result: JSONLReadResult) -> None:
        line = line.strip()
        if not line:
            return

        data = parse_jsonl_line(line)
        if not isinstance(data, dict):
            result.skipped_lines += 1
            self.logger.debug(f"Skipping malformed JSONL line in {self.file_path}")
            return

        result.entries.append(data)


def parse_jsonl_line(line: str) -> Optional[Any]:
    """
    Parse a single JSONL line.

    Args:
        line: A single line of JSON

    Returns:
        Parsed JSON value, or None if parsing fails
    """
    try:
        line = line.strip()
        if not line:
            return None

        return json.loads(line)
    except json.JSONDecodeError:
        return None
