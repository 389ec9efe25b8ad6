"""Utilities package."""

from .logger import get_app_logger, setup_logger, init_app_logger
from .jsonl_parser import JSONLParser, JSONLReadResult, parse_jsonl_line
from .debouncer import Debouncer

__all__ = [
    "get_app_logger",
    "setup_logger",
    "init_app_logger",
    "JSONLParser",
    "JSONLReadResult",
    "parse_jsonl_line",
    "Debouncer",
]
