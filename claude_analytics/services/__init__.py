"""Services package."""

from .data_cache import DataCache, CacheEntry
from .process_detector import (
    ProcessDetector,
    ProcessLister,
    PsProcessLister,
    PsutilProcessLister,
    create_process_lister,
    parse_ps_output,
    process_matches_conversation,
)
from .state_calculator import StateCalculator
from .conversation_analyzer import ConversationAnalyzer, AnalysisResult, ConversationLoad
from .conversation_store import ConversationStore, StoreSnapshot
from .file_watcher import FileWatcher
from .performance_monitor import PerformanceMonitor
from .dashboard import DashboardService

__all__ = [
    "DataCache",
    "CacheEntry",
    "ProcessDetector",
    "ProcessLister",
    "PsProcessLister",
    "PsutilProcessLister",
    "create_process_lister",
    "parse_ps_output",
    "process_matches_conversation",
    "StateCalculator",
    "ConversationAnalyzer",
    "AnalysisResult",
    "ConversationLoad",
    "ConversationStore",
    "StoreSnapshot",
    "FileWatcher",
    "PerformanceMonitor",
    "DashboardService",
]
