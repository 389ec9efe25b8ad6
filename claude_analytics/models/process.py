"""Process models."""

from datetime import datetime
from typing import Optional
from pydantic import ConfigDict, Field

from .base import CamelModel


UNKNOWN_WORKING_DIR = "unknown"


class ProcessInfo(CamelModel):
    """A running agent CLI process seen in one detection cycle."""

    model_config = ConfigDict(frozen=True)

    pid: int = Field(description="Process id")
    command: str = Field(description="Full command line")
    working_dir: str = Field(default=UNKNOWN_WORKING_DIR, description="Working directory, best effort")
    start_time: datetime = Field(description="Start time (detection time when unknown)")
    user: Optional[str] = Field(None, description="Owning user")
    cycle: int = Field(default=0, description="Detection cycle that produced this entry")

    @property
    def has_known_working_dir(self) -> bool:
        return self.working_dir != UNKNOWN_WORKING_DIR
