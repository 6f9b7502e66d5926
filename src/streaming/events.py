"""
Lifecycle events posted by a supervisor to its owner.

The supervisor puts these on an ``asyncio.Queue`` handed to it by the owning
component (broadcast server or segment controller), which consumes them in
order from a single task.
"""

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Started:
    pid: int


@dataclass(frozen=True)
class Data:
    chunk: bytes


@dataclass(frozen=True)
class VideoSize:
    width: int
    height: int


@dataclass(frozen=True)
class Exited:
    returncode: Optional[int]
    signal: Optional[int] = None
    error: Optional[str] = None

    @property
    def abnormal(self) -> bool:
        return self.returncode != 0


@dataclass(frozen=True)
class Restarting:
    attempt: int
    delay: float


@dataclass(frozen=True)
class Failed:
    failures: int


SupervisorEvent = Union[Started, Data, VideoSize, Exited, Restarting, Failed]
