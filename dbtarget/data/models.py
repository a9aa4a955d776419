"""Producer-facing records and the closed enumerations stored with them."""

from __future__ import annotations

import socket
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class LogLevel(str, Enum):
    """Ordered severity levels, lowest first."""

    VERBOSE = "verbose"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, LogLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, LogLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, LogLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, LogLevel):
            return NotImplemented
        return self.rank >= other.rank


_LEVEL_ORDER = list(LogLevel)


class MetricType(str, Enum):
    GAUGE = "gauge"
    COUNTER = "counter"
    TIMER = "timer"
    HISTOGRAM = "histogram"
    METER = "meter"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LogRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    level: LogLevel = LogLevel.INFO
    timestamp: datetime = Field(default_factory=_utc_now)
    host: str = Field(default_factory=socket.gethostname)
    path: str = Field(default="", description="Name of the emitting logger")
    tags: Dict[str, str] = Field(default_factory=dict)
    exception: Optional[str] = Field(default=None, description="Rendered exception text")


class MetricRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str = Field(description="Dotted hierarchical metric name, e.g. web01.app.signin")
    value: float = Field(allow_inf_nan=False)
    # Plain strings are accepted and resolved by the row codec
    kind: Union[MetricType, str] = MetricType.COUNTER
    level: LogLevel = LogLevel.INFO
    timestamp: datetime = Field(default_factory=_utc_now)
    host: str = Field(default_factory=socket.gethostname)

    @classmethod
    def counter(cls, path: str, value: float = 1.0, **kwargs) -> "MetricRecord":
        return cls(path=path, value=value, kind=MetricType.COUNTER, **kwargs)

    @classmethod
    def gauge(cls, path: str, value: float, **kwargs) -> "MetricRecord":
        return cls(path=path, value=value, kind=MetricType.GAUGE, **kwargs)

    @classmethod
    def timer(cls, path: str, value: float, **kwargs) -> "MetricRecord":
        return cls(path=path, value=value, kind=MetricType.TIMER, **kwargs)
