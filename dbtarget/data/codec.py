"""
Row Codec - maps log/metric records to stored rows and back.

The Level and Type columns are integer coded through the fixed tables below.
They are part of the persisted format: changing a code requires a migration
step, otherwise rows already written stop decoding to the same value.
"""

import json
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Type, TypeVar, Union

from dbtarget.data.models import LogLevel, LogRecord, MetricRecord, MetricType
from dbtarget.errors import InvalidValue, TypeMismatch, UnknownLevelCode, UnknownMetricKind

T = TypeVar("T")

LOG_LINES_TABLE = "LogLines"
METRICS_TABLE = "Metrics"

LEVEL_CODES: Dict[LogLevel, int] = {
    LogLevel.VERBOSE: 1,
    LogLevel.DEBUG: 2,
    LogLevel.INFO: 3,
    LogLevel.WARN: 4,
    LogLevel.ERROR: 5,
    LogLevel.FATAL: 6,
}

METRIC_TYPE_CODES: Dict[MetricType, int] = {
    MetricType.GAUGE: 1,
    MetricType.COUNTER: 2,
    MetricType.TIMER: 3,
    MetricType.HISTOGRAM: 4,
    MetricType.METER: 5,
}

_LEVELS_BY_CODE = {code: level for level, code in LEVEL_CODES.items()}
_METRIC_TYPES_BY_CODE = {code: kind for kind, code in METRIC_TYPE_CODES.items()}


@dataclass(frozen=True)
class StoredRow:
    """Column values for one insert into `table`, keyed by column name."""

    table: str
    values: Dict[str, Any]

    def insert_sql(self) -> str:
        columns = ", ".join(self.values)
        placeholders = ", ".join("?" for _ in self.values)
        return f"INSERT INTO {self.table} ({columns}) VALUES ({placeholders})"

    def params(self) -> tuple:
        return tuple(self.values.values())


def level_code(level: LogLevel) -> int:
    return LEVEL_CODES[LogLevel(level)]


def level_from_code(code: int) -> LogLevel:
    try:
        return _LEVELS_BY_CODE[code]
    except KeyError:
        raise UnknownLevelCode(code) from None


def metric_type_code(kind: Union[MetricType, str]) -> int:
    """Integer code for a metric kind; accepts the enum or its name/value."""
    if not isinstance(kind, MetricType):
        try:
            kind = MetricType(str(kind).lower())
        except ValueError:
            raise UnknownMetricKind(kind) from None
    try:
        return METRIC_TYPE_CODES[kind]
    except KeyError:
        raise UnknownMetricKind(kind) from None


def metric_type_from_code(code: int) -> MetricType:
    try:
        return _METRIC_TYPES_BY_CODE[code]
    except KeyError:
        raise UnknownMetricKind(code) from None


def encode_log(record: LogRecord) -> StoredRow:
    return StoredRow(
        table=LOG_LINES_TABLE,
        values={
            "Host": record.host,
            "Path": record.path,
            "Message": record.message,
            "Level": level_code(record.level),
            "Tags": json.dumps(record.tags, sort_keys=True),
            "Exception": record.exception,
            "Timestamp": record.timestamp.isoformat(),
        },
    )


def encode_metric(record: MetricRecord) -> StoredRow:
    value = float(record.value)
    if not math.isfinite(value):
        # SQLite stores NaN as NULL, which Value REAL NOT NULL rejects at write time
        raise InvalidValue("Value", record.value)
    return StoredRow(
        table=METRICS_TABLE,
        values={
            "Host": record.host,
            "Path": record.path,
            "Level": level_code(record.level),
            "Type": metric_type_code(record.kind),
            "Value": value,
            "Timestamp": record.timestamp.isoformat(),
        },
    )


def decode(row: Mapping[str, Any], column: str, requested: Type[T]) -> T:
    """
    Read one column of a stored row as `requested`.

    Supported targets: str, int, float, Decimal, datetime, dict (JSON text),
    LogLevel and MetricType (from their integer codes). Anything the stored
    value cannot represent raises TypeMismatch.
    """
    raw = row[column]
    actual = type(raw)

    if raw is None:
        raise TypeMismatch(column, requested, actual)

    if requested is LogLevel:
        if actual is not int or raw not in _LEVELS_BY_CODE:
            raise TypeMismatch(column, requested, actual)
        return _LEVELS_BY_CODE[raw]

    if requested is MetricType:
        if actual is not int or raw not in _METRIC_TYPES_BY_CODE:
            raise TypeMismatch(column, requested, actual)
        return _METRIC_TYPES_BY_CODE[raw]

    if requested is Decimal:
        if actual not in (int, float):
            raise TypeMismatch(column, requested, actual)
        # repr() keeps the shortest exact decimal form of the stored double
        return Decimal(repr(raw))

    if requested is float:
        if actual not in (int, float):
            raise TypeMismatch(column, requested, actual)
        return float(raw)

    if requested is int:
        if actual is not int:
            raise TypeMismatch(column, requested, actual)
        return raw

    if requested is datetime:
        if actual is not str:
            raise TypeMismatch(column, requested, actual)
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            raise TypeMismatch(column, requested, actual) from None

    if requested is dict:
        if actual is not str:
            raise TypeMismatch(column, requested, actual)
        try:
            value = json.loads(raw)
        except ValueError:
            raise TypeMismatch(column, requested, actual) from None
        if not isinstance(value, dict):
            raise TypeMismatch(column, requested, type(value))
        return value

    if not isinstance(raw, requested):
        raise TypeMismatch(column, requested, actual)
    return raw


def decode_log(row: Mapping[str, Any]) -> LogRecord:
    return LogRecord(
        host=decode(row, "Host", str),
        path=decode(row, "Path", str) if row["Path"] is not None else "",
        message=decode(row, "Message", str),
        level=decode(row, "Level", LogLevel),
        tags=decode(row, "Tags", dict) if row["Tags"] is not None else {},
        exception=row["Exception"],
        timestamp=decode(row, "Timestamp", datetime),
    )


def decode_metric(row: Mapping[str, Any]) -> MetricRecord:
    return MetricRecord(
        host=decode(row, "Host", str),
        path=decode(row, "Path", str),
        level=decode(row, "Level", LogLevel),
        kind=decode(row, "Type", MetricType),
        value=float(decode(row, "Value", Decimal)),
        timestamp=decode(row, "Timestamp", datetime),
    )
