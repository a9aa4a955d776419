import json
import socket
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from dbtarget.data.codec import (
    LEVEL_CODES,
    LOG_LINES_TABLE,
    METRIC_TYPE_CODES,
    METRICS_TABLE,
    decode,
    decode_log,
    decode_metric,
    encode_log,
    encode_metric,
    level_from_code,
    metric_type_code,
    metric_type_from_code,
)
from dbtarget.data.models import LogLevel, LogRecord, MetricRecord, MetricType
from dbtarget.errors import ErrorCode, InvalidValue, TypeMismatch, UnknownLevelCode, UnknownMetricKind


def test_counter_metric_round_trips_type_and_exact_value() -> None:
    row = encode_metric(MetricRecord.counter("app.signin", 3.0))

    assert row.table == METRICS_TABLE
    assert decode(row.values, "Type", MetricType) is MetricType.COUNTER
    assert row.values["Type"] == METRIC_TYPE_CODES[MetricType.COUNTER]
    assert decode(row.values, "Value", Decimal) == Decimal("3.0")
    assert decode(row.values, "Path", str) == "app.signin"


def test_code_tables_are_fixed() -> None:
    assert [LEVEL_CODES[level] for level in LogLevel] == [1, 2, 3, 4, 5, 6]
    assert METRIC_TYPE_CODES == {
        MetricType.GAUGE: 1,
        MetricType.COUNTER: 2,
        MetricType.TIMER: 3,
        MetricType.HISTOGRAM: 4,
        MetricType.METER: 5,
    }
    for level, code in LEVEL_CODES.items():
        assert level_from_code(code) is level
    for kind, code in METRIC_TYPE_CODES.items():
        assert metric_type_from_code(code) is kind


def test_log_row_defaults_to_local_host_and_info() -> None:
    row = encode_log(LogRecord(message="hello world"))

    assert row.table == LOG_LINES_TABLE
    assert row.values["Host"] == socket.gethostname()
    assert row.values["Message"] == "hello world"
    assert row.values["Level"] == LEVEL_CODES[LogLevel.INFO]
    assert row.values["Tags"] == "{}"
    assert row.insert_sql().startswith("INSERT INTO LogLines (Host, Path, Message")
    assert len(row.params()) == len(row.values)


def test_tags_are_stored_as_sorted_json() -> None:
    row = encode_log(LogRecord(message="tagged", tags={"zone": "eu", "app": "web"}))
    assert row.values["Tags"] == json.dumps({"app": "web", "zone": "eu"})
    assert decode(row.values, "Tags", dict) == {"app": "web", "zone": "eu"}


def test_metric_kind_accepts_names() -> None:
    assert metric_type_code("gauge") == METRIC_TYPE_CODES[MetricType.GAUGE]
    assert metric_type_code("TIMER") == METRIC_TYPE_CODES[MetricType.TIMER]

    row = encode_metric(MetricRecord(path="queue.depth", value=7, kind="gauge"))
    assert row.values["Type"] == 1


def test_unknown_metric_kind_is_rejected() -> None:
    with pytest.raises(UnknownMetricKind) as excinfo:
        encode_metric(MetricRecord(path="x.y", value=1.0, kind="sparkline"))

    assert excinfo.value.code is ErrorCode.CODEC_UNKNOWN_METRIC_KIND
    assert excinfo.value.kind == "sparkline"

    with pytest.raises(UnknownMetricKind):
        metric_type_from_code(99)


def test_type_mismatch_names_column_and_types() -> None:
    row = {"Host": "web01", "Level": 3, "Value": 3.0}

    with pytest.raises(TypeMismatch) as excinfo:
        decode(row, "Host", int)

    err = excinfo.value
    assert err.column == "Host"
    assert err.requested is int
    assert err.actual is str
    assert "Host" in str(err) and "int" in str(err) and "str" in str(err)

    with pytest.raises(TypeMismatch):
        decode(row, "Value", datetime)
    with pytest.raises(TypeMismatch):
        decode({"Level": 42}, "Level", LogLevel)
    with pytest.raises(TypeMismatch):
        decode({"Value": None}, "Value", Decimal)


def test_full_records_decode_from_rows() -> None:
    ts = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    log = LogRecord(
        message="disk almost full",
        level=LogLevel.WARN,
        host="web02",
        path="app.storage",
        tags={"disk": "sda1"},
        timestamp=ts,
    )
    assert decode_log(encode_log(log).values) == log

    metric = MetricRecord.timer("web02.app.render", 12.5, host="web02", timestamp=ts)
    decoded = decode_metric(encode_metric(metric).values)
    assert decoded.kind is MetricType.TIMER
    assert decoded.value == 12.5
    assert decoded.timestamp == ts


def test_levels_are_ordered() -> None:
    assert LogLevel.VERBOSE < LogLevel.DEBUG < LogLevel.INFO < LogLevel.WARN
    assert LogLevel.ERROR >= LogLevel.WARN
    assert max([LogLevel.INFO, LogLevel.FATAL, LogLevel.DEBUG]) is LogLevel.FATAL


def test_unknown_level_code_is_a_codec_error() -> None:
    with pytest.raises(UnknownLevelCode) as excinfo:
        level_from_code(42)
    assert excinfo.value.code is ErrorCode.CODEC_UNKNOWN_LEVEL


@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_metric_values_rejected_before_the_writer(value) -> None:
    with pytest.raises(ValidationError):
        MetricRecord.gauge("queue.depth", value)

    # Records built without validation still stop at the codec
    unchecked = MetricRecord.model_construct(path="queue.depth", value=value, kind=MetricType.GAUGE)
    with pytest.raises(InvalidValue) as excinfo:
        encode_metric(unchecked)
    assert excinfo.value.column == "Value"
