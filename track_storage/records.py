"""Persistence records for stored segments and compact polyline export."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
import json
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from polyline import decode as polyline_decode
from polyline import encode as polyline_encode

from .config import POLYLINE_PRECISION
from .models import Fix, LatLon, Segment
from .utils import json_dumps_sorted

_FIX_FIELDS = tuple(f.name for f in fields(Fix))


@dataclass(frozen=True, slots=True)
class SegmentRecord:
    """Row handed to the persistence layer, keyed by ``(trip_id, segment_id)``."""

    trip_id: str
    segment_id: str
    start_timestamp: Optional[float]
    end_timestamp: Optional[float]
    points: Tuple[Fix, ...]
    is_compressed: bool
    compression_ratio: float
    original_point_count: int
    policy_used: Optional[str]

    @property
    def key(self) -> Tuple[str, str]:
        return (self.trip_id, self.segment_id)


def segment_to_record(segment: Segment) -> SegmentRecord:
    return SegmentRecord(
        trip_id=segment.trip_id,
        segment_id=segment.segment_id,
        start_timestamp=segment.start_timestamp,
        end_timestamp=segment.end_timestamp,
        points=segment.points,
        is_compressed=segment.is_compressed,
        compression_ratio=segment.compression_ratio,
        original_point_count=segment.original_point_count,
        policy_used=segment.policy_used,
    )


def record_to_dict(
    record: SegmentRecord,
    *,
    include_polyline: bool = False,
    precision: int = POLYLINE_PRECISION,
) -> Dict[str, Any]:
    """Return a lossless JSON-friendly mapping of ``record``.

    ``include_polyline`` adds a lossy encoded polyline of the coordinates for
    consumers that only need the shape.
    """

    payload: Dict[str, Any] = {
        "trip_id": record.trip_id,
        "segment_id": record.segment_id,
        "start_timestamp": record.start_timestamp,
        "end_timestamp": record.end_timestamp,
        "points": [asdict(point) for point in record.points],
        "is_compressed": record.is_compressed,
        "compression_ratio": record.compression_ratio,
        "original_point_count": record.original_point_count,
        "policy_used": record.policy_used,
    }
    if include_polyline:
        payload["polyline"] = encode_track_polyline(record.points, precision=precision)
    return payload


def record_from_dict(payload: Mapping[str, Any]) -> SegmentRecord:
    """Rebuild a record from :func:`record_to_dict` output."""

    try:
        raw_points = payload["points"]
        points = tuple(_fix_from_mapping(item) for item in raw_points)
        return SegmentRecord(
            trip_id=str(payload["trip_id"]),
            segment_id=str(payload["segment_id"]),
            start_timestamp=_optional_float(payload.get("start_timestamp")),
            end_timestamp=_optional_float(payload.get("end_timestamp")),
            points=points,
            is_compressed=bool(payload["is_compressed"]),
            compression_ratio=float(payload["compression_ratio"]),
            original_point_count=int(payload["original_point_count"]),
            policy_used=payload.get("policy_used"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Invalid segment record payload: {exc}") from exc


def dumps_record(record: SegmentRecord, *, include_polyline: bool = False) -> str:
    return json_dumps_sorted(record_to_dict(record, include_polyline=include_polyline))


def loads_record(text: str) -> SegmentRecord:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError("Segment record is not valid JSON") from exc
    if not isinstance(payload, Mapping):
        raise ValueError("Segment record must be a JSON object")
    return record_from_dict(payload)


def encode_track_polyline(
    points: Sequence[Fix], *, precision: int = POLYLINE_PRECISION
) -> str:
    """Encode fix coordinates as a Google encoded polyline."""

    if not points:
        return ""
    return polyline_encode([point.latlon for point in points], precision=precision)


def decode_track_polyline(
    encoded: str, *, precision: int = POLYLINE_PRECISION
) -> List[LatLon]:
    """Decode an encoded polyline string into a list of (lat, lon) tuples."""

    if not encoded:
        return []
    try:
        decoded = polyline_decode(encoded, precision=precision)
    except (ValueError, TypeError, IndexError) as exc:
        raise ValueError("Unable to decode polyline") from exc
    return [(float(lat), float(lon)) for lat, lon in decoded]


def _fix_from_mapping(item: Mapping[str, Any]) -> Fix:
    # Canonical JSON writes non-finite floats (unknown speed or accuracy) as null.
    values = {
        name: math.nan if item[name] is None else float(item[name])
        for name in _FIX_FIELDS
        if name in item
    }
    return Fix(**values)


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


__all__ = [
    "SegmentRecord",
    "decode_track_polyline",
    "dumps_record",
    "encode_track_polyline",
    "loads_record",
    "record_from_dict",
    "record_to_dict",
    "segment_to_record",
]
