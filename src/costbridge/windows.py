from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from costbridge.errors import WindowError
from costbridge.models import Window

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)

SUPPORTED_RESOLUTIONS: "tuple[timedelta, ...]" = (HOUR, DAY)


@dataclass(frozen=True, slots=True)
class CostRequest:
    """
    CostRequest is the host's ask: a time range and the resolution
    it should be split into.
    """

    start: "datetime"
    end: "datetime"
    resolution: "timedelta" = DAY


def _as_utc(value: "datetime") -> "datetime":
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_aligned(value: "datetime", resolution: "timedelta") -> "bool":
    midnight = value.replace(hour=0, minute=0, second=0, microsecond=0)
    return (value - midnight) % resolution == timedelta(0)


def validate_request(request: "CostRequest") -> "list[str]":
    """
    returns human-readable problems with the request, empty when
    the request can be split into windows.
    """
    problems: "list[str]" = []
    start = _as_utc(request.start)
    end = _as_utc(request.end)

    if start >= end:
        problems.append(f"start {start.isoformat()} must be before end {end.isoformat()}")

    if request.resolution not in SUPPORTED_RESOLUTIONS:
        problems.append(
            f"unsupported resolution {request.resolution}, expected one hour or one day"
        )
        return problems

    for label, value in (("start", start), ("end", end)):
        if not _is_aligned(value, request.resolution):
            problems.append(
                f"{label} {value.isoformat()} is not aligned to a {request.resolution} boundary"
            )

    return problems


def split_windows(request: "CostRequest") -> "list[Window]":
    """
    splits the request into contiguous, calendar-aligned windows
    of the requested resolution.
    """
    problems = validate_request(request)
    if problems:
        raise WindowError("; ".join(problems))

    start = _as_utc(request.start)
    end = _as_utc(request.end)
    windows: "list[Window]" = []
    cursor = start
    while cursor < end:
        windows.append(Window(start=cursor, end=cursor + request.resolution))
        cursor += request.resolution

    return windows
