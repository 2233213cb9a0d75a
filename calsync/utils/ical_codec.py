# calsync/utils/ical_codec.py
"""
Minimal iCalendar (RFC 5545) support: a VEVENT/VALARM generator and a lenient,
line-oriented VEVENT parser. Feeds in the wild are loosely conformant, so events
missing DTSTART or DTEND are skipped instead of failing the whole feed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

CRLF = "\r\n"
UTC_FORMAT = "%Y%m%dT%H%M%SZ"
DEFAULT_PRODID = "-//Calsync//Booking Calendar//EN"


@dataclass
class Attendee:
    email: str
    name: Optional[str] = None


@dataclass
class ParsedEvent:
    uid: str
    summary: str
    start: datetime
    end: datetime
    all_day: bool
    busy: bool = True


# ========== TEXT ==========

def escape_text(value: Optional[str]) -> str:
    """Escape a TEXT value: backslash, comma, semicolon and any newline form"""
    if not value:
        return ""
    escaped = value.replace("\\", "\\\\").replace(",", "\\,").replace(";", "\\;")
    return escaped.replace("\r\n", "\\n").replace("\r", "\\n").replace("\n", "\\n")


def unescape_text(value: str) -> str:
    out = []
    chars = iter(value)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        nxt = next(chars, "")
        out.append("\n" if nxt in ("n", "N") else nxt)
    return "".join(out)


def format_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(UTC_FORMAT)


# ========== GENERATOR ==========

def generate_event(
        uid: str,
        start: datetime,
        end: datetime,
        summary: str,
        description: Optional[str] = None,
        location: Optional[str] = None,
        organizer_email: Optional[str] = None,
        attendee: Optional[Attendee] = None,
        reminder_minutes: Iterable[int] = (),
        prodid: str = DEFAULT_PRODID,
        now: Optional[datetime] = None,
) -> str:
    """Build a single-event VCALENDAR document with CRLF line endings"""
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{prodid}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"DTSTAMP:{format_utc(now or datetime.now(timezone.utc))}",
        f"DTSTART:{format_utc(start)}",
        f"DTEND:{format_utc(end)}",
        f"SUMMARY:{escape_text(summary)}",
        f"DESCRIPTION:{escape_text(description)}",
    ]

    if location:
        lines.append(f"LOCATION:{escape_text(location)}")
    if organizer_email:
        lines.append(f"ORGANIZER:mailto:{organizer_email}")
    if attendee and attendee.email:
        cn = escape_text(attendee.name or attendee.email)
        lines.append(f"ATTENDEE;CN={cn}:mailto:{attendee.email}")

    for minutes in reminder_minutes:
        lines.extend([
            "BEGIN:VALARM",
            f"TRIGGER:-PT{int(minutes)}M",
            "ACTION:DISPLAY",
            "DESCRIPTION:Reminder",
            "END:VALARM",
        ])

    lines.extend([
        "STATUS:CONFIRMED",
        "SEQUENCE:0",
        "END:VEVENT",
        "END:VCALENDAR",
    ])
    return CRLF.join(lines) + CRLF


# ========== PARSER ==========

def unfold_lines(data: str) -> List[str]:
    """Normalize line endings and join RFC 5545 continuation lines"""
    lines: List[str] = []
    for raw in data.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if raw[:1] in (" ", "\t") and lines:
            lines[-1] += raw[1:]
        else:
            lines.append(raw)
    return [line.strip() for line in lines if line.strip()]


def split_property(line: str) -> Optional[Tuple[str, Dict[str, str], str]]:
    """Split 'NAME;PARAM=X:VALUE' at the first colon into (NAME, params, value)"""
    if ":" not in line:
        return None
    key, value = line.split(":", 1)
    name, *raw_params = key.split(";")
    params = {}
    for raw in raw_params:
        if "=" in raw:
            param, param_value = raw.split("=", 1)
            params[param.upper()] = param_value.strip('"')
    return name.upper(), params, value.strip()


def _zone(name: Optional[str], fallback: tzinfo) -> tzinfo:
    if not name:
        return fallback
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        # unknown names, and names like "America" that resolve to a zoneinfo directory
        return fallback


def parse_datetime(value: str, params: Optional[Dict[str, str]] = None,
                   default_tz: tzinfo = timezone.utc) -> Tuple[datetime, bool]:
    """
    Decode a DTSTART/DTEND value into (aware UTC datetime, all_day).

    8 chars is a date (all day), a trailing Z is UTC, 15 chars is local time in the
    TZID parameter (or the calendar default); anything else is parsed best effort.
    """
    params = params or {}
    if len(value) == 8:
        day = datetime.strptime(value, "%Y%m%d")
        return day.replace(tzinfo=timezone.utc), True
    if value.endswith("Z"):
        return datetime.strptime(value, UTC_FORMAT).replace(tzinfo=timezone.utc), False
    if len(value) == 15:
        local = datetime.strptime(value, "%Y%m%dT%H%M%S")
        zone = _zone(params.get("TZID"), default_tz)
        return local.replace(tzinfo=zone).astimezone(timezone.utc), False

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_zone(params.get("TZID"), default_tz))
    return parsed.astimezone(timezone.utc), False


def parse_events(
        data: str,
        window_start: datetime,
        window_end: datetime,
        default_tz: Optional[tzinfo] = None,
) -> List[ParsedEvent]:
    """Parse VEVENTs intersecting [window_start, window_end)"""
    if default_tz is None:
        default_tz = _zone(extract_timezone(data), timezone.utc)

    events: List[ParsedEvent] = []
    current: Optional[Dict[str, Tuple[Dict[str, str], str]]] = None
    seen = 0

    for line in unfold_lines(data):
        upper = line.upper()
        if upper == "BEGIN:VEVENT":
            current = {}
            continue
        if upper == "END:VEVENT":
            if current is not None:
                seen += 1
                event = _build_event(current, seen, default_tz)
                if event and event.start < window_end and event.end > window_start:
                    events.append(event)
            current = None
            continue
        if current is None:
            continue

        prop = split_property(line)
        if prop is None:
            continue
        name, params, value = prop
        # First occurrence wins; nested VALARM properties must not override the event
        current.setdefault(name, (params, value))

    return events


def _build_event(props: Dict[str, Tuple[Dict[str, str], str]], index: int,
                 default_tz: tzinfo) -> Optional[ParsedEvent]:
    if "DTSTART" not in props or "DTEND" not in props:
        return None

    start_params, start_value = props["DTSTART"]
    end_params, end_value = props["DTEND"]
    try:
        start, _ = parse_datetime(start_value, start_params, default_tz)
        end, _ = parse_datetime(end_value, end_params, default_tz)
    except Exception as e:
        logger.debug(f"Skipping event with unparseable dates: {start_value} / {end_value} ({e})")
        return None

    uid = props.get("UID", ({}, ""))[1] or f"event-{index}"
    summary = unescape_text(props.get("SUMMARY", ({}, ""))[1]) or "Busy"
    transparency = props.get("TRANSP", ({}, "OPAQUE"))[1].upper()

    return ParsedEvent(
        uid=uid,
        summary=summary,
        start=start,
        end=end,
        all_day=len(start_value) == 8,
        busy=transparency != "TRANSPARENT",
    )


# ========== CALENDAR METADATA ==========

def _calendar_properties(data: str) -> Dict[str, str]:
    """Top-level VCALENDAR properties (outside any component)"""
    props: Dict[str, str] = {}
    depth = 0
    for line in unfold_lines(data):
        upper = line.upper()
        if upper.startswith("BEGIN:"):
            depth += 1
            continue
        if upper.startswith("END:"):
            depth -= 1
            continue
        prop = split_property(line)
        if prop and depth <= 1:
            props.setdefault(prop[0], prop[2])
        elif prop and prop[0] == "TZID":
            props.setdefault("TZID", prop[2])
    return props


def extract_calendar_name(data: str) -> str:
    props = _calendar_properties(data)
    if props.get("X-WR-CALNAME"):
        return unescape_text(props["X-WR-CALNAME"])
    prodid = props.get("PRODID")
    if prodid:
        name = prodid.replace("-//", "").replace("//", " ").strip()
        if name:
            return name
    return "iCal Calendar"


def extract_timezone(data: str) -> str:
    props = _calendar_properties(data)
    return props.get("X-WR-TIMEZONE") or props.get("TZID") or "UTC"


def is_calendar_document(data: Optional[str]) -> bool:
    return bool(data) and "BEGIN:VCALENDAR" in data
