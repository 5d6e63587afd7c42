"""
Convert NMEA 0183 logs (RMC + GGA sentences) into a GPX 1.1 track.

Position and time come from RMC sentences, altitude from GGA sentences recorded
at the same second. The merged track can be trimmed to a local time window and
cleaned of outlier jumps with a point-to-point speed cap before it is written
out as GPX.
"""

import re
import math
import sys
import argparse
import logging
from dataclasses import dataclass
from decimal import Context, Decimal, ROUND_HALF_UP
from datetime import date, datetime, timedelta, timezone, tzinfo as TzInfo
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

from haversine import haversine, Unit

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

# Time bounds typed by the user are local wall-clock times in this offset
JST = timezone(timedelta(hours=9))

SPEED_FILTERS: Dict[str, Optional[float]] = {
    'none': None,
    '10': 10.0,
    '100': 100.0,
}

# GGA carries no date; its instants sit on this day and only the time-of-day is used
PLACEHOLDER_DATE = date(1900, 1, 1)

MIN_FIELDS = 10

GPX_CREATOR = 'NMEA to GPX Converter'
OUTPUT_SUFFIX = '_filtered_alt.gpx'

# Wide enough for any finite float written with a few decimals
_FIXED_CONTEXT = Context(prec=400)

NO_POINTS_MESSAGE = 'No valid GPS data points were found.'
NO_FILTERED_POINTS_MESSAGE = 'No data points remained after filtering.'


class ConversionError(ValueError):
    """Base class for failures reported to the caller of a conversion."""


class EmptyInputError(ConversionError):
    """The input held no valid fix to build a track from."""

    def __init__(self, message: str = NO_POINTS_MESSAGE):
        super().__init__(message)


class EmptyResultError(ConversionError):
    """Every point was removed by the time window or speed filter."""

    def __init__(self, message: str = NO_FILTERED_POINTS_MESSAGE):
        super().__init__(message)


@dataclass(frozen=True)
class FixRecord:
    """Position and time decoded from an RMC sentence."""
    valid: bool
    latitude: float
    longitude: float
    time: datetime


@dataclass(frozen=True)
class AltitudeRecord:
    """Altitude decoded from a GGA sentence. Only the time-of-day of `time` is meaningful."""
    altitude: float
    time: datetime


ParsedRecord = Union[FixRecord, AltitudeRecord]


@dataclass(frozen=True)
class CombinedPoint:
    """A valid fix joined with the altitude recorded at the same second, if any."""
    latitude: float
    longitude: float
    time: datetime
    elevation: Optional[float] = None


@dataclass(frozen=True)
class FilterConfig:
    """
    Filters applied to the merged track.

    Attributes:
        max_speed_kmh: Speed cap in km/h, None for no cap
        start: Earliest kept instant (inclusive), None for no lower bound
        end: Latest kept instant (inclusive), None for no upper bound
    """
    max_speed_kmh: Optional[float] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def from_strings(cls, speed_filter: Optional[str] = 'none', start_time: Optional[str] = None,
                     end_time: Optional[str] = None, tzinfo: TzInfo = JST) -> 'FilterConfig':
        """Build a config from the raw selector and local time strings."""
        return cls(
            max_speed_kmh=parse_speed_filter(speed_filter),
            start=parse_local_datetime(start_time, tzinfo),
            end=parse_local_datetime(end_time, tzinfo),
        )


# ===== Field decoders =====

def parse_nmea_coordinate(value: Optional[str], direction: Optional[str]) -> Optional[float]:
    """
    Convert an NMEA `DDMM.MMMM` / `DDDMM.MMMM` field to decimal degrees.

    Args:
        value: Coordinate field as written in the sentence
        direction: Hemisphere letter (N, S, E or W)

    Returns:
        Optional[float]: Decimal degrees, negative for S and W; None if the field can't be decoded
    """
    if not value or not direction:
        return None
    width = 2 if direction in ('N', 'S') else 3
    try:
        degrees = int(value[:width])
        minutes = float(value[width:])
    except ValueError:
        return None
    decimal = degrees + minutes / 60.0
    if not math.isfinite(decimal):
        return None
    if direction in ('S', 'W'):
        decimal = -decimal
    return decimal


def _split_time(time_str: str):
    hours = int(time_str[0:2])
    minutes = int(time_str[2:4])
    # Fractional seconds are truncated, never rounded
    seconds = math.floor(float(time_str[4:]))
    return hours, minutes, seconds


def parse_nmea_time(time_str: Optional[str], date_str: Optional[str]) -> Optional[datetime]:
    """
    Convert NMEA `HHMMSS[.sss]` and `DDMMYY` fields to a UTC datetime.

    NMEA times are already UTC so no conversion is applied.
    """
    if not time_str or not date_str:
        return None
    try:
        hours, minutes, seconds = _split_time(time_str)
        day = int(date_str[0:2])
        month = int(date_str[2:4])
        year = 2000 + int(date_str[4:6])
        return datetime(year, month, day, hours, minutes, seconds, tzinfo=timezone.utc)
    except (ValueError, OverflowError):
        return None


def parse_nmea_time_of_day(time_str: Optional[str]) -> Optional[datetime]:
    """Decode a time field that has no date. The result sits on PLACEHOLDER_DATE."""
    if not time_str:
        return None
    try:
        hours, minutes, seconds = _split_time(time_str)
        return datetime(PLACEHOLDER_DATE.year, PLACEHOLDER_DATE.month, PLACEHOLDER_DATE.day,
                        hours, minutes, seconds, tzinfo=timezone.utc)
    except (ValueError, OverflowError):
        return None


def _parse_finite_float(value: str) -> Optional[float]:
    try:
        number = float(value)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return number


# ===== Sentence parsing =====

def parse_nmea_sentence(line: str) -> Optional[ParsedRecord]:
    """
    Parse a single trimmed NMEA line.

    Returns:
        Optional[ParsedRecord]: FixRecord for RMC, AltitudeRecord for GGA, None for anything
        else or for a sentence whose fields can't be decoded
    """
    parts = line.split(',')
    if len(parts) < MIN_FIELDS:
        return None
    sentence_type = parts[0][3:6]

    if sentence_type == 'RMC':
        time = parse_nmea_time(parts[1], parts[9])
        lat = parse_nmea_coordinate(parts[3], parts[4])
        lon = parse_nmea_coordinate(parts[5], parts[6])
        if lat is None or lon is None or time is None:
            return None
        return FixRecord(valid=parts[2] == 'A', latitude=lat, longitude=lon, time=time)

    if sentence_type == 'GGA':
        altitude = _parse_finite_float(parts[9])
        time = parse_nmea_time_of_day(parts[1])
        if altitude is None or time is None:
            return None
        return AltitudeRecord(altitude=altitude, time=time)

    return None


def parse_nmea_lines(lines: Iterable[str]) -> List[ParsedRecord]:
    """Parse every line, silently dropping the ones that yield no record."""
    records: List[ParsedRecord] = []
    skipped = 0
    for line in lines:
        record = parse_nmea_sentence(line.strip())
        if record is None:
            skipped += 1
            continue
        records.append(record)
    logger.debug(f"Parsed {len(records)} records, skipped {skipped} lines")
    return records


# ===== Merging =====

def _second_of_day(ts: datetime) -> int:
    return ts.hour * 3600 + ts.minute * 60 + ts.second


def merge_records(records: Iterable[ParsedRecord]) -> List[CombinedPoint]:
    """
    Join valid fixes with same-second altitudes and sort them by time.

    Fixes are keyed by their whole UTC second. Altitudes carry no date, so they are
    keyed by second-of-day and joined to the fix recorded at that time-of-day. When a
    key repeats, the later record wins.

    Raises:
        EmptyInputError: if no valid fix was found
    """
    fixes: Dict[int, FixRecord] = {}
    altitudes: Dict[int, float] = {}
    for record in records:
        if isinstance(record, FixRecord):
            if record.valid:
                fixes[int(record.time.timestamp())] = record
        elif isinstance(record, AltitudeRecord):
            altitudes[_second_of_day(record.time)] = record.altitude

    points = [
        CombinedPoint(
            latitude=fix.latitude,
            longitude=fix.longitude,
            time=fix.time,
            elevation=altitudes.get(_second_of_day(fix.time)),
        )
        for fix in fixes.values()
    ]
    if not points:
        raise EmptyInputError()

    points.sort(key=lambda p: p.time)
    return points


def merge_lines(lines: Iterable[str]) -> List[CombinedPoint]:
    return merge_records(parse_nmea_lines(lines))


# ===== Configuration parsing =====

def parse_speed_filter(value: Optional[str]) -> Optional[float]:
    """Map the speed selector ("none", "10", "100") to a km/h cap. Unknown values mean no cap."""
    if value is None:
        return None
    return SPEED_FILTERS.get(value.strip().lower())


def parse_local_datetime(value: Optional[str], tzinfo: TzInfo = JST) -> Optional[datetime]:
    """
    Parse a `YYYY-MM-DD HH:MM:SS` wall-clock string in the given fixed offset.

    Returns the instant in UTC, or None when the string is empty or unparsable so the
    bound is simply disabled.
    """
    if not value or not value.strip():
        return None
    try:
        ts = datetime.fromisoformat(value.strip())
    except ValueError:
        logger.warning(f"Ignoring unparsable time bound: {value!r}")
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=tzinfo)
    try:
        return ts.astimezone(timezone.utc)
    except OverflowError:
        logger.warning(f"Ignoring time bound outside the supported range: {value!r}")
        return None


def parse_timezone(spec: Optional[str]) -> timezone:
    """Parse a fixed offset such as GMT+9, UTC-2 or GMT+10:30. Empty means JST."""
    if not spec:
        return JST
    s = spec.strip().upper().replace('UTC', 'GMT')
    if not s.startswith('GMT'):
        raise ValueError("--timezone must look like GMT+9 or UTC-2")
    off = s[3:]
    if not off:
        return timezone.utc
    try:
        sign = 1
        if off.startswith('+'):
            off = off[1:]
        elif off.startswith('-'):
            sign = -1
            off = off[1:]
        if ':' in off:
            hh, mm = off.split(':')
            hours = int(hh)
            minutes = int(mm)
        else:
            hours = int(off)
            minutes = 0
        return timezone(sign * timedelta(hours=hours, minutes=minutes))
    except ValueError:
        raise ValueError("Invalid timezone offset. Use e.g., GMT+9 or UTC+10:30")


# ===== GPX output =====

def _format_time(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def _to_fixed(value: float, digits: int) -> str:
    """Fixed-point text with ties rounded away from zero and no negative zero."""
    if value == 0:
        value = 0.0
    fixed = Decimal(value).quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP, context=_FIXED_CONTEXT)
    return f"{fixed:f}"


def points_to_gpx(points: Sequence[CombinedPoint]) -> str:
    """Render points as a single-track, single-segment GPX 1.1 document."""
    lines = [
        '<?xml version="1.0" encoding="UTF-8" standalone="no" ?>',
        f'<gpx xmlns="http://www.topografix.com/GPX/1/1" version="1.1" creator="{GPX_CREATOR}">',
        '<trk>',
        '<trkseg>',
    ]
    for p in points:
        lines.append(f'  <trkpt lat="{_to_fixed(p.latitude, 6)}" lon="{_to_fixed(p.longitude, 6)}">')
        if p.elevation is not None:
            lines.append(f'    <ele>{_to_fixed(p.elevation, 2)}</ele>')
        lines.append(f'    <time>{_format_time(p.time)}</time>')
        lines.append('  </trkpt>')
    lines.extend(['</trkseg>', '</trk>', '</gpx>'])
    return '\n'.join(lines)


def derive_output_filename(name: str) -> str:
    """`track.nmea` -> `track_filtered_alt.gpx`"""
    return re.sub(r'\.(nmea|log|txt)$', '', name, flags=re.IGNORECASE) + OUTPUT_SUFFIX


class NMEADataProcessor:
    """
    Turns the text of one NMEA log into a filtered GPX track.

    The processor only holds its filter configuration; every call works on the content
    it is given and nothing is kept between calls.
    """

    def __init__(self, config: Optional[FilterConfig] = None):
        self.config = config or FilterConfig()

    def merge(self, content: str) -> List[CombinedPoint]:
        """
        Parse and merge the full content of an NMEA file.

        Args:
            content (str): Newline separated NMEA sentences

        Returns:
            List[CombinedPoint]: Valid fixes in time order

        Raises:
            EmptyInputError: if the content has no valid fix
        """
        return merge_lines(content.splitlines())

    # ===== Filter helpers =====
    def _pair_distance_km(self, a: CombinedPoint, b: CombinedPoint) -> float:
        # check=False: coordinates are passed through without range validation
        angle = haversine((a.latitude, a.longitude), (b.latitude, b.longitude), unit=Unit.RADIANS, check=False)
        return angle * EARTH_RADIUS_KM

    def _pair_time_s(self, a: CombinedPoint, b: CombinedPoint) -> float:
        return (b.time - a.time).total_seconds()

    def filter_by_time_window(self, points: List[CombinedPoint]) -> List[CombinedPoint]:
        start, end = self.config.start, self.config.end
        if start is None and end is None:
            return points
        filtered: List[CombinedPoint] = []
        for p in points:
            if start is not None and p.time < start:
                continue
            if end is not None and p.time > end:
                continue
            filtered.append(p)
        return filtered

    def filter_by_speed(self, points: List[CombinedPoint]) -> List[CombinedPoint]:
        """
        Drop points reached from the last kept point faster than the speed cap.

        A rejected point never becomes the reference, so the next point is again
        compared with the last kept one.
        """
        max_kmh = self.config.max_speed_kmh
        if max_kmh is None:
            return points
        kept: List[CombinedPoint] = []
        last: Optional[CombinedPoint] = None
        for p in points:
            if last is not None:
                dist_km = self._pair_distance_km(last, p)
                dt = self._pair_time_s(last, p)
                if dt > 0 and dist_km > 0:
                    kmh = dist_km / (dt / 3600.0)
                    if kmh > max_kmh:
                        logger.debug(f"Rejected point at {_format_time(p.time)}: {kmh:.1f} km/h")
                        continue
            kept.append(p)
            last = p
        return kept

    def filter(self, points: List[CombinedPoint]) -> List[CombinedPoint]:
        """
        Apply the time window, then the speed cap.

        Raises:
            EmptyResultError: if no point survives
        """
        pts = self.filter_by_time_window(points)
        pts = self.filter_by_speed(pts)
        if not pts:
            raise EmptyResultError()
        logger.debug(f"{len(pts)} of {len(points)} points kept after filtering")
        return pts

    def convert_points(self, content: str) -> List[CombinedPoint]:
        return self.filter(self.merge(content))

    def convert(self, content: str) -> str:
        """Run the whole pipeline and return the GPX document."""
        return points_to_gpx(self.convert_points(content))


def apply_filters(points: List[CombinedPoint], config: FilterConfig) -> List[CombinedPoint]:
    """
    Apply the time window and then the speed cap of `config` to merged points.

    Raises:
        EmptyResultError: if no point survives
    """
    return NMEADataProcessor(config).filter(points)


def convert_to_gpx(content: str, speed_filter: Optional[str] = 'none', start_time: Optional[str] = None,
                   end_time: Optional[str] = None, tzinfo: TzInfo = JST) -> str:
    """
    Convert NMEA text to GPX text.

    Args:
        content: Full content of an NMEA log
        speed_filter: "none", "10" or "100" (km/h)
        start_time: Local `YYYY-MM-DD HH:MM:SS`, empty for no lower bound
        end_time: Local `YYYY-MM-DD HH:MM:SS`, empty for no upper bound
        tzinfo: Offset the local times are written in

    Raises:
        EmptyInputError: no valid GPS point in the content
        EmptyResultError: no point left after filtering
    """
    config = FilterConfig.from_strings(speed_filter, start_time, end_time, tzinfo)
    return NMEADataProcessor(config).convert(content)


def read_nmea_file(file_path: Union[str, Path]) -> str:
    with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
        return f.read()


def convert_file(file_path: Union[str, Path], speed_filter: Optional[str] = 'none',
                 start_time: Optional[str] = None, end_time: Optional[str] = None,
                 tzinfo: TzInfo = JST) -> str:
    """Read an NMEA log from disk and return it as GPX text."""
    return convert_to_gpx(read_nmea_file(file_path), speed_filter, start_time, end_time, tzinfo)


def main(argv: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(description="Convert an NMEA log (RMC/GGA) into a GPX track.")
    parser.add_argument('input', help='Path to the NMEA log file')
    parser.add_argument('--speed-filter', dest='speed_filter', default='none', choices=list(SPEED_FILTERS),
                        help='Reject jumps faster than this many km/h (default: none)')
    parser.add_argument('--start', dest='start', default='', help='Local start time, e.g. "2025-01-01 21:00:00"')
    parser.add_argument('--end', dest='end', default='', help='Local end time, e.g. "2025-01-01 22:30:00"')
    parser.add_argument('--timezone', dest='tz', default='GMT+9',
                        help='Offset of --start/--end like GMT+9 or UTC-2 (default: GMT+9)')
    parser.add_argument('--output', '-o', dest='output', default=None,
                        help='Output GPX path (default: <input>_filtered_alt.gpx next to the input)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Log skipped sentences and rejected points')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        tzinfo = parse_timezone(args.tz)
        config = FilterConfig.from_strings(args.speed_filter, args.start, args.end, tzinfo)
        input_path = Path(args.input)
        points = NMEADataProcessor(config).convert_points(read_nmea_file(input_path))

        if args.output:
            gpx_out = Path(args.output)
        else:
            gpx_out = input_path.with_name(derive_output_filename(input_path.name))
        with open(gpx_out, 'w', encoding='utf-8') as f:
            f.write(points_to_gpx(points))
        print(f"Saved GPX: {gpx_out} ({len(points)} points)")

    except (ValueError, OSError) as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
