"""Plain-text rendering for the command line."""

from datetime import datetime, timezone

from .speedtest import SpeedTestResult
from .storage import NoteSpan, NoteType, SpeedTestRecord, StatsBandRow

SPEED_UNITS = ("bps", "Kbps", "Mbps", "Gbps")


def format_speed(bytes_per_second: float) -> str:
    """Human-readable bandwidth, e.g. ``format_speed(12_500_000) == "100 Mbps"``."""
    value = bytes_per_second * 8  # to bits
    units = list(SPEED_UNITS)
    while len(units) > 1 and value > 1000:
        value /= 1000
        units.pop(0)
    return f"{_three_digits(value)} {units[0]}"


def _three_digits(value: float) -> str:
    # Three significant digits without switching to exponent notation
    if value == 0:
        return "0.00"
    if value >= 100:
        return f"{value:.0f}"
    if value >= 10:
        return f"{value:.1f}"
    return f"{value:.2f}"


def format_timestamp(ms: int | None) -> str:
    if ms is None:
        return "-"
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc).astimezone()
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def format_band_row(row: StatsBandRow) -> str:
    return (
        f"{format_timestamp(row.timestamp)}  {row.generation:<3} {row.band:<5} "
        f"bars={row.bars} sinr={row.sinr} rsrq={row.rsrq} rsrp={row.rsrp} rssi={row.rssi}"
    )


def format_note(note: NoteSpan) -> str:
    line = f"{format_timestamp(note.timestamp)}  {note.type.value:<10} {note.text}"
    if note.type is NoteType.SPAN_START:
        line += f"  (until {format_timestamp(note.end_timestamp)})"
    return line


def format_speed_result(result: SpeedTestResult) -> str:
    return (
        f"down {format_speed(result.download.bandwidth)}, "
        f"up {format_speed(result.upload.bandwidth)}, "
        f"ping {result.ping.latency:.1f}ms (jitter {result.ping.jitter:.1f}ms), "
        f"server {result.server.name} ({result.server.location})"
    )


def format_speed_test(record: SpeedTestRecord) -> str:
    return f"{format_timestamp(record.started)}  {format_speed_result(record.result)}"
