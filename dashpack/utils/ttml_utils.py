import math
import re
from dataclasses import dataclass
from typing import Optional

_CLOCK_TIME_RE = re.compile(r"^(\d+):(\d{2}):(\d{2})(?:(\.\d+)|:(\d+)(?:\.(\d+))?)?$")
_OFFSET_TIME_RE = re.compile(r"^(\d+(?:\.\d+)?)(h|ms|m|s|f|t)$")


@dataclass(frozen=True)
class TimingParameters:
    """ttp: timing attributes declared on the <tt> root."""

    frame_rate: float = 30.0
    sub_frame_rate: int = 1
    tick_rate: float = 1.0

    @classmethod
    def from_attributes(cls, attrs: dict) -> "TimingParameters":
        frame_rate = float(attrs.get("ttp:frameRate", 30))
        multiplier = attrs.get("ttp:frameRateMultiplier")
        if multiplier:
            numerator, denominator = (float(part) for part in multiplier.split())
            frame_rate = frame_rate * numerator / denominator
        sub_frame_rate = int(attrs.get("ttp:subFrameRate", 1))
        if "ttp:tickRate" in attrs:
            tick_rate = float(attrs["ttp:tickRate"])
        elif "ttp:frameRate" in attrs:
            tick_rate = frame_rate * sub_frame_rate
        else:
            tick_rate = 1.0
        return cls(frame_rate=frame_rate, sub_frame_rate=sub_frame_rate, tick_rate=tick_rate)


def parse_time_expression(value: str, timing: Optional[TimingParameters] = None) -> float:
    """
    Parses a TTML time expression into seconds.

    Supports clock time (``00:00:05.120``, ``00:00:05:12`` with frames) and
    offset time (``5.12s``, ``120f``, ``9000t``, ``1.5h``, ``250ms``, ``2m``).
    """
    timing = timing or TimingParameters()
    text = value.strip()

    match = _CLOCK_TIME_RE.match(text)
    if match:
        hours, minutes, seconds, fraction, frames, sub_frames = match.groups()
        result = int(hours) * 3600 + int(minutes) * 60 + int(seconds)
        if fraction:
            result += float(fraction)
        if frames:
            result += int(frames) / timing.frame_rate
        if sub_frames:
            result += int(sub_frames) / (timing.frame_rate * timing.sub_frame_rate)
        return float(result)

    match = _OFFSET_TIME_RE.match(text)
    if match:
        count, metric = float(match.group(1)), match.group(2)
        if metric == "h":
            return count * 3600
        if metric == "m":
            return count * 60
        if metric == "s":
            return count
        if metric == "ms":
            return count / 1000
        if metric == "f":
            return count / timing.frame_rate
        return count / timing.tick_rate

    raise ValueError(f"Invalid TTML time expression: {value!r}")


def format_time_expression(seconds: float) -> str:
    """Formats seconds as an ``HH:MM:SS.mmm`` clock time."""
    millis = int(round(seconds * 1000))
    hours, millis = divmod(millis, 3600 * 1000)
    minutes, millis = divmod(millis, 60 * 1000)
    secs, millis = divmod(millis, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def segment_count(duration: float, segment_duration: float) -> int:
    """Number of segments needed to cover ``duration``, the last one may be shorter."""
    if duration <= 0:
        return 0
    # Rounding guard so 18.0000001 / 6 does not create an empty fourth segment
    return max(1, math.ceil(round(duration / segment_duration, 6)))
