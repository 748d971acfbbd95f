"""
TTML subtitle insertion into DASH manifests.

Inband subtitles are sliced on the manifest's segment boundaries and written
as an fMP4 ``stpp`` track, ``<rep>/sub_i.mp4`` plus ``<rep>/sub_<n>.m4s``.
Outband subtitles are referenced as a single TTML file through a BaseURL.
"""

import copy
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

from bs4 import BeautifulSoup

from dashpack.const import DASH_ROLE_SCHEME
from dashpack.remuxer.mp4_muxer import FragmentSample, build_fragment, build_subtitle_init_segment
from dashpack.schemas import SubtitleMode, SubtitleSpec
from dashpack.utils.file_utils import atomic_write
from dashpack.utils.file_utils import copy_file as copy_to_output
from dashpack.utils.mpd_utils import ManifestDocument
from dashpack.utils.ttml_utils import (
    TimingParameters,
    format_time_expression,
    parse_time_expression,
    segment_count,
)

logger = logging.getLogger(__name__)

SUBTITLE_TRACK_ID = 1
SUBTITLE_INIT_FILE = "sub_i.mp4"
SUBTITLE_SEGMENT_FILE = "sub_{number}.m4s"

_TIMING_ATTRIBUTES = ("begin", "end", "dur")


@dataclass(frozen=True)
class SubtitleSegment:
    """A time slice of a subtitle document, one complete TTML document per segment."""

    number: int  # 1-based, matches SegmentTemplate@startNumber=1
    start: float
    duration: float
    data: bytes


class SubtitleDocument:
    """An ordered sequence of timed TTML cues (<p> elements)."""

    def __init__(self, soup: BeautifulSoup, source: Optional[Path] = None):
        if soup.find("tt") is None:
            raise ValueError(f"Not a TTML document: {source or '<string>'}")
        self._soup = soup
        self.source = source
        self.timing = TimingParameters.from_attributes(soup.find("tt").attrs)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "SubtitleDocument":
        path = Path(path)
        return cls(BeautifulSoup(path.read_bytes(), "xml"), source=path)

    @classmethod
    def from_string(cls, text: Union[str, bytes]) -> "SubtitleDocument":
        return cls(BeautifulSoup(text, "xml"))

    def _element_range(self, element, parent_begin: float, parent_end: Optional[float]) -> tuple:
        """Absolute (begin, end) of a timed element; times are relative to the parent's begin."""
        begin = parent_begin + parse_time_expression(element.get("begin", "0s"), self.timing)
        if element.get("end"):
            end = parent_begin + parse_time_expression(element["end"], self.timing)
        elif element.get("dur"):
            end = begin + parse_time_expression(element["dur"], self.timing)
        else:
            end = parent_end
        return begin, end

    def _resolve_spans(self, element, begin: float, end: Optional[float]) -> list[tuple]:
        """(span, begin, end) of every timed span below ``element``, parents before children."""
        spans = []
        for child in element.find_all("span", recursive=False):
            child_begin, child_end = begin, end
            if any(child.get(attr) for attr in _TIMING_ATTRIBUTES):
                child_begin, child_end = self._element_range(child, begin, end)
                spans.append((child, child_begin, child_end))
            spans.extend(self._resolve_spans(child, child_begin, child_end))
        return spans

    def _resolve_cues(self, soup: BeautifulSoup) -> list[tuple]:
        """
        (p element, begin, end, spans) in document order, all times absolute.

        A <p> without end or dur takes its range from its timed spans
        (EBU-TT-D style); cues without any range have None times.
        """
        body = soup.find("body")
        if body is None:
            return []
        cues = []
        for paragraph in body.find_all("p"):
            offset = 0.0
            for parent in paragraph.parents:
                if parent.name in ("div", "body") and parent.get("begin"):
                    offset += parse_time_expression(parent["begin"], self.timing)
                if parent is body:
                    break
            begin, end = self._element_range(paragraph, offset, None)
            spans = self._resolve_spans(paragraph, begin, end)
            if end is None:
                ranged = [(span_begin, span_end) for _, span_begin, span_end in spans if span_end is not None]
                if ranged:
                    begin = min(span_begin for span_begin, _ in ranged)
                    end = max(span_end for _, span_end in ranged)
                else:
                    begin = None
            cues.append((paragraph, begin, end, spans))
        return cues

    @property
    def cues(self) -> list[tuple[float, float]]:
        timed = []
        for paragraph, begin, end, _ in self._resolve_cues(self._soup):
            if begin is None or end <= begin:
                logger.warning("Skipping subtitle cue without a valid time range: %s", paragraph.get_text(" ", strip=True))
                continue
            timed.append((begin, end))
        return timed

    @property
    def duration(self) -> float:
        return max((end for _, end in self.cues), default=0.0)

    def slice(self, start: float, end: float) -> str:
        """
        The document restricted to the cues overlapping ``[start, end)``.

        Cue times are clipped and written as absolute times. Timed spans are
        clipped too and rewritten relative to their clipped parent, spans
        outside the slice are dropped.
        """
        soup = copy.copy(self._soup)
        cues = self._resolve_cues(soup)
        body = soup.find("body")
        for element in [body] + body.find_all("div"):
            for attr in _TIMING_ATTRIBUTES:
                element.attrs.pop(attr, None)

        for paragraph, begin, finish, spans in cues:
            if begin is None or finish <= start or begin >= end or finish <= begin:
                paragraph.decompose()
                continue
            clipped = {id(paragraph): max(begin, start)}
            paragraph.attrs.pop("dur", None)
            paragraph["begin"] = format_time_expression(clipped[id(paragraph)])
            paragraph["end"] = format_time_expression(min(finish, end))

            for span, span_begin, span_end in spans:
                if span.decomposed:
                    continue
                if span_end is None:
                    span_end = finish
                if span_end <= start or span_begin >= end or span_end <= span_begin:
                    span.decompose()
                    continue
                parent_begin = next(clipped[id(parent)] for parent in span.parents if id(parent) in clipped)
                clipped[id(span)] = max(span_begin, start, parent_begin)
                span.attrs.pop("dur", None)
                span["begin"] = format_time_expression(clipped[id(span)] - parent_begin)
                span["end"] = format_time_expression(min(span_end, end) - parent_begin)
        return str(soup)

    def segments(self, segment_duration: float) -> list[SubtitleSegment]:
        duration = self.duration
        segments = []
        for index in range(segment_count(duration, segment_duration)):
            start = index * segment_duration
            end = min(start + segment_duration, duration)
            data = self.slice(start, end).encode("utf-8")
            segments.append(SubtitleSegment(number=index + 1, start=start, duration=end - start, data=data))
        return segments


def _bandwidth(subtitle_path: Path, duration: float) -> str:
    return str(max(1, int(subtitle_path.stat().st_size * 8 / max(duration, 1.0))))


def write_inband_segments(
    document: SubtitleDocument, folder: Path, lang: str, timescale: int, segment_units: int
) -> list[Path]:
    """Write the stpp init segment and one media segment per time slice into ``folder``."""
    total = round(document.duration * timescale)
    written = [folder / SUBTITLE_INIT_FILE]
    atomic_write(written[0], build_subtitle_init_segment(SUBTITLE_TRACK_ID, timescale, lang, duration=total))

    for segment in document.segments(segment_units / timescale):
        decode_time = (segment.number - 1) * segment_units
        sample = FragmentSample(data=segment.data, duration=min(segment_units, total - decode_time))
        path = folder / SUBTITLE_SEGMENT_FILE.format(number=segment.number)
        atomic_write(path, build_fragment(segment.number, SUBTITLE_TRACK_ID, decode_time, sample))
        written.append(path)
    return written


def insert_inband(
    subtitle: SubtitleSpec,
    manifest_input: Union[str, Path],
    manifest_output: Union[str, Path],
    split_segments: bool = True,
    segment_duration: int = 6,
    url_prefix: str = "",
) -> bool:
    """
    Register an inband (segmented stpp) subtitle track in a manifest.

    Segment timing follows the manifest's video SegmentTemplate, then the
    audio one, then ``segment_duration``. Segment files are written next to
    ``manifest_output`` only when ``split_segments`` is set, a manifest in a
    subfolder reuses them through ``url_prefix``.

    Returns:
        False when the subtitle file does not exist or has no timed cues.
    """
    manifest_input = Path(manifest_input)
    manifest_output = Path(manifest_output)
    if not subtitle.path.is_file():
        logger.warning("Subtitle file not found, %s skipped: %s", subtitle.rep_id, subtitle.path)
        return False

    document = SubtitleDocument.load(subtitle.path)
    if document.duration <= 0:
        logger.warning("Subtitle %s has no timed cues, skipped: %s", subtitle.rep_id, subtitle.path)
        return False
    manifest = ManifestDocument.load(manifest_input)

    timing = manifest.segment_timing()
    if timing is None:
        logger.info("No SegmentTemplate timing in %s, using %ds segments", manifest_input, segment_duration)
        timing = (1000, segment_duration * 1000)
    timescale, segment_units = timing

    if split_segments:
        written = write_inband_segments(
            document, manifest_output.parent / subtitle.rep_id, subtitle.lang, timescale, segment_units
        )
        logger.info("Wrote %d subtitle segment(s) for %s", len(written) - 1, subtitle.rep_id)

    manifest.add_adaptation_set(
        {
            "@contentType": "text",
            "@mimeType": "application/mp4",
            "@lang": subtitle.lang,
            "@segmentAlignment": "true",
            "@startWithSAP": "1",
            "Role": {"@schemeIdUri": DASH_ROLE_SCHEME, "@value": "subtitle"},
            "SegmentTemplate": {
                "@timescale": str(timescale),
                "@duration": str(segment_units),
                "@startNumber": "1",
                "@media": f"{url_prefix}$RepresentationID$/sub_$Number$.m4s",
                "@initialization": f"{url_prefix}$RepresentationID$/{SUBTITLE_INIT_FILE}",
            },
            "Representation": [
                {
                    "@id": subtitle.rep_id,
                    "@bandwidth": _bandwidth(subtitle.path, document.duration),
                    "@codecs": "stpp",
                }
            ],
        }
    )
    manifest.save(manifest_output)
    return True


def insert_outband(
    subtitle: SubtitleSpec,
    manifest_input: Union[str, Path],
    manifest_output: Union[str, Path],
    copy_file: bool = True,
    url_prefix: str = "",
) -> bool:
    """
    Register an outband subtitle track referencing the TTML file as a whole.

    Returns:
        False when the subtitle file does not exist.
    """
    manifest_input = Path(manifest_input)
    manifest_output = Path(manifest_output)
    if not subtitle.path.is_file():
        logger.warning("Subtitle file not found, %s skipped: %s", subtitle.rep_id, subtitle.path)
        return False

    if copy_file:
        copy_to_output(subtitle.path, manifest_output.parent / subtitle.path.name)

    manifest = ManifestDocument.load(manifest_input)
    duration = SubtitleDocument.load(subtitle.path).duration
    manifest.add_adaptation_set(
        {
            "@contentType": "text",
            "@mimeType": "application/ttml+xml",
            "@lang": subtitle.lang,
            "Role": {"@schemeIdUri": DASH_ROLE_SCHEME, "@value": "subtitle"},
            "Representation": [
                {
                    "@id": subtitle.rep_id,
                    "@bandwidth": _bandwidth(subtitle.path, duration),
                    "BaseURL": f"{url_prefix}{subtitle.path.name}",
                }
            ],
        }
    )
    manifest.save(manifest_output)
    return True


def insert_all(
    subtitles: Iterable[SubtitleSpec],
    manifest_input: Union[str, Path],
    manifest_output: Union[str, Path],
    split_segments: bool = True,
    copy_file: bool = True,
    segment_duration: int = 6,
    url_prefix: str = "",
) -> int:
    """
    Insert subtitle entries in declaration order.

    The first inserted entry reads ``manifest_input``; every entry writes
    ``manifest_output`` and later entries read that output, so the final
    manifest accumulates every track.

    Returns:
        Number of entries inserted.
    """
    source = Path(manifest_input)
    inserted = 0
    for subtitle in subtitles:
        if not subtitle.enabled:
            logger.info("Subtitle %s disabled, skipped", subtitle.rep_id)
            continue
        logger.info("Create subtitles(%s) %s %s %s", subtitle.mode.value, subtitle.rep_id, subtitle.lang, subtitle.path)
        if subtitle.mode is SubtitleMode.INBAND:
            done = insert_inband(subtitle, source, manifest_output, split_segments, segment_duration, url_prefix)
        else:
            done = insert_outband(subtitle, source, manifest_output, copy_file, url_prefix)
        if done:
            source = Path(manifest_output)
            inserted += 1
    return inserted
