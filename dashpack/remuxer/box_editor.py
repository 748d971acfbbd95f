"""
ISO-BMFF box tree editor.

Provides:
- parse_boxes: parse raw MP4 bytes into an owned tree of Box nodes
- parse_box_path / locate: address boxes with ``moov/trak/senc`` style paths
- remove_boxes: splice matched boxes out and rewrite every ancestor size field
- remove_box: file level, non-destructive edit with an atomic write
- format_box_tree: indented dump of a parsed tree

Header parsing follows the same rules as mp4_parser.read_box_header:
32-bit size, size == 1 selects the 64-bit extended size and size == 0
extends the box to the end of its enclosing range.
"""

import logging
import re
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

from dashpack.utils.file_utils import atomic_write

logger = logging.getLogger(__name__)

# =============================================================================
# Box model
# =============================================================================

_BOX_HEADER_SIZE = 8
_LARGE_BOX_HEADER_SIZE = 16

# Box types whose payload is a plain sequence of child boxes.
CONTAINER_TYPES = frozenset(
    {
        b"moov",
        b"trak",
        b"mdia",
        b"minf",
        b"stbl",
        b"dinf",
        b"edts",
        b"mvex",
        b"moof",
        b"traf",
        b"mfra",
        b"udta",
        b"sinf",
        b"schi",
    }
)

WILDCARD = "*"


class FormatError(Exception):
    """Malformed or truncated box data."""

    pass


@dataclass
class Box:
    """
    A node of the box tree.

    Container boxes own their children; leaves keep a view of their payload.
    Nodes never reference their parent, ancestors are collected by ``locate``.
    """

    box_type: bytes
    offset: int  # Absolute offset of the box header in the parsed buffer
    size: int  # Total size (header + payload)
    header_size: int = _BOX_HEADER_SIZE
    children: list["Box"] | None = None
    payload: memoryview | None = None

    @property
    def is_container(self) -> bool:
        return self.children is not None

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def type_name(self) -> str:
        try:
            return self.box_type.decode("ascii")
        except UnicodeDecodeError:
            return repr(self.box_type)

    def __repr__(self):
        return f"<Box type={self.type_name}, offset={self.offset}, size={self.size}>"


def read_box_header(data: bytes, offset: int, end: int) -> tuple[bytes, int, int]:
    """
    Read the header of the box starting at ``offset`` inside ``[offset, end)``.

    Returns:
        (box_type, header_size, total_box_size)

    Raises:
        FormatError: if the header is truncated or the size is inconsistent.
    """
    if offset + _BOX_HEADER_SIZE > end:
        raise FormatError(f"Truncated box header at offset {offset}")

    size, box_type = struct.unpack_from(">I4s", data, offset)
    header_size = _BOX_HEADER_SIZE

    if size == 1:  # Extended size (64-bit)
        if offset + _LARGE_BOX_HEADER_SIZE > end:
            raise FormatError(f"Truncated extended size of {box_type!r} box at offset {offset}")
        size = struct.unpack_from(">Q", data, offset + 8)[0]
        header_size = _LARGE_BOX_HEADER_SIZE
    elif size == 0:  # Box extends to end of the enclosing range
        size = end - offset

    if size < header_size:
        raise FormatError(f"Invalid size {size} of {box_type!r} box at offset {offset}")
    if offset + size > end:
        raise FormatError(f"{box_type!r} box at offset {offset} overruns its parent ({offset + size} > {end})")

    return box_type, header_size, size


def _parse_range(view: memoryview, start: int, end: int) -> list[Box]:
    boxes = []
    offset = start
    while offset < end:
        box_type, header_size, size = read_box_header(view, offset, end)
        box = Box(box_type=box_type, offset=offset, size=size, header_size=header_size)
        body_start = offset + header_size
        if box_type in CONTAINER_TYPES:
            box.children = _parse_range(view, body_start, offset + size)
        else:
            box.payload = view[body_start : offset + size]
        boxes.append(box)
        offset += size
    return boxes


def parse_boxes(data: bytes) -> list[Box]:
    """
    Parse MP4 bytes into a list of top-level Box trees.

    Raises:
        FormatError: on truncated or malformed headers anywhere in the tree.
    """
    view = memoryview(data)
    return _parse_range(view, 0, len(view))


def format_box_tree(boxes: list[Box], indent: int = 0) -> str:
    """Render the tree as one ``Type: xxxx, Size: n`` line per box."""
    lines = []
    for box in boxes:
        lines.append(" " * indent + f"Type: {box.type_name}, Size: {box.size}, Offset: {box.offset}")
        if box.children:
            lines.append(format_box_tree(box.children, indent + 2))
    return "\n".join(line for line in lines if line)


# =============================================================================
# Box paths
# =============================================================================

_SEGMENT_RE = re.compile(r"^(?P<type>[^/\[\]]{4})(?:\[(?P<selector>\*|\d+)\])?$")


@dataclass(frozen=True)
class PathSegment:
    box_type: bytes
    selector: Union[None, int, str] = None  # None = first, int = n-th (1-based), "*" = all

    def select(self, siblings: list[Box]) -> list[Box]:
        matching = [box for box in siblings if box.box_type == self.box_type]
        if not matching:
            return []
        if self.selector is None:
            return matching[:1]
        if self.selector == WILDCARD:
            return matching
        index = self.selector - 1
        return [matching[index]] if 0 <= index < len(matching) else []


@dataclass(frozen=True)
class BoxPath:
    segments: tuple[PathSegment, ...]

    def __str__(self):
        parts = []
        for segment in self.segments:
            text = segment.box_type.decode("latin-1")
            if segment.selector is not None:
                text += f"[{segment.selector}]"
            parts.append(text)
        return "/".join(parts)


def parse_box_path(path: str) -> BoxPath:
    """
    Parse ``moov/trak/senc``, ``moov/pssh[*]`` or ``moov/trak[2]/senc``.

    Raises:
        ValueError: for empty paths or segments that are not a four-character
            type with an optional ``[*]`` / ``[n]`` selector.
    """
    parts = [part for part in path.strip().strip("/").split("/")]
    if not parts or parts == [""]:
        raise ValueError("Empty box path")

    segments = []
    for part in parts:
        match = _SEGMENT_RE.match(part)
        if not match:
            raise ValueError(f"Invalid box path segment {part!r} in {path!r}")
        selector = match.group("selector")
        if selector is not None and selector != WILDCARD:
            selector = int(selector)
            if selector < 1:
                raise ValueError(f"Box path index must start at 1: {part!r}")
        segments.append(PathSegment(match.group("type").encode("latin-1"), selector))
    return BoxPath(tuple(segments))


@dataclass
class BoxMatch:
    """A located box and the chain of its ancestors, outermost first."""

    box: Box
    ancestors: list[Box] = field(default_factory=list)


def locate(root: list[Box], path: Union[BoxPath, str]) -> list[BoxMatch]:
    """
    Find the boxes addressed by ``path``, ordered by file offset.

    One path segment is matched per tree level; a leaf box cannot match a
    non-final segment.
    """
    if isinstance(path, str):
        path = parse_box_path(path)

    matches: list[BoxMatch] = []
    # Explicit stack of (siblings, segment index, ancestors) instead of parent pointers
    pending = [(root, 0, [])]
    while pending:
        siblings, depth, ancestors = pending.pop()
        segment = path.segments[depth]
        for box in segment.select(siblings):
            if depth == len(path.segments) - 1:
                matches.append(BoxMatch(box, ancestors))
            elif box.is_container:
                pending.append((box.children, depth + 1, ancestors + [box]))

    matches.sort(key=lambda m: m.box.offset)
    return matches


# =============================================================================
# Removal
# =============================================================================


def _shrink_box(buf: bytearray, box: Box, delta: int) -> None:
    """Decrement the size field of ``box`` (still at its original offset) by ``delta``."""
    raw_size = struct.unpack_from(">I", buf, box.offset)[0]
    if raw_size == 1:
        large_size = struct.unpack_from(">Q", buf, box.offset + 8)[0]
        struct.pack_into(">Q", buf, box.offset + 8, large_size - delta)
    elif raw_size != 0:  # size 0 extends to the end of the range and needs no rewrite
        struct.pack_into(">I", buf, box.offset, raw_size - delta)
    box.size -= delta


def remove_boxes(data: bytes, path: Union[BoxPath, str]) -> tuple[bytes, int]:
    """
    Remove every box addressed by ``path``.

    Matches are spliced out last-in-file first so earlier offsets stay valid,
    and each removed byte count is subtracted from all of the match's ancestors.

    Returns:
        (output_bytes, removed_count). When nothing matches the input bytes
        are returned unchanged with a count of 0.

    Raises:
        FormatError: if ``data`` is not a well-formed box sequence.
    """
    if isinstance(path, str):
        path = parse_box_path(path)

    root = parse_boxes(data)
    matches = locate(root, path)
    if not matches:
        return data, 0

    buf = bytearray(data)
    for match in sorted(matches, key=lambda m: m.box.offset, reverse=True):
        removed = match.box.size
        del buf[match.box.offset : match.box.end]
        for ancestor in reversed(match.ancestors):
            _shrink_box(buf, ancestor, removed)

    logger.debug("[box_editor] Removed %d %s box(es), %d -> %d bytes", len(matches), path, len(data), len(buf))
    return bytes(buf), len(matches)


def remove_box(input_path: Union[str, Path], output_path: Union[str, Path], path: Union[BoxPath, str]) -> bool:
    """
    Remove boxes from an MP4 file and write the result to ``output_path``.

    ``output_path`` may equal ``input_path``. The output is written to a
    temporary file first and renamed into place. When no box matches and the
    paths differ, the input is copied unchanged so the output always exists.

    Returns:
        True if at least one box was removed. A missing input file is logged
        and reported as False.

    Raises:
        FormatError: if the input is not a well-formed box sequence.
    """
    input_path = Path(input_path)
    output_path = Path(output_path)

    if not input_path.is_file():
        logger.warning("[box_editor] Input file not found, nothing removed: %s", input_path)
        return False

    data = input_path.read_bytes()
    try:
        output, removed = remove_boxes(data, path)
    except FormatError as e:
        logger.error("[box_editor] Cannot edit %s: %s", input_path, e)
        raise

    if removed:
        atomic_write(output_path, output)
    elif output_path.resolve() != input_path.resolve():
        atomic_write(output_path, data)

    if not removed:
        logger.info("[box_editor] No %s box in %s", path, input_path)
    return removed > 0
