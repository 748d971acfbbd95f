"""
Pure Python MP4 box builder for fragmented subtitle tracks and DRM headers.

Init segment:   ftyp | moov (mvhd + trak[stpp] + mvex/trex)
Media segments: styp | moof (mfhd + traf[tfhd + tfdt + trun]) | mdat

The moov has empty sample tables (stts/stsc/stsz/stco with 0 entries) and an
mvex box with a trex entry signaling fragmented mode. Also builds the 'pssh'
boxes carried in DRM signalling.
"""

import logging
import struct
import uuid
from dataclasses import dataclass

logger = logging.getLogger(__name__)

TTML_NAMESPACE = "http://www.w3.org/ns/ttml"

# =============================================================================
# Box building primitives
# =============================================================================


def build_box(box_type: bytes, payload: bytes) -> bytes:
    """Build a standard MP4 box: [4-byte size][4-byte type][payload]."""
    size = 8 + len(payload)
    return struct.pack(">I", size) + box_type + payload


def build_full_box(box_type: bytes, version: int, flags: int, payload: bytes) -> bytes:
    """Build a full box with version and flags."""
    inner = struct.pack(">I", (version << 24) | (flags & 0xFFFFFF)) + payload
    return build_box(box_type, inner)


# =============================================================================
# pssh
# =============================================================================


def build_pssh_box(system_id: str, data: bytes, key_ids: list[bytes] | None = None) -> bytes:
    """
    Build a Protection System Specific Header box.

    Version 1 is used when ``key_ids`` are given, version 0 otherwise.
    """
    payload = bytearray(uuid.UUID(system_id).bytes)
    version = 0
    if key_ids:
        version = 1
        payload.extend(struct.pack(">I", len(key_ids)))
        for kid in key_ids:
            payload.extend(kid)
    payload.extend(struct.pack(">I", len(data)))
    payload.extend(data)
    return build_full_box(b"pssh", version, 0, bytes(payload))


# =============================================================================
# moov box and children
# =============================================================================


def _pack_language(lang: str) -> int:
    """Pack an ISO-639-2/T code into the 15-bit mdhd language field."""
    if len(lang) != 3 or not lang.isalpha():
        lang = "und"
    lang = lang.lower()
    return ((ord(lang[0]) - 0x60) << 10) | ((ord(lang[1]) - 0x60) << 5) | (ord(lang[2]) - 0x60)


def build_ftyp(major_brand: bytes = b"iso6", compatible: tuple[bytes, ...] = (b"iso6", b"dash", b"msdh")) -> bytes:
    payload = major_brand
    payload += struct.pack(">I", 0)  # minor version
    payload += b"".join(compatible)
    return build_box(b"ftyp", payload)


def build_styp() -> bytes:
    """Segment Type box placed at the start of every media segment."""
    payload = b"msdh" + struct.pack(">I", 0) + b"msdh" + b"msix"
    return build_box(b"styp", payload)


def build_mvhd(timescale: int, duration: int, next_track_id: int = 2) -> bytes:
    """Build Movie Header box (mvhd), version 0."""
    payload = bytearray()
    payload.extend(struct.pack(">I", 0))  # creation_time
    payload.extend(struct.pack(">I", 0))  # modification_time
    payload.extend(struct.pack(">I", timescale))
    payload.extend(struct.pack(">I", duration))
    payload.extend(struct.pack(">I", 0x00010000))  # rate = 1.0
    payload.extend(struct.pack(">H", 0x0100))  # volume = 1.0
    payload.extend(b"\x00" * 10)  # reserved
    # Unity matrix (3x3, each 4 bytes, 9 values = 36 bytes)
    payload.extend(struct.pack(">9I", 0x00010000, 0, 0, 0, 0x00010000, 0, 0, 0, 0x40000000))
    payload.extend(b"\x00" * 24)  # pre_defined
    payload.extend(struct.pack(">I", next_track_id))
    return build_full_box(b"mvhd", 0, 0, bytes(payload))


def build_tkhd(track_id: int, duration: int) -> bytes:
    """Build Track Header box (tkhd), version 0, for a non-visual track."""
    flags = 0x000003  # track_enabled | track_in_movie
    payload = bytearray()
    payload.extend(struct.pack(">I", 0))  # creation_time
    payload.extend(struct.pack(">I", 0))  # modification_time
    payload.extend(struct.pack(">I", track_id))
    payload.extend(b"\x00" * 4)  # reserved
    payload.extend(struct.pack(">I", duration))
    payload.extend(b"\x00" * 8)  # reserved
    payload.extend(struct.pack(">H", 0))  # layer
    payload.extend(struct.pack(">H", 0))  # alternate_group
    payload.extend(struct.pack(">H", 0))  # volume
    payload.extend(b"\x00" * 2)  # reserved
    payload.extend(struct.pack(">9I", 0x00010000, 0, 0, 0, 0x00010000, 0, 0, 0, 0x40000000))
    payload.extend(struct.pack(">II", 0, 0))  # width, height
    return build_full_box(b"tkhd", 0, flags, bytes(payload))


def build_mdhd(timescale: int, duration: int, lang: str = "und") -> bytes:
    """Build Media Header box (mdhd), version 0."""
    payload = bytearray()
    payload.extend(struct.pack(">I", 0))  # creation_time
    payload.extend(struct.pack(">I", 0))  # modification_time
    payload.extend(struct.pack(">I", timescale))
    payload.extend(struct.pack(">I", duration))
    payload.extend(struct.pack(">H", _pack_language(lang)))
    payload.extend(struct.pack(">H", 0))  # pre_defined
    return build_full_box(b"mdhd", 0, 0, bytes(payload))


def build_hdlr(handler_type: bytes, name: str) -> bytes:
    """Build Handler Reference box (hdlr)."""
    payload = bytearray()
    payload.extend(b"\x00" * 4)  # pre_defined
    payload.extend(handler_type)  # handler_type (4 bytes)
    payload.extend(b"\x00" * 12)  # reserved
    payload.extend(name.encode("utf-8") + b"\x00")
    return build_full_box(b"hdlr", 0, 0, bytes(payload))


def build_dinf() -> bytes:
    """Build Data Information box (dinf) with a self-contained URL entry."""
    url_box = build_full_box(b"url ", 0, 1, b"")  # flags=1 = self-contained
    dref = build_full_box(b"dref", 0, 0, struct.pack(">I", 1) + url_box)
    return build_box(b"dinf", dref)


def build_stsd_stpp(namespace: str = TTML_NAMESPACE, schema_location: str = "", mime_types: str = "") -> bytes:
    """Build Sample Description box (stsd) with one XMLSubtitleSampleEntry."""
    entry = bytearray()
    entry.extend(b"\x00" * 6)  # reserved
    entry.extend(struct.pack(">H", 1))  # data_reference_index
    for text in (namespace, schema_location, mime_types):
        entry.extend(text.encode("utf-8") + b"\x00")
    stpp = build_box(b"stpp", bytes(entry))
    return build_full_box(b"stsd", 0, 0, struct.pack(">I", 1) + stpp)


def _build_empty_stbl(stsd: bytes) -> bytes:
    """Build an stbl with empty sample tables (for fMP4 init segment)."""
    children = bytearray()
    children.extend(stsd)
    children.extend(build_full_box(b"stts", 0, 0, struct.pack(">I", 0)))
    children.extend(build_full_box(b"stsc", 0, 0, struct.pack(">I", 0)))
    children.extend(build_full_box(b"stsz", 0, 0, struct.pack(">II", 0, 0)))
    children.extend(build_full_box(b"stco", 0, 0, struct.pack(">I", 0)))
    return build_box(b"stbl", bytes(children))


def build_subtitle_init_segment(track_id: int, timescale: int, lang: str, duration: int = 0) -> bytes:
    """
    Build an fMP4 initialization segment (ftyp + moov) for a TTML (stpp) track.

    Args:
        track_id: Track ID written to tkhd, trex and every tfhd.
        timescale: Media timescale, the manifest SegmentTemplate timescale.
        lang: ISO-639-2 language code for mdhd.
        duration: Total duration in timescale units (0 = unknown).

    Returns:
        Complete init segment bytes.
    """
    sthd = build_full_box(b"sthd", 0, 0, b"")  # Subtitle media header
    stbl = _build_empty_stbl(build_stsd_stpp())
    minf = build_box(b"minf", sthd + build_dinf() + stbl)
    mdia = build_box(b"mdia", build_mdhd(timescale, duration, lang) + build_hdlr(b"subt", "SubtitleHandler") + minf)
    trak = build_box(b"trak", build_tkhd(track_id, duration) + mdia)

    trex = build_full_box(
        b"trex",
        0,
        0,
        struct.pack(
            ">IIIII",
            track_id,
            1,  # default_sample_description_index
            0,  # default_sample_duration
            0,  # default_sample_size
            0x02000000,  # default_sample_flags: every subtitle sample is a sync sample
        ),
    )
    mvex = build_box(b"mvex", trex)
    moov = build_box(b"moov", build_mvhd(timescale, duration, next_track_id=track_id + 1) + trak + mvex)
    return build_ftyp() + moov


@dataclass
class FragmentSample:
    """A single sample to be written into an fMP4 fragment."""

    data: bytes
    duration: int  # In track timescale

    @property
    def size(self) -> int:
        return len(self.data)


def build_fragment(sequence_number: int, track_id: int, base_decode_time: int, sample: FragmentSample) -> bytes:
    """
    Build an fMP4 media segment (styp + moof + mdat) holding one sample.

    Args:
        sequence_number: Fragment sequence number (1-based, incrementing).
        track_id: Track ID matching the init segment.
        base_decode_time: Decode time of the sample in track timescale.
        sample: The sample, a complete TTML document for subtitle tracks.
    """
    # trun flags: data_offset + sample_duration + sample_size
    trun_flags = 0x000001 | 0x000100 | 0x000200

    def _moof(data_offset: int) -> bytes:
        trun_payload = struct.pack(">Ii", 1, data_offset) + struct.pack(">II", sample.duration, sample.size)
        trun = build_full_box(b"trun", 0, trun_flags, trun_payload)
        tfdt = build_full_box(b"tfdt", 1, 0, struct.pack(">Q", base_decode_time))
        tfhd = build_full_box(b"tfhd", 0, 0x020000, struct.pack(">I", track_id))  # default_base_is_moof
        traf = build_box(b"traf", tfhd + tfdt + trun)
        mfhd = build_full_box(b"mfhd", 0, 0, struct.pack(">I", sequence_number))
        return build_box(b"moof", mfhd + traf)

    # data_offset: from moof start to the mdat payload, mdat header is 8 bytes
    moof = _moof(0)
    moof = _moof(len(moof) + 8)

    return build_styp() + moof + build_box(b"mdat", sample.data)
