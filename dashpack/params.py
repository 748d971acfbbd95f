"""
Run parameters: ``config=<file>`` properties plus ``key=value`` arguments,
parsed once into a typed DashJob.
"""

import logging
import re
from pathlib import Path
from typing import Iterator, Optional, Union

from Crypto.Random import get_random_bytes
from pydantic import ValidationError

from dashpack.configs import settings
from dashpack.schemas import (
    DashJob,
    DrmDescriptor,
    DrmSystemName,
    ImageSpec,
    RenditionKind,
    RenditionSpec,
    SubtitleMode,
    SubtitleSpec,
)

logger = logging.getLogger(__name__)

RANDOM_VALUE = "rng"
DISABLED_SUFFIX = "disable"

# Families that tolerate gaps inside the probe window (video.3 missing, video.4 present).
PROBED_FAMILIES = frozenset({"video", "subib", "subob"})

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigurationError(Exception):
    """Missing or malformed run parameter."""

    pass


_PROPERTY_WHITESPACE = " \t\f"
_PROPERTY_ESCAPE = re.compile(r"\\(u[0-9a-fA-F]{4}|.)")
_ESCAPED_CHARS = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}


def _unescape(text: str) -> str:
    def replace(match: re.Match) -> str:
        escaped = match.group(1)
        if len(escaped) == 5:
            return chr(int(escaped[1:], 16))
        return _ESCAPED_CHARS.get(escaped, escaped)

    return _PROPERTY_ESCAPE.sub(replace, text)


def _ends_with_escape(text: str) -> bool:
    # An odd run of trailing backslashes leaves the last one unescaped
    return (len(text) - len(text.rstrip("\\"))) % 2 == 1


def _split_property(line: str) -> tuple[str, str]:
    index = 0
    while index < len(line) and line[index] not in "=:" + _PROPERTY_WHITESPACE:
        index += 2 if line[index] == "\\" else 1
    key = line[:index]
    value = line[index:].lstrip(_PROPERTY_WHITESPACE)
    if value[:1] in ("=", ":"):
        value = value[1:].lstrip(_PROPERTY_WHITESPACE)
    trimmed = value.rstrip(_PROPERTY_WHITESPACE)
    if _ends_with_escape(trimmed):
        trimmed = value[: len(trimmed) + 1]
    return _unescape(key), _unescape(trimmed)


def load_properties(path: Union[str, Path]) -> dict[str, str]:
    """
    Read a Java-properties style file: ``key=value``, ``key: value`` or
    ``key value`` lines, ``#`` and ``!`` comments, an unescaped trailing
    backslash continues a line. Backslash escapes (``\\t``, ``\\n``,
    ``\\uXXXX``, ``\\\\``, ``\\:``...) are resolved in keys and values.
    """
    params = {}
    pending = ""
    for raw_line in Path(path).read_text(encoding="utf-8").splitlines():
        line = raw_line.lstrip(_PROPERTY_WHITESPACE)
        if not pending and (not line or line[0] in "#!"):
            continue
        line = pending + line
        pending = ""
        if _ends_with_escape(line):
            pending = line[:-1]
            continue
        if line:
            key, value = _split_property(line)
            params[key] = value
    if pending:
        key, value = _split_property(pending)
        params[key] = value
    return params


def parse_args(argv: list[str]) -> dict[str, str]:
    """
    ``key=value`` arguments; a ``config=<file>`` argument is loaded first and
    the command line overrides its values.
    """
    cli_params = {}
    for arg in argv:
        key, sep, value = arg.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"Invalid argument {arg!r}, expected key=value")
        cli_params[key.strip()] = value.strip()

    params = {}
    config_file = cli_params.get("config")
    if config_file:
        if not Path(config_file).is_file():
            raise ConfigurationError(f"Config file not found: {config_file}")
        params.update(load_properties(config_file))
    params.update(cli_params)
    return params


def get_bool(params: dict[str, str], key: str, default: bool) -> bool:
    value = params.get(key, "").strip().lower()
    if not value:
        return default
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{key} must be a boolean, got {value!r}")


def get_int(params: dict[str, str], key: str, default: int) -> int:
    value = params.get(key, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")


def iter_indexed(
    params: dict[str, str], family: str, probe_window: Optional[int] = None
) -> Iterator[tuple[int, str]]:
    """
    Yield ``(index, value)`` of ``<family>.1``, ``<family>.2``, ...

    Probed families skip missing indices up to the probe window before a gap
    ends the list; the other families end at their first gap.
    """
    window = probe_window if probe_window is not None else settings.indexed_probe_window
    probed = family in PROBED_FAMILIES
    index = 1
    while True:
        value = params.get(f"{family}.{index}", "").strip()
        if not value:
            if probed and index <= window:
                index += 1
                continue
            break
        yield index, value
        index += 1


def _fields(family: str, index: int, value: str, count: int) -> tuple[list[str], bool]:
    fields = value.split()
    enabled = not value.endswith(DISABLED_SUFFIX)
    if not enabled and fields[-1] == DISABLED_SUFFIX:
        fields = fields[:-1]
    if len(fields) < count:
        raise ConfigurationError(f"{family}.{index}={value!r} needs {count} values")
    return fields, enabled


def parse_video(params: dict[str, str], index: int, value: str, kind: RenditionKind) -> RenditionSpec:
    """``video.N=v1 640x360 512k`` with optional ``video[.N].profile`` / ``video[.N].level``."""
    (name, size, bitrate, *_), enabled = _fields("video", index, value, 3)
    profile = params.get(f"video.{index}.profile") or params.get("video.profile") or None
    level = params.get(f"video.{index}.level") or params.get("video.level") or None
    try:
        return RenditionSpec(
            kind=kind,
            name=name,
            size=size.lower(),
            bitrate=bitrate.lower(),
            profile=profile,
            level=level,
            enabled=enabled,
        )
    except ValidationError as e:
        raise ConfigurationError(f"video.{index}: {e}") from e


def parse_audio(index: int, value: str) -> RenditionSpec:
    """``audio.N=a1 48000 128k 2``"""
    (name, sample_rate, bitrate, channels, *_), enabled = _fields("audio", index, value, 4)
    try:
        return RenditionSpec(
            kind=RenditionKind.AUDIO_AAC,
            name=name,
            sample_rate=int(sample_rate),
            bitrate=bitrate.lower(),
            channels=int(channels),
            enabled=enabled,
        )
    except (ValueError, ValidationError) as e:
        raise ConfigurationError(f"audio.{index}: {e}") from e


def parse_subtitle(family: str, index: int, value: str) -> SubtitleSpec:
    """``subib.N=sub_fin fin sub_fin.xml`` (inband) or ``subob.N=...`` (outband)."""
    (rep_id, lang, path, *_), enabled = _fields(family, index, value, 3)
    mode = SubtitleMode.INBAND if family == "subib" else SubtitleMode.OUTBAND
    return SubtitleSpec(rep_id=rep_id, lang=lang, path=Path(path), mode=mode, enabled=enabled)


def _key_material(params: dict[str, str], key: str, size: int) -> Optional[str]:
    value = params.get(key, "").strip()
    if value.lower() == RANDOM_VALUE:
        value = get_random_bytes(size).hex()
        params[key] = value  # logged with the other drm.* values
    return value or None


def parse_drm(params: dict[str, str]) -> Optional[DrmDescriptor]:
    """
    DRM descriptor from ``drm.kid``, ``drm.key`` and ``drm.iv`` (hex or ``rng``),
    None when no key material was requested.

    Raises:
        ConfigurationError: when the key material is incomplete or malformed.
    """
    kid = _key_material(params, "drm.kid", 16)
    key = _key_material(params, "drm.key", 16)
    if kid is None and key is None:
        return None
    if kid is None or key is None:
        raise ConfigurationError("DRM needs both drm.kid and drm.key")

    iv = _key_material(params, "drm.iv", 8)
    if iv is None:
        iv = get_random_bytes(8).hex()
        params["drm.iv"] = iv

    systems = frozenset(name for name in DrmSystemName if get_bool(params, f"drm.{name.value}", True))
    try:
        return DrmDescriptor(
            kid=kid,
            key=key,
            iv=iv,
            playready_laurl=params.get("drm.playready.laurl") or None,
            clearkey_laurl=params.get("drm.clearkey.laurl") or None,
            systems=systems,
            cenc=get_bool(params, "drm.cenc", False),
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid DRM key material: {e}") from e


def load_job(params: dict[str, str]) -> DashJob:
    """
    Parse every parameter family into a DashJob.

    Invalid DRM material only disables the DRM branch, any other invalid
    parameter raises ConfigurationError.
    """
    input_value = params.get("input", "").strip()
    if not input_value:
        raise ConfigurationError("input= is required")
    output_value = params.get("output", "").strip().replace("\\", "/")
    if not output_value or output_value == "/":
        raise ConfigurationError(f"Invalid output value {output_value!r}")

    mode_value = params.get("mode", settings.codec_mode).strip().lower()
    mode = RenditionKind.VIDEO_H265 if mode_value == "h265" else RenditionKind.VIDEO_H264

    renditions = [parse_video(params, index, value, mode) for index, value in iter_indexed(params, "video")]
    renditions += [parse_audio(index, value) for index, value in iter_indexed(params, "audio")]

    images = []
    for index, value in iter_indexed(params, "image"):
        size = value.split()[0]
        images.append(ImageSpec(size=size.lower(), enabled=not value.endswith(DISABLED_SUFFIX)))

    try:
        drm = parse_drm(params)
    except ConfigurationError as e:
        logger.warning("DRM packaging skipped: %s", e)
        drm = None

    return DashJob(
        input=Path(input_value),
        output=Path(output_value),
        logfile=Path(params["logfile"]) if params.get("logfile") else None,
        mode=mode,
        gop_duration=get_int(params, "gopdur", settings.gop_duration),
        segment_duration=get_int(params, "segdur", settings.segment_duration),
        overlay=get_bool(params, "overlay", False),
        image_seconds=get_int(params, "image.seconds", -1),
        images=images,
        renditions=renditions,
        secondary_inputs=[Path(value) for _, value in iter_indexed(params, "input")],
        drm=drm,
        subtitles_inband=[parse_subtitle("subib", index, value) for index, value in iter_indexed(params, "subib")],
        subtitles_outband=[parse_subtitle("subob", index, value) for index, value in iter_indexed(params, "subob")],
        delete_old_files=get_bool(params, "deleteoldfiles", True),
        delete_temp_files=get_bool(params, "deletetempfiles", True),
        ffmpeg_path=params.get("tool.ffmpeg") or None,
        mp4box_path=params.get("tool.mp4box") or None,
    )
