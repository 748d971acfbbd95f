import uuid
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dashpack.const import DRM_FOLDER


class RenditionKind(str, Enum):
    VIDEO_H264 = "video-h264"
    VIDEO_H265 = "video-h265"
    AUDIO_AAC = "audio-aac"

    @property
    def is_video(self) -> bool:
        return self is not RenditionKind.AUDIO_AAC


class RenditionSpec(BaseModel):
    """One output rendition, e.g. ``v1 640x360 512k`` or ``a1 48000 128k 2``."""

    model_config = ConfigDict(frozen=True)

    kind: RenditionKind
    name: str = Field(..., description="Identifier used in file names and as the Representation id.")
    size: Optional[str] = Field(None, description="Video frame size, WIDTHxHEIGHT.")
    bitrate: str = Field(..., description="Target bitrate in ffmpeg notation, e.g. 512k.")
    profile: Optional[str] = Field(None, description="Video codec profile.")
    level: Optional[str] = Field(None, description="Video codec level.")
    sample_rate: Optional[int] = Field(None, description="Audio sample rate in Hz.")
    channels: Optional[int] = Field(None, description="Audio channel count.")
    enabled: bool = True

    @property
    def bitrate_bps(self) -> int:
        value = self.bitrate.lower()
        if value.endswith("k"):
            return int(float(value[:-1]) * 1000)
        if value.endswith("m"):
            return int(float(value[:-1]) * 1000000)
        return int(value)

    def clone(self, suffix: str) -> "RenditionSpec":
        """Copy of this rendition renamed to ``<name>-<suffix>``."""
        return self.model_copy(update={"name": f"{self.name}-{suffix}"})


class SubtitleMode(str, Enum):
    INBAND = "inband"
    OUTBAND = "outband"


class SubtitleSpec(BaseModel):
    """A subtitle track, e.g. ``sub_fin fin sub_fin.xml``."""

    model_config = ConfigDict(frozen=True)

    rep_id: str
    lang: str
    path: Path
    mode: SubtitleMode = SubtitleMode.INBAND
    enabled: bool = True


class ImageSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    size: str
    enabled: bool = True


class DrmSystemName(str, Enum):
    PLAYREADY = "playready"
    WIDEVINE = "widevine"
    MARLIN = "marlin"
    CLEARKEY = "clearkey"


def _parse_hex(value, field_name: str, lengths: tuple[int, ...]) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        text = str(value).strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        text = text.replace("-", "")
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise ValueError(f"{field_name} is not a hex string: {value!r}")
    if len(raw) not in lengths:
        raise ValueError(f"{field_name} must be {' or '.join(str(n) for n in lengths)} bytes, got {len(raw)}")
    return raw


class DrmDescriptor(BaseModel):
    """
    Key material and per-system metadata for one packaging run.
    """

    model_config = ConfigDict(frozen=True)

    kid: bytes = Field(..., description="16 byte key id.")
    key: bytes = Field(..., description="16 byte content key.")
    iv: bytes = Field(..., description="8 or 16 byte initialization vector.")
    playready_laurl: Optional[str] = None
    clearkey_laurl: Optional[str] = None
    systems: frozenset[DrmSystemName] = Field(default_factory=lambda: frozenset(DrmSystemName))
    cenc: bool = False  # keep the generic MPEG-CENC <ContentProtection> element

    @field_validator("kid", "key", mode="before")
    @classmethod
    def _check_key_material(cls, value, info):
        return _parse_hex(value, info.field_name, (16,))

    @field_validator("iv", mode="before")
    @classmethod
    def _check_iv(cls, value, info):
        return _parse_hex(value, info.field_name, (8, 16))

    @property
    def kid_hex(self) -> str:
        return self.kid.hex()

    @property
    def key_hex(self) -> str:
        return self.key.hex()

    @property
    def iv_hex(self) -> str:
        return self.iv.hex()

    @property
    def kid_uuid(self) -> str:
        """Key id in the 8-4-4-4-12 form used by ``cenc:default_KID``."""
        return str(uuid.UUID(bytes=self.kid))

    def is_enabled(self, system: DrmSystemName) -> bool:
        return system in self.systems


class DashJob(BaseModel):
    """Fully parsed parameters of one dashing run."""

    input: Path
    output: Path
    logfile: Optional[Path] = None
    mode: RenditionKind = RenditionKind.VIDEO_H264
    gop_duration: int = 3
    segment_duration: int = 6
    overlay: bool = False
    image_seconds: int = -1
    images: list[ImageSpec] = Field(default_factory=list)
    renditions: list[RenditionSpec] = Field(default_factory=list)
    secondary_inputs: list[Path] = Field(default_factory=list)
    drm: Optional[DrmDescriptor] = None
    subtitles_inband: list[SubtitleSpec] = Field(default_factory=list)
    subtitles_outband: list[SubtitleSpec] = Field(default_factory=list)
    delete_old_files: bool = True
    delete_temp_files: bool = True
    ffmpeg_path: Optional[str] = None
    mp4box_path: Optional[str] = None

    @property
    def drm_output(self) -> Path:
        return self.output / DRM_FOLDER
