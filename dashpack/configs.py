import os
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class ToolConfig(BaseModel):
    """Locations of the external Transcoder and Muxer executables"""

    ffmpeg_path: str = Field("ffmpeg", description="ffmpeg executable used for transcoding and preview images.")
    ffprobe_path: str = Field("ffprobe", description="ffprobe executable used to read input metadata.")
    mp4box_path: str = Field("MP4Box", description="GPAC MP4Box executable used for dashing and encryption.")

    def with_overrides(self, ffmpeg: str | None = None, mp4box: str | None = None) -> "ToolConfig":
        """
        Return a copy where the per-run tool paths replace the configured ones.
        """
        update = {}
        if ffmpeg:
            update["ffmpeg_path"] = ffmpeg
            # ffprobe ships next to ffmpeg
            folder, name = os.path.split(ffmpeg)
            if name.lower().startswith("ffmpeg"):
                update["ffprobe_path"] = os.path.join(folder, "ffprobe" + name[len("ffmpeg") :])
        if mp4box:
            update["mp4box_path"] = mp4box
        return self.model_copy(update=update)


class Settings(BaseSettings):
    log_level: str = "INFO"  # The logging level to use.
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"  # Format of every log record.
    tools: ToolConfig = Field(default_factory=ToolConfig)  # External tool locations.
    segment_duration: int = 6  # Default DASH segment duration in seconds (segdur=).
    gop_duration: int = 3  # Default GOP duration in seconds (gopdur=).
    default_fps: int = 25  # Frame rate assumed when the input cannot be probed.
    indexed_probe_window: int = 5  # video.N / subib.N / subob.N indices probed before a gap ends the list.
    codec_mode: Literal["h264", "h265"] = "h264"  # Video codec when mode= is not given.

    class Config:
        env_file = ".env"
        env_nested_delimiter = "__"
        extra = "ignore"


settings = Settings()
