"""
Argument builders and process runner for the external Transcoder (ffmpeg)
and Muxer (GPAC MP4Box).
"""

import json
import logging
import shlex
import subprocess
from fractions import Fraction
from pathlib import Path
from typing import Iterable, Optional, Union

from dashpack.configs import ToolConfig, settings
from dashpack.const import MANIFEST_FILE, TEMP_RENDITION_FILE
from dashpack.schemas import RenditionKind, RenditionSpec

logger = logging.getLogger(__name__)

IMAGE_FILE = "image_{size}.jpg"


class ExternalProcessError(Exception):
    """An external tool could not be started or exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: Optional[int], output: str = ""):
        self.args_list = args
        self.returncode = returncode
        self.output = output
        super().__init__(f"{args[0]} exited with status {returncode}: {output.strip()[-500:]}")


def format_command(args: Iterable[str]) -> str:
    return " ".join(shlex.quote(str(arg)) for arg in args)


def execute_process(args: list[str], cwd: Union[str, Path, None] = None) -> str:
    """
    Run an external tool to completion.

    Returns:
        Combined stdout and stderr of the process.

    Raises:
        ExternalProcessError: if the executable is missing or exits non-zero.
    """
    args = [str(arg) for arg in args]
    logger.info("Run %s", format_command(args))
    try:
        result = subprocess.run(args, cwd=cwd, capture_output=True, text=True, errors="replace")
    except OSError as e:
        raise ExternalProcessError(args, None, str(e)) from e

    output = (result.stdout or "") + (result.stderr or "")
    if result.returncode != 0:
        raise ExternalProcessError(args, result.returncode, output)
    if output.strip():
        logger.debug("%s output:\n%s", Path(args[0]).name, output.rstrip())
    return output


class MediaTools:
    def __init__(self, tools: Optional[ToolConfig] = None):
        self.tools = tools or settings.tools

    # =========================================================================
    # ffprobe
    # =========================================================================

    def read_metadata(self, input_file: Path) -> dict:
        """Stream and format metadata of ``input_file`` as reported by ffprobe."""
        args = [
            self.tools.ffprobe_path,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(input_file),
        ]
        output = execute_process(args)
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise ExternalProcessError(args, 0, f"Invalid ffprobe output: {e}") from e

    def probe_frame_rate(self, input_file: Path, default: Optional[int] = None) -> int:
        """Integer frame rate of the first video stream, ``default`` when unknown."""
        default = default if default is not None else settings.default_fps
        try:
            metadata = self.read_metadata(input_file)
        except ExternalProcessError as e:
            logger.warning("Could not probe %s, assuming %d fps: %s", input_file, default, e)
            return default

        for stream in metadata.get("streams", []):
            if stream.get("codec_type") != "video":
                continue
            rate = stream.get("avg_frame_rate") or stream.get("r_frame_rate") or "0/0"
            try:
                fps = Fraction(rate)
            except (ValueError, ZeroDivisionError):
                continue
            if fps > 0:
                return round(fps)
        logger.warning("No video frame rate in %s, assuming %d fps", input_file, default)
        return default

    # =========================================================================
    # ffmpeg
    # =========================================================================

    @staticmethod
    def _overlay_filter(spec: RenditionSpec) -> str:
        text = f"{spec.name} {spec.size} {spec.bitrate}"
        return (
            "drawtext=text='%{pts\\:hms} " + text + "':x=20:y=20:fontsize=(h/20):"
            "fontcolor=white:box=1:boxcolor=black@0.6"
        )

    def _video_args(
        self, input_file: Path, spec: RenditionSpec, fps: int, gop_duration: int, overlay: bool
    ) -> tuple[list[str], int]:
        gop = fps * gop_duration
        args = [
            self.tools.ffmpeg_path,
            "-hide_banner",
            "-nostats",
            "-y",
            "-i",
            str(input_file),
            "-an",
            "-sn",
            "-s",
            spec.size,
            "-r",
            str(fps),
            "-b:v",
            spec.bitrate,
            "-maxrate",
            spec.bitrate,
            "-bufsize",
            f"{spec.bitrate_bps * 2}",
            "-pix_fmt",
            "yuv420p",
        ]
        if overlay:
            args += ["-vf", self._overlay_filter(spec)]
        return args, gop

    def transcode_h264_args(
        self, input_file: Path, spec: RenditionSpec, fps: int, gop_duration: int, overlay: bool = False
    ) -> list[str]:
        args, gop = self._video_args(input_file, spec, fps, gop_duration, overlay)
        args += ["-c:v", "libx264", "-preset", "medium"]
        if spec.profile:
            args += ["-profile:v", spec.profile]
        if spec.level:
            args += ["-level:v", spec.level]
        # Closed GOP of a fixed length so segments start at a keyframe
        args += ["-g", str(gop), "-keyint_min", str(gop), "-sc_threshold", "0", "-flags", "+cgop"]
        args.append(TEMP_RENDITION_FILE.format(name=spec.name))
        return args

    def transcode_h265_args(
        self, input_file: Path, spec: RenditionSpec, fps: int, gop_duration: int, overlay: bool = False
    ) -> list[str]:
        args, gop = self._video_args(input_file, spec, fps, gop_duration, overlay)
        args += ["-c:v", "libx265", "-preset", "medium"]
        if spec.profile:
            args += ["-profile:v", spec.profile]
        x265_params = f"keyint={gop}:min-keyint={gop}:scenecut=0:open-gop=0"
        if spec.level:
            x265_params += f":level-idc={spec.level}"
        args += ["-x265-params", x265_params, "-tag:v", "hvc1"]
        args.append(TEMP_RENDITION_FILE.format(name=spec.name))
        return args

    def transcode_video_args(
        self, input_file: Path, spec: RenditionSpec, fps: int, gop_duration: int, overlay: bool = False
    ) -> list[str]:
        if spec.kind is RenditionKind.VIDEO_H265:
            return self.transcode_h265_args(input_file, spec, fps, gop_duration, overlay)
        return self.transcode_h264_args(input_file, spec, fps, gop_duration, overlay)

    def transcode_aac_args(self, input_file: Path, spec: RenditionSpec) -> list[str]:
        return [
            self.tools.ffmpeg_path,
            "-hide_banner",
            "-nostats",
            "-y",
            "-i",
            str(input_file),
            "-vn",
            "-sn",
            "-c:a",
            "aac",
            "-b:a",
            spec.bitrate,
            "-ar",
            str(spec.sample_rate),
            "-ac",
            str(spec.channels),
            TEMP_RENDITION_FILE.format(name=spec.name),
        ]

    def image_args(self, input_file: Path, seconds: int, size: str) -> list[str]:
        return [
            self.tools.ffmpeg_path,
            "-hide_banner",
            "-nostats",
            "-y",
            "-ss",
            str(seconds),
            "-i",
            str(input_file),
            "-frames:v",
            "1",
            "-s",
            size,
            IMAGE_FILE.format(size=size),
        ]

    # =========================================================================
    # MP4Box
    # =========================================================================

    def dash_args(self, specs: Iterable[RenditionSpec], segment_duration: int) -> list[str]:
        """
        Segment every enabled ``temp-<name>.mp4`` into ``<name>_<n>.m4s`` with
        ``<name>_i.mp4`` init segments and a live profile ``manifest.mpd``.
        """
        duration_ms = str(segment_duration * 1000)
        args = [
            self.tools.mp4box_path,
            "-dash",
            duration_ms,
            "-frag",
            duration_ms,
            "-rap",
            "-frag-rap",
            "-profile",
            "live",
            "-bs-switching",
            "no",
            "-segment-name",
            "$RepresentationID$_$Number$$Init=i$",  # init segment: <name>_i.mp4
            "-out",
            MANIFEST_FILE,
        ]
        for spec in specs:
            if not spec.enabled:
                continue
            media = "video" if spec.kind.is_video else "audio"
            args.append(f"{TEMP_RENDITION_FILE.format(name=spec.name)}#{media}:id={spec.name}")
        return args

    def crypt_args(self, spec_file: Path, output_folder: Path, spec: RenditionSpec) -> list[str]:
        temp_name = TEMP_RENDITION_FILE.format(name=spec.name)
        return [
            self.tools.mp4box_path,
            "-crypt",
            str(spec_file),
            "-out",
            str(Path(output_folder) / temp_name),
            temp_name,
        ]
