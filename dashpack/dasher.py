"""
Dasher pipeline: transcode, dash, encrypt and post-process one input file.

Stages run sequentially in the output folder, each one consuming the files
written by the previous one. External process failures abort the run.
"""

import logging
from pathlib import Path
from typing import Optional

from dashpack.configs import settings
from dashpack.const import (
    DRM_FOLDER,
    ENCRYPTION_SPEC_FILE,
    INIT_NOPSSH_FILE,
    INIT_NOPSSH_TEMPLATE,
    INIT_SEGMENT_FILE,
    INIT_TEMPLATE,
    MANIFEST_CLEARKEY_FILE,
    MANIFEST_FILE,
    MANIFEST_NOPSSH_FILE,
    MANIFEST_SUBIB_FILE,
    MANIFEST_SUBOB_FILE,
    OLD_FILE_EXTENSIONS,
    TEMP_RENDITION_FILE,
)
from dashpack.drm.builder import DrmDescriptorBuilder
from dashpack.remuxer.box_editor import FormatError, remove_box
from dashpack.schemas import DashJob, DrmSystemName, RenditionKind, RenditionSpec
from dashpack.subtitles import insert_all
from dashpack.tools import MediaTools, execute_process, format_command
from dashpack.utils.file_utils import atomic_write, delete_file, delete_old_files
from dashpack.utils.mpd_utils import ManifestDocument

logger = logging.getLogger(__name__)

# Removed from every DRM init segment, breaks some HbbTV players
SENC_BOX_PATH = "moov/trak/senc"
PSSH_BOX_PATH = "moov/pssh[*]"


class Dasher:
    def __init__(self, job: DashJob, tools: Optional[MediaTools] = None):
        self.job = job
        self.tools = tools or MediaTools(settings.tools.with_overrides(job.ffmpeg_path, job.mp4box_path))
        self.output = Path(job.output)
        self.drm_output = job.drm_output
        self.input = Path(job.input).resolve()
        self.renditions: list[RenditionSpec] = list(job.renditions)
        self.manifests: list[Path] = []

    def _run(self, args: list[str], cwd: Path) -> str:
        return execute_process(args, cwd=cwd)

    def run(self) -> list[Path]:
        """
        Execute every stage.

        Returns:
            The manifests written, clear manifest first.

        Raises:
            ExternalProcessError: when the Transcoder or the Muxer fails.
        """
        logger.info("Start dashing input=%s output=%s", self.input, self.output.resolve())
        self.prepare_output()

        fps = self.tools.probe_frame_rate(self.input)
        logger.info("Input frame rate %d fps", fps)

        self.create_images()
        self.transcode_video(fps)
        self.transcode_audio()
        self.transcode_secondary_inputs()
        self.dash_clear()

        drm_created = False
        if self.job.drm is not None:
            self.package_drm()
            drm_created = True

        if self.job.delete_temp_files:
            self.delete_temp_files()

        self.insert_subtitles(drm_created)
        logger.info("Completed dashing, %d manifest(s) written", len(self.manifests))
        return self.manifests

    # =========================================================================
    # Stages
    # =========================================================================

    def prepare_output(self) -> None:
        self.output.mkdir(parents=True, exist_ok=True)
        if self.job.delete_old_files:
            count = delete_old_files(self.output, OLD_FILE_EXTENSIONS)
            logger.info("Deleted %d old file(s) from %s", count, self.output)
        else:
            delete_file(self.output / MANIFEST_FILE)

    def create_images(self) -> None:
        if self.job.image_seconds < 0:
            return
        for image in self.job.images:
            args = self.tools.image_args(self.input, self.job.image_seconds, image.size)
            if not image.enabled:
                logger.info("Image %s disabled, skipped: %s", image.size, format_command(args))
                continue
            self._run(args, self.output)

    def transcode_video(self, fps: int) -> None:
        for spec in self.renditions:
            if not spec.kind.is_video:
                continue
            args = self.tools.transcode_video_args(self.input, spec, fps, self.job.gop_duration, self.job.overlay)
            if not spec.enabled:
                logger.info("Rendition %s disabled, skipped: %s", spec.name, format_command(args))
                continue
            self._run(args, self.output)

    def transcode_audio(self) -> None:
        for spec in self.renditions:
            if spec.kind is not RenditionKind.AUDIO_AAC:
                continue
            args = self.tools.transcode_aac_args(self.input, spec)
            if not spec.enabled:
                logger.info("Rendition %s disabled, skipped: %s", spec.name, format_command(args))
                continue
            self._run(args, self.output)

    def transcode_secondary_inputs(self) -> list[RenditionSpec]:
        """Clone every enabled audio rendition as ``<name>-<n>`` for each ``input.N``."""
        audio = [spec for spec in self.renditions if spec.kind is RenditionKind.AUDIO_AAC and spec.enabled]
        clones = []
        for index, secondary in enumerate(self.job.secondary_inputs, start=1):
            for spec in audio:
                clone = spec.clone(str(index))
                self._run(self.tools.transcode_aac_args(Path(secondary).resolve(), clone), self.output)
                clones.append(clone)
        self.renditions.extend(clones)
        return clones

    def dash_clear(self) -> Path:
        self._run(self.tools.dash_args(self.renditions, self.job.segment_duration), self.output)
        manifest_path = self.output / MANIFEST_FILE
        manifest = ManifestDocument.load(manifest_path)
        manifest.fix_content(self.job.mode)
        manifest.save(manifest_path)
        self.manifests.append(manifest_path)
        return manifest_path

    def package_drm(self) -> None:
        descriptor = self.job.drm
        builder = DrmDescriptorBuilder(descriptor)
        logger.info(
            "drm.kid=%s drm.iv=%s drm.playready.laurl=%s",
            descriptor.kid_hex,
            descriptor.iv_hex,
            descriptor.playready_laurl,
        )

        self.drm_output.mkdir(parents=True, exist_ok=True)
        if self.job.delete_old_files:
            delete_old_files(self.drm_output, OLD_FILE_EXTENSIONS)
        else:
            delete_file(self.drm_output / MANIFEST_FILE)

        spec_file = self.output / ENCRYPTION_SPEC_FILE
        encryption_spec = builder.build_encryption_spec()
        logger.debug("Encryption spec:\n%s", encryption_spec)
        atomic_write(spec_file, encryption_spec)

        enabled = [spec for spec in self.renditions if spec.enabled]
        for spec in enabled:
            self._run(self.tools.crypt_args(Path(ENCRYPTION_SPEC_FILE), Path(DRM_FOLDER), spec), self.output)
        self._run(self.tools.dash_args(self.renditions, self.job.segment_duration), self.drm_output)

        for spec in enabled:
            self.strip_init_segment(spec)

        self.write_drm_manifests(builder)

    def strip_init_segment(self, spec: RenditionSpec) -> None:
        """
        Remove ``moov/trak/senc`` from the DRM init segment in place and write
        a copy without any ``pssh`` box for the nopssh manifest.
        """
        init_file = self.drm_output / INIT_SEGMENT_FILE.format(name=spec.name)
        nopssh_file = self.drm_output / INIT_NOPSSH_FILE.format(name=spec.name)
        try:
            if remove_box(init_file, init_file, SENC_BOX_PATH):
                logger.info("Removed %s from %s", SENC_BOX_PATH, init_file)
            if remove_box(init_file, nopssh_file, PSSH_BOX_PATH):
                logger.info("Removed %s from %s to %s", PSSH_BOX_PATH, init_file, nopssh_file)
        except FormatError as e:
            logger.error("Init segment of %s left unchanged: %s", spec.name, e)

    def write_drm_manifests(self, builder: DrmDescriptorBuilder) -> None:
        manifest_path = self.drm_output / MANIFEST_FILE
        manifest = ManifestDocument.load(manifest_path)
        manifest.fix_content(self.job.mode)
        manifest.add_namespaces()
        for name, fragment in builder.iter_signalling():
            manifest.add_content_protection_element(fragment)
            logger.info("Added %s ContentProtection", name.value)
        if not builder.descriptor.cenc:
            manifest.remove_content_protection_element("cenc")
        manifest.save(manifest_path)
        self.manifests.append(manifest_path)

        # Some players ignore ClearKey when another known DRM is signalled
        clearkey = builder.build_clearkey_signalling()
        if clearkey:
            manifest.add_content_protection_element(clearkey)
            for name in (DrmSystemName.PLAYREADY, DrmSystemName.WIDEVINE, DrmSystemName.MARLIN):
                manifest.remove_content_protection_element(name.value)
            self.manifests.append(manifest.save(self.drm_output / MANIFEST_CLEARKEY_FILE))

        nopssh = ManifestDocument.load(manifest_path)
        count = nopssh.rewrite_initialization(INIT_TEMPLATE, INIT_NOPSSH_TEMPLATE)
        logger.info("Pointed %d SegmentTemplate(s) at nopssh init segments", count)
        self.manifests.append(nopssh.save(self.drm_output / MANIFEST_NOPSSH_FILE))

    def delete_temp_files(self) -> None:
        delete_file(self.output / ENCRYPTION_SPEC_FILE)
        for spec in self.renditions:
            temp_name = TEMP_RENDITION_FILE.format(name=spec.name)
            delete_file(self.drm_output / temp_name)
            delete_file(self.output / temp_name)

    def insert_subtitles(self, drm_created: bool) -> None:
        """
        Subtitle manifests of the clear presentation write the segment files;
        the DRM manifests reference the same files from the parent folder.
        """
        targets = [(self.output, True, "")]
        if drm_created:
            targets.append((self.drm_output, False, "../"))

        for folder, write_files, url_prefix in targets:
            for subtitles, output_name in (
                (self.job.subtitles_inband, MANIFEST_SUBIB_FILE),
                (self.job.subtitles_outband, MANIFEST_SUBOB_FILE),
            ):
                if not subtitles:
                    continue
                inserted = insert_all(
                    subtitles,
                    folder / MANIFEST_FILE,
                    folder / output_name,
                    split_segments=write_files,
                    copy_file=write_files,
                    segment_duration=self.job.segment_duration,
                    url_prefix=url_prefix,
                )
                if inserted:
                    self.manifests.append(folder / output_name)
