import struct
from pathlib import Path

import pytest

from dashpack import dasher as dasher_module
from dashpack.const import (
    CLEARKEY_SYSTEM_ID,
    MARLIN_SYSTEM_ID,
    PLAYREADY_SYSTEM_ID,
    WIDEVINE_SYSTEM_ID,
)
from dashpack.dasher import Dasher
from dashpack.params import load_job
from dashpack.remuxer.box_editor import locate, parse_boxes
from dashpack.remuxer.mp4_muxer import build_box, build_ftyp, build_full_box, build_pssh_box
from dashpack.tools import ExternalProcessError, MediaTools
from dashpack.utils.mpd_utils import ManifestDocument

from conftest import KEY_HEX, KID_HEX, SAMPLE_DRM_MPD, SAMPLE_MPD, SAMPLE_TTML


def _init_segment(encrypted: bool) -> bytes:
    trak_children = build_full_box(b"tkhd", 0, 3, b"\x00" * 80)
    if encrypted:
        trak_children += build_full_box(b"senc", 0, 0, struct.pack(">I", 0))
    moov_children = build_full_box(b"mvhd", 0, 0, b"\x00" * 96) + build_box(b"trak", trak_children)
    if encrypted:
        moov_children += build_pssh_box(PLAYREADY_SYSTEM_ID, b"pro") + build_pssh_box(WIDEVINE_SYSTEM_ID, b"wv")
    return build_ftyp() + build_box(b"moov", moov_children)


class FakeTools:
    """Stands in for ffmpeg and MP4Box, writing the files each call would produce."""

    def __init__(self, fail_on: str = None):
        self.calls: list[tuple[list[str], Path]] = []
        self.fail_on = fail_on

    def __call__(self, args, cwd=None):
        args = [str(arg) for arg in args]
        cwd = Path(cwd)
        self.calls.append((args, cwd))
        if self.fail_on and self.fail_on in args:
            raise ExternalProcessError(args, 1, "Error: simulated failure")

        if Path(args[0]).name == "ffmpeg":
            (cwd / args[-1]).write_bytes(b"media")
        elif "-crypt" in args:
            output = cwd / args[args.index("-out") + 1]
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(b"encrypted")
        elif "-dash" in args:
            encrypted = cwd.name == "drm"
            for arg in args:
                if "#" in arg:
                    name = arg.split("id=")[1]
                    (cwd / f"{name}_i.mp4").write_bytes(_init_segment(encrypted))
            (cwd / "manifest.mpd").write_text(SAMPLE_DRM_MPD if encrypted else SAMPLE_MPD, encoding="utf-8")
        return ""

    def commands(self, flag: str) -> list[tuple[list[str], Path]]:
        return [(args, cwd) for args, cwd in self.calls if flag in args]


@pytest.fixture
def fake_tools(monkeypatch):
    fake = FakeTools()
    monkeypatch.setattr(dasher_module, "execute_process", fake)
    monkeypatch.setattr(MediaTools, "probe_frame_rate", lambda self, input_file, default=None: 25)
    return fake


@pytest.fixture
def job_params(tmp_path):
    def _make(**extra) -> dict[str, str]:
        params = {
            "input": str(tmp_path / "source.mp4"),
            "output": str(tmp_path / "out"),
            "video.1": "v1 640x360 512k",
            "video.2": "v2 1280x720 1500k",
            "audio.1": "a1 48000 128k 2",
        }
        params.update(extra)
        return params

    return _make


def _drm_params(**extra) -> dict[str, str]:
    params = {"drm.kid": KID_HEX, "drm.key": KEY_HEX, "drm.clearkey.laurl": "https://example.com/clearkey"}
    params.update(extra)
    return params


def _schemes(path: Path) -> list[list[str]]:
    return ManifestDocument.load(path).content_protection_schemes()


def test_clear_run(fake_tools, job_params, tmp_path):
    output = tmp_path / "out"
    output.mkdir()
    (output / "stale_7.m4s").write_bytes(b"old")

    manifests = Dasher(load_job(job_params())).run()

    assert manifests == [output / "manifest.mpd"]
    assert not (output / "stale_7.m4s").exists()
    assert not list(output.glob("temp-*.mp4"))
    assert not (output / "drm").exists()

    manifest = ManifestDocument.load(output / "manifest.mpd")
    codecs = [rep["@codecs"] for a in manifest.adaptation_sets() for rep in manifest.representations(a)]
    assert codecs == ["avc1.4D401E", "avc1.4D401F", "mp4a.40.2"]

    (dash_args, cwd), = fake_tools.commands("-dash")
    assert cwd == output
    assert dash_args[-3:] == ["temp-v1.mp4#video:id=v1", "temp-v2.mp4#video:id=v2", "temp-a1.mp4#audio:id=a1"]
    ffmpeg_outputs = [args[-1] for args, _ in fake_tools.calls if Path(args[0]).name == "ffmpeg"]
    assert ffmpeg_outputs == ["temp-v1.mp4", "temp-v2.mp4", "temp-a1.mp4"]


def test_disabled_rendition_is_not_transcoded_or_dashed(fake_tools, job_params):
    Dasher(load_job(job_params(**{"video.2": "v2 1280x720 1500k disable"}))).run()
    ffmpeg_outputs = [args[-1] for args, _ in fake_tools.calls if Path(args[0]).name == "ffmpeg"]
    assert ffmpeg_outputs == ["temp-v1.mp4", "temp-a1.mp4"]
    (dash_args, _), = fake_tools.commands("-dash")
    assert not any("id=v2" in arg for arg in dash_args)


def test_secondary_input_clones_audio(fake_tools, job_params, tmp_path):
    Dasher(load_job(job_params(**{"input.1": str(tmp_path / "commentary.mp4")}))).run()
    (dash_args, _), = fake_tools.commands("-dash")
    assert dash_args[-1] == "temp-a1-1.mp4#audio:id=a1-1"


def test_drm_run_writes_every_manifest(fake_tools, job_params, tmp_path):
    output = tmp_path / "out"
    drm = output / "drm"

    manifests = Dasher(load_job(job_params(**_drm_params()))).run()

    assert manifests == [
        output / "manifest.mpd",
        drm / "manifest.mpd",
        drm / "manifest_clearkey.mpd",
        drm / "manifest_nopssh.mpd",
    ]

    crypt_calls = fake_tools.commands("-crypt")
    assert [cwd for _, cwd in crypt_calls] == [output] * 3
    assert [args[-1] for args, _ in crypt_calls] == ["temp-v1.mp4", "temp-v2.mp4", "temp-a1.mp4"]
    assert [cwd for _, cwd in fake_tools.commands("-dash")] == [output, drm]

    signalled = [f"urn:uuid:{PLAYREADY_SYSTEM_ID}", f"urn:uuid:{WIDEVINE_SYSTEM_ID}", f"urn:uuid:{MARLIN_SYSTEM_ID}"]
    assert _schemes(drm / "manifest.mpd") == [signalled] * 2
    assert _schemes(drm / "manifest_clearkey.mpd") == [[f"urn:uuid:{CLEARKEY_SYSTEM_ID}"]] * 2
    assert _schemes(drm / "manifest_nopssh.mpd") == [signalled] * 2

    nopssh_text = (drm / "manifest_nopssh.mpd").read_text(encoding="utf-8")
    assert nopssh_text.count('initialization="$RepresentationID$_i_nopssh.mp4"') == 2
    assert "$RepresentationID$_i.mp4" not in nopssh_text
    assert 'initialization="$RepresentationID$_i.mp4"' in (drm / "manifest.mpd").read_text(encoding="utf-8")

    for name in ("v1", "v2", "a1"):
        init = parse_boxes((drm / f"{name}_i.mp4").read_bytes())
        assert locate(init, "moov/trak/senc") == []
        assert len(locate(init, "moov/pssh[*]")) == 2
        nopssh = parse_boxes((drm / f"{name}_i_nopssh.mp4").read_bytes())
        assert locate(nopssh, "moov/pssh[*]") == []
        assert locate(nopssh, "moov/trak/senc") == []

    assert not (output / "temp-gpacdrm.xml").exists()
    assert not list(drm.glob("temp-*.mp4"))
    assert not list(output.glob("temp-*.mp4"))


def test_drm_keeps_cenc_and_temp_files_when_asked(fake_tools, job_params, tmp_path):
    params = job_params(**_drm_params(**{"drm.cenc": "1", "drm.clearkey": "0"}), deletetempfiles="0")
    manifests = Dasher(load_job(params)).run()

    drm = tmp_path / "out" / "drm"
    assert drm / "manifest_clearkey.mpd" not in manifests
    assert not (drm / "manifest_clearkey.mpd").exists()
    schemes = _schemes(drm / "manifest.mpd")
    assert schemes[0][0] == "urn:mpeg:dash:mp4protection:2011"
    assert len(schemes[0]) == 4
    assert (tmp_path / "out" / "temp-gpacdrm.xml").is_file()
    assert (drm / "temp-v1.mp4").is_file()


def test_subtitles_are_added_to_clear_and_drm_manifests(fake_tools, job_params, write_file, tmp_path):
    subtitle = write_file("src/sub_fin.xml", SAMPLE_TTML)
    params = job_params(**_drm_params(), **{"subib.1": f"sub_fin fin {subtitle}", "subob.1": f"sub_fin fin {subtitle}"})

    manifests = Dasher(load_job(params)).run()

    output = tmp_path / "out"
    drm = output / "drm"
    assert manifests[-4:] == [
        output / "manifest_subib.mpd",
        output / "manifest_subob.mpd",
        drm / "manifest_subib.mpd",
        drm / "manifest_subob.mpd",
    ]
    assert sorted(p.name for p in (output / "sub_fin").iterdir()) == [
        "sub_1.m4s",
        "sub_2.m4s",
        "sub_3.m4s",
        "sub_i.mp4",
    ]
    assert (output / "sub_fin.xml").is_file()
    assert not (drm / "sub_fin").exists()
    assert not (drm / "sub_fin.xml").exists()

    drm_subib = (drm / "manifest_subib.mpd").read_text(encoding="utf-8")
    assert 'initialization="../$RepresentationID$/sub_i.mp4"' in drm_subib
    assert "<BaseURL>../sub_fin.xml</BaseURL>" in (drm / "manifest_subob.mpd").read_text(encoding="utf-8")


def test_external_process_failure_aborts_run(monkeypatch, job_params, tmp_path):
    fake = FakeTools(fail_on="-dash")
    monkeypatch.setattr(dasher_module, "execute_process", fake)
    monkeypatch.setattr(MediaTools, "probe_frame_rate", lambda self, input_file, default=None: 25)

    with pytest.raises(ExternalProcessError):
        Dasher(load_job(job_params(**_drm_params()))).run()

    assert not (tmp_path / "out" / "manifest.mpd").exists()
    assert fake.commands("-crypt") == []


def test_drm_output_comes_from_job(job_params, tmp_path):
    job = load_job(job_params(**_drm_params()))
    dasher = Dasher(job, tools=MediaTools())
    assert job.drm_output == tmp_path / "out" / "drm"
    assert dasher.drm_output == job.drm_output
