import pytest

from dashpack.const import (
    CLEARKEY_SYSTEM_ID,
    HBBTV_DASH_PROFILE,
    INIT_NOPSSH_TEMPLATE,
    INIT_TEMPLATE,
    MP4_PROTECTION_SCHEME,
    PLAYREADY_SYSTEM_ID,
    WIDEVINE_SYSTEM_ID,
)
from dashpack.drm.builder import DrmDescriptorBuilder
from dashpack.schemas import RenditionKind
from dashpack.utils.mpd_utils import ManifestDocument, order_children


def _fixed(mpd: str, mode=RenditionKind.VIDEO_H264) -> ManifestDocument:
    manifest = ManifestDocument.from_string(mpd)
    manifest.fix_content(mode)
    return manifest


def _schemes(manifest: ManifestDocument) -> list[list[str]]:
    return manifest.content_protection_schemes()


def _protection(scheme: str, **attrs) -> str:
    extra = "".join(f' {key}="{value}"' for key, value in attrs.items())
    return f'<ContentProtection schemeIdUri="{scheme}"{extra}/>'


def test_from_string_rejects_other_documents():
    with pytest.raises(ValueError):
        ManifestDocument.from_string("<tt/>")


def test_fix_content_corrects_packaging_defects(sample_mpd):
    manifest = _fixed(sample_mpd)
    video, audio = list(manifest.adaptation_sets())

    assert HBBTV_DASH_PROFILE in manifest.root["@profiles"].split(",")
    assert (video["@contentType"], video["@mimeType"]) == ("video", "video/mp4")
    assert (audio["@contentType"], audio["@mimeType"]) == ("audio", "audio/mp4")

    v1, v2 = video["Representation"]
    assert v1["@codecs"] == "avc1.4D401E"
    assert v2["@codecs"] == "avc1.4D401F"
    assert "@mimeType" not in v1 and "@mimeType" not in v2
    assert v2["SegmentTemplate"]["@startNumber"] == "1"


def test_fix_content_h265_renames_hev1(sample_mpd):
    mpd = sample_mpd.replace("avc3.4D401E", "hev1.1.6.L93.B0").replace("avc3.4D401F", "hev1.1.6.L120.B0")
    manifest = _fixed(mpd, RenditionKind.VIDEO_H265)
    codecs = [rep["@codecs"] for rep in ManifestDocument.representations(next(manifest.adaptation_sets()))]
    assert codecs == ["hvc1.1.6.L93.B0", "hvc1.1.6.L120.B0"]


def test_fix_content_copies_codecs_down():
    mpd = """<MPD xmlns="urn:mpeg:dash:schema:mpd:2011"><Period>
      <AdaptationSet mimeType="video/mp4" codecs="avc3.64001F">
        <Representation id="v1" bandwidth="1"/>
      </AdaptationSet></Period></MPD>"""
    adaptation = next(_fixed(mpd).adaptation_sets())
    assert adaptation["Representation"][0]["@codecs"] == "avc1.64001F"
    assert adaptation["@codecs"] == "avc1.64001F"


def test_fix_content_is_idempotent(sample_mpd):
    once = _fixed(sample_mpd).to_string()
    twice = ManifestDocument.from_string(once)
    twice.fix_content(RenditionKind.VIDEO_H264)
    assert twice.to_string() == once

    again = _fixed(sample_mpd)
    again.fix_content(RenditionKind.VIDEO_H264)
    assert again.to_string() == once


def test_add_namespaces_never_duplicates(sample_drm_mpd):
    manifest = ManifestDocument.from_string(sample_drm_mpd)
    assert manifest.add_namespaces() == ["mspr", "mas", "clearkey"]
    assert manifest.add_namespaces() == []
    text = manifest.to_string()
    assert text.count('xmlns:cenc="urn:mpeg:cenc:2013"') == 1
    assert 'xmlns:mspr="urn:microsoft:playready"' in text


def test_playready_and_widevine_yield_two_schemes_per_set(sample_mpd, make_descriptor):
    manifest = _fixed(sample_mpd)
    builder = DrmDescriptorBuilder(make_descriptor())

    assert manifest.add_content_protection_element(builder.build_playready_signalling()) == 2
    assert manifest.add_content_protection_element(builder.build_widevine_signalling()) == 2

    for schemes in _schemes(manifest):
        assert len(schemes) == 2
        assert len(set(schemes)) == 2
        assert schemes == [f"urn:uuid:{PLAYREADY_SYSTEM_ID}", f"urn:uuid:{WIDEVINE_SYSTEM_ID}"]


def test_same_scheme_is_replaced_in_place(sample_drm_mpd):
    manifest = ManifestDocument.from_string(sample_drm_mpd)
    manifest.add_content_protection_element(_protection(f"urn:uuid:{PLAYREADY_SYSTEM_ID}", value="old"))
    manifest.add_content_protection_element(_protection(f"urn:uuid:{WIDEVINE_SYSTEM_ID}"))
    manifest.add_content_protection_element(_protection(f"urn:uuid:{PLAYREADY_SYSTEM_ID.upper()}", value="new"))

    for adaptation in manifest.adaptation_sets():
        protections = adaptation["ContentProtection"]
        assert [p["@schemeIdUri"].lower() for p in protections] == [
            MP4_PROTECTION_SCHEME,
            f"urn:uuid:{PLAYREADY_SYSTEM_ID}",
            f"urn:uuid:{WIDEVINE_SYSTEM_ID}",
        ]
        assert protections[1]["@value"] == "new"


def test_add_then_remove_restores_protections(sample_drm_mpd):
    manifest = ManifestDocument.from_string(sample_drm_mpd)
    before = _schemes(manifest)
    scheme = f"urn:uuid:{CLEARKEY_SYSTEM_ID}"

    manifest.add_content_protection_element(_protection(scheme, value="ClearKey1.0"))
    assert _schemes(manifest) != before
    assert manifest.remove_content_protection_element(scheme) == 2
    assert _schemes(manifest) == before


def test_remove_by_drm_keyword(sample_drm_mpd, make_descriptor):
    manifest = ManifestDocument.from_string(sample_drm_mpd)
    manifest.add_namespaces()
    builder = DrmDescriptorBuilder(make_descriptor())
    for _, fragment in builder.iter_signalling():
        manifest.add_content_protection_element(fragment)

    assert manifest.remove_content_protection_element("playready") == 2
    assert manifest.remove_content_protection_element("marlin") == 2
    assert manifest.remove_content_protection_element("playready") == 0
    assert manifest.remove_content_protection_element("cenc") == 2
    assert _schemes(manifest) == [[f"urn:uuid:{WIDEVINE_SYSTEM_ID}"]] * 2


def test_remove_without_match_is_noop(sample_mpd):
    manifest = ManifestDocument.from_string(sample_mpd)
    before = manifest.to_string()
    assert manifest.remove_content_protection_element("widevine") == 0
    assert manifest.to_string() == before


def test_apply_to_selects_adaptation_sets(sample_mpd):
    manifest = _fixed(sample_mpd)
    fragment = '<ContentProtection schemeIdUri="urn:uuid:0000" applyTo="audio"/>'
    assert manifest.add_content_protection_element(fragment) == 1
    video, audio = list(manifest.adaptation_sets())
    assert "ContentProtection" not in video
    assert audio["ContentProtection"] == [{"@schemeIdUri": "urn:uuid:0000"}]
    assert "applyTo" not in manifest.to_string()


def test_fragment_namespace_declared_on_root_is_stripped(sample_drm_mpd, make_descriptor):
    manifest = ManifestDocument.from_string(sample_drm_mpd)
    manifest.add_content_protection_element(DrmDescriptorBuilder(make_descriptor()).build_widevine_signalling())
    text = manifest.to_string()
    assert text.count("xmlns:cenc=") == 1


@pytest.mark.parametrize(
    "fragment",
    ["<Role schemeIdUri='x'/>", "<ContentProtection value='cenc'/>", "<ContentProtection/>"],
)
def test_invalid_fragment_raises(sample_mpd, fragment):
    with pytest.raises(ValueError):
        ManifestDocument.from_string(sample_mpd).add_content_protection_element(fragment)


def test_content_protection_is_serialized_before_segment_template(sample_drm_mpd, make_descriptor):
    manifest = ManifestDocument.from_string(sample_drm_mpd)
    adaptation = next(manifest.adaptation_sets())
    adaptation["SegmentTemplate"] = adaptation["Representation"][0].pop("SegmentTemplate")
    adaptation["Role"] = {"@schemeIdUri": "urn:mpeg:dash:role:2011", "@value": "main"}
    manifest.add_content_protection_element(DrmDescriptorBuilder(make_descriptor()).build_marlin_signalling())

    text = manifest.to_string()
    first_set = text[text.index("<AdaptationSet") : text.index("</AdaptationSet>")]
    assert (
        first_set.index("<ContentProtection")
        < first_set.index("<Role")
        < first_set.index("<SegmentTemplate")
        < first_set.index("<Representation")
    )


def test_order_children_keeps_unknown_elements_last():
    element = {"Representation": [], "@id": "1", "Custom": "x", "ContentProtection": [], "Role": {}}
    order_children(element)
    assert list(element) == ["@id", "ContentProtection", "Role", "Representation", "Custom"]


def test_segment_timing_prefers_video(sample_mpd):
    assert ManifestDocument.from_string(sample_mpd).segment_timing() == (12800, 76800)
    audio_only = sample_mpd.replace("video/mp4", "text/plain").replace("avc3", "xxxx")
    assert ManifestDocument.from_string(audio_only).segment_timing() == (48000, 288000)


def test_rewrite_initialization(sample_drm_mpd):
    manifest = ManifestDocument.from_string(sample_drm_mpd)
    assert manifest.rewrite_initialization(INIT_TEMPLATE, INIT_NOPSSH_TEMPLATE) == 2
    assert manifest.to_string().count('initialization="$RepresentationID$_i_nopssh.mp4"') == 2


def test_save_and_load_round_trip(tmp_path, sample_mpd):
    manifest = _fixed(sample_mpd)
    path = manifest.save(tmp_path / "out" / "manifest.mpd")
    assert path.read_text(encoding="utf-8").startswith('<?xml version="1.0" encoding="utf-8"?>')
    assert ManifestDocument.load(path).to_string() == manifest.to_string()
    assert not list(path.parent.glob("*.tmp"))
