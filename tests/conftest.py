"""
Pytest configuration and shared fixtures.

Tool locations and log settings can be overridden through a local .env file.
"""

from pathlib import Path

import pytest
from dotenv import load_dotenv

from dashpack.schemas import DrmDescriptor

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")

KID_HEX = "43215678123412341234123412341234"
KEY_HEX = "12341234123412341234123412341234"
IV_HEX = "22e4b5b6c1a9e0f4"

# Manifest as written by MP4Box -profile live, with the usual defects:
# avc3 codecs, mimeType on the Representations and startNumber drift on v2.
SAMPLE_MPD = """<?xml version="1.0"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" minBufferTime="PT1.500S" type="static" mediaPresentationDuration="PT0H0M18.000S" maxSegmentDuration="PT0H0M6.000S" profiles="urn:mpeg:dash:profile:isoff-live:2011">
 <Period duration="PT0H0M18.000S">
  <AdaptationSet segmentAlignment="true" maxWidth="1280" maxHeight="720" maxFrameRate="25" par="16:9" lang="und" startWithSAP="1">
   <Representation id="v1" mimeType="video/mp4" codecs="avc3.4D401E" width="640" height="360" frameRate="25" sar="1:1" bandwidth="512000">
    <SegmentTemplate media="$RepresentationID$_$Number$.m4s" initialization="$RepresentationID$_i.mp4" timescale="12800" startNumber="1" duration="76800"/>
   </Representation>
   <Representation id="v2" mimeType="video/mp4" codecs="avc3.4D401F" width="1280" height="720" frameRate="25" sar="1:1" bandwidth="1500000">
    <SegmentTemplate media="$RepresentationID$_$Number$.m4s" initialization="$RepresentationID$_i.mp4" timescale="12800" startNumber="0" duration="76800"/>
   </Representation>
  </AdaptationSet>
  <AdaptationSet segmentAlignment="true" lang="und" startWithSAP="1">
   <Representation id="a1" mimeType="audio/mp4" codecs="mp4a.40.2" audioSamplingRate="48000" bandwidth="128000">
    <AudioChannelConfiguration schemeIdUri="urn:mpeg:dash:23003:3:audio_channel_configuration:2011" value="2"/>
    <SegmentTemplate media="$RepresentationID$_$Number$.m4s" initialization="$RepresentationID$_i.mp4" timescale="48000" startNumber="1" duration="288000"/>
   </Representation>
  </AdaptationSet>
 </Period>
</MPD>
"""

# Encrypted variant, MP4Box adds the generic MPEG-CENC element to every AdaptationSet.
SAMPLE_DRM_MPD = """<?xml version="1.0"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" xmlns:cenc="urn:mpeg:cenc:2013" minBufferTime="PT1.500S" type="static" mediaPresentationDuration="PT0H0M18.000S" profiles="urn:mpeg:dash:profile:isoff-live:2011">
 <Period duration="PT0H0M18.000S">
  <AdaptationSet segmentAlignment="true" lang="und" startWithSAP="1">
   <ContentProtection schemeIdUri="urn:mpeg:dash:mp4protection:2011" value="cenc" cenc:default_KID="43215678-1234-1234-1234-123412341234"/>
   <Representation id="v1" mimeType="video/mp4" codecs="avc1.4D401E" width="640" height="360" bandwidth="512000">
    <SegmentTemplate media="$RepresentationID$_$Number$.m4s" initialization="$RepresentationID$_i.mp4" timescale="12800" startNumber="1" duration="76800"/>
   </Representation>
  </AdaptationSet>
  <AdaptationSet segmentAlignment="true" lang="und" startWithSAP="1">
   <ContentProtection schemeIdUri="urn:mpeg:dash:mp4protection:2011" value="cenc" cenc:default_KID="43215678-1234-1234-1234-123412341234"/>
   <Representation id="a1" mimeType="audio/mp4" codecs="mp4a.40.2" audioSamplingRate="48000" bandwidth="128000">
    <SegmentTemplate media="$RepresentationID$_$Number$.m4s" initialization="$RepresentationID$_i.mp4" timescale="48000" startNumber="1" duration="288000"/>
   </Representation>
  </AdaptationSet>
 </Period>
</MPD>
"""

# 18 seconds of cues
SAMPLE_TTML = """<?xml version="1.0" encoding="UTF-8"?>
<tt xmlns="http://www.w3.org/ns/ttml" xmlns:ttp="http://www.w3.org/ns/ttml#parameter" xmlns:tts="http://www.w3.org/ns/ttml#styling" xml:lang="fi" ttp:timeBase="media">
 <head/>
 <body>
  <div>
   <p begin="00:00:00.000" end="00:00:04.000">Ensimmäinen rivi</p>
   <p begin="00:00:05.000" end="00:00:07.000">Toinen <span tts:fontStyle="italic">rivi</span></p>
   <p begin="10s" dur="3s">Kolmas rivi</p>
   <p begin="00:00:15.000" end="00:00:18.000">Neljäs rivi</p>
  </div>
 </body>
</tt>
"""


@pytest.fixture
def sample_mpd() -> str:
    return SAMPLE_MPD


@pytest.fixture
def sample_drm_mpd() -> str:
    return SAMPLE_DRM_MPD


@pytest.fixture
def sample_ttml() -> str:
    return SAMPLE_TTML


@pytest.fixture
def write_file(tmp_path):
    """
    Factory fixture writing text or bytes below tmp_path.

    Usage:
        def test_something(write_file):
            path = write_file("manifest.mpd", SAMPLE_MPD)
    """

    def _write(name: str, content) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def make_descriptor():
    """Factory fixture for DrmDescriptor with fixed key material."""

    def _make(**overrides) -> DrmDescriptor:
        values = {
            "kid": KID_HEX,
            "key": KEY_HEX,
            "iv": IV_HEX,
            "playready_laurl": "https://test.playready.microsoft.com/service/rightsmanager.asmx",
            "clearkey_laurl": "https://example.com/clearkey/laurl",
        }
        values.update(overrides)
        return DrmDescriptor(**values)

    return _make
