PLAYREADY_SYSTEM_ID = "9a04f079-9840-4286-ab92-e65be0885f95"
WIDEVINE_SYSTEM_ID = "edef8ba9-79d6-4ace-a3c8-27dcd51d21ed"
MARLIN_SYSTEM_ID = "5e629af5-38da-4063-8977-97ffbd9902d4"
CLEARKEY_SYSTEM_ID = "e2719d58-a985-b3c9-781a-b030af78d30e"
COMMON_PSSH_SYSTEM_ID = "1077efec-c0b2-4d02-ace3-3c1e52e2fb4b"  # W3C common PSSH (ClearKey)

MP4_PROTECTION_SCHEME = "urn:mpeg:dash:mp4protection:2011"

# Keyword -> scheme fragments used when removing <ContentProtection> elements by name.
SCHEME_KEYWORDS = {
    "playready": (PLAYREADY_SYSTEM_ID,),
    "widevine": (WIDEVINE_SYSTEM_ID,),
    "marlin": (MARLIN_SYSTEM_ID,),
    "clearkey": (CLEARKEY_SYSTEM_ID, COMMON_PSSH_SYSTEM_ID),
    "cenc": (MP4_PROTECTION_SCHEME,),
}

MPD_NAMESPACE = "urn:mpeg:dash:schema:mpd:2011"

# Namespace prefixes required by the DRM signalling elements.
DRM_NAMESPACES = {
    "cenc": "urn:mpeg:cenc:2013",
    "mspr": "urn:microsoft:playready",
    "mas": "urn:marlin:mas:1-0:services:schemas:mpd",
    "clearkey": "http://dashif.org/guidelines/clearKey",
}

HBBTV_DASH_PROFILE = "urn:hbbtv:dash:profile:isoff-live:2012"
DASH_ROLE_SCHEME = "urn:mpeg:dash:role:2011"

# Child element order of AdaptationSet / Representation (ISO/IEC 23009-1 schema).
MPD_CHILD_ORDER = [
    "BaseURL",
    "FramePacking",
    "AudioChannelConfiguration",
    "ContentProtection",
    "EssentialProperty",
    "SupplementalProperty",
    "InbandEventStream",
    "Accessibility",
    "Role",
    "Rating",
    "Viewpoint",
    "ContentComponent",
    "SegmentBase",
    "SegmentList",
    "SegmentTemplate",
    "Representation",
    "SubRepresentation",
]

# File name conventions shared with the Transcoder and the Muxer.
TEMP_RENDITION_FILE = "temp-{name}.mp4"
INIT_SEGMENT_FILE = "{name}_i.mp4"
INIT_NOPSSH_FILE = "{name}_i_nopssh.mp4"
INIT_TEMPLATE = "$RepresentationID$_i.mp4"
INIT_NOPSSH_TEMPLATE = "$RepresentationID$_i_nopssh.mp4"
ENCRYPTION_SPEC_FILE = "temp-gpacdrm.xml"
DRM_FOLDER = "drm"

MANIFEST_FILE = "manifest.mpd"
MANIFEST_SUBIB_FILE = "manifest_subib.mpd"
MANIFEST_SUBOB_FILE = "manifest_subob.mpd"
MANIFEST_CLEARKEY_FILE = "manifest_clearkey.mpd"
MANIFEST_NOPSSH_FILE = "manifest_nopssh.mpd"

OLD_FILE_EXTENSIONS = (".m4s", ".mp4", ".mpd", ".jpg")
