import copy
import logging
from pathlib import Path
from typing import Iterator, Optional, Union

import xmltodict

from dashpack.const import (
    DRM_NAMESPACES,
    HBBTV_DASH_PROFILE,
    MPD_CHILD_ORDER,
    SCHEME_KEYWORDS,
)
from dashpack.schemas import RenditionKind
from dashpack.utils.file_utils import atomic_write

logger = logging.getLogger(__name__)

# Elements that may repeat and must always parse to lists.
_FORCE_LIST = ("Period", "AdaptationSet", "Representation", "ContentProtection")

_CHILD_RANK = {name: index for index, name in enumerate(MPD_CHILD_ORDER)}

_VIDEO_CODECS = ("avc", "hvc", "hev", "vp9", "av01")
_AUDIO_CODECS = ("mp4a", "ac-3", "ec-3", "opus")
_TEXT_CODECS = ("stpp", "wvtt")


def parse_mpd(mpd_content: Union[str, bytes]) -> dict:
    """Parses the MPD content into a dictionary."""
    return xmltodict.parse(mpd_content, force_list=_FORCE_LIST)


def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _codec_content_type(codecs: str) -> Optional[str]:
    codecs = codecs.lower()
    if codecs.startswith(_VIDEO_CODECS):
        return "video"
    if codecs.startswith(_AUDIO_CODECS):
        return "audio"
    if codecs.startswith(_TEXT_CODECS):
        return "text"
    return None


def _normalize_codecs(codecs: str, h265: bool) -> str:
    """Rename codec 4CCs to the sample entry names produced by the Transcoder."""
    fixed = []
    for codec in codecs.split(","):
        codec = codec.strip()
        if h265 and codec.startswith("hev1"):
            codec = "hvc1" + codec[4:]
        elif not h265 and codec.startswith("avc3"):
            codec = "avc1" + codec[4:]
        fixed.append(codec)
    return ",".join(fixed)


def order_children(element: dict) -> None:
    """
    Reorder child elements in place following the DASH schema sequence.

    Attributes keep their order; unknown children keep their relative order
    after the known ones.
    """
    keys = list(element.keys())
    attributes = [key for key in keys if key.startswith("@")]
    children = [key for key in keys if not key.startswith("@")]
    children.sort(key=lambda key: _CHILD_RANK.get(key, len(_CHILD_RANK)))
    ordered = [(key, element[key]) for key in attributes + children]
    element.clear()
    element.update(ordered)


class ManifestDocument:
    """
    Editable model of an MPD manifest.

    Wraps the xmltodict representation of the document; Period, AdaptationSet,
    Representation and ContentProtection always parse to lists.
    """

    def __init__(self, mpd_dict: dict, source: Optional[Path] = None):
        if "MPD" not in mpd_dict:
            raise ValueError("Not an MPD document")
        self._doc = mpd_dict
        self.source = source

    @classmethod
    def from_string(cls, mpd_content: Union[str, bytes]) -> "ManifestDocument":
        return cls(parse_mpd(mpd_content))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ManifestDocument":
        path = Path(path)
        return cls(parse_mpd(path.read_bytes()), source=path)

    @property
    def root(self) -> dict:
        return self._doc["MPD"]

    def periods(self) -> list[dict]:
        periods = self.root.get("Period")
        if periods is None:
            periods = self.root["Period"] = [{}]
        # Empty <Period/> parses to None
        for index, period in enumerate(periods):
            if period is None:
                periods[index] = {}
        return periods

    def adaptation_sets(self) -> Iterator[dict]:
        for period in self.periods():
            for adaptation in _as_list(period.get("AdaptationSet")):
                yield adaptation

    @staticmethod
    def representations(adaptation: dict) -> list[dict]:
        return _as_list(adaptation.get("Representation"))

    @classmethod
    def content_type(cls, adaptation: dict) -> Optional[str]:
        """video, audio or text, from contentType, mimeType or codecs."""
        if adaptation.get("@contentType"):
            return adaptation["@contentType"]
        candidates = [adaptation] + cls.representations(adaptation)
        for element in candidates:
            mime_type = element.get("@mimeType", "")
            if mime_type.startswith(("video/", "audio/")):
                return mime_type.split("/")[0]
            if mime_type.startswith(("text/", "application/ttml")):
                return "text"
        for element in candidates:
            if element.get("@codecs"):
                content_type = _codec_content_type(element["@codecs"])
                if content_type:
                    return content_type
        return None

    # =========================================================================
    # Packaging fixes
    # =========================================================================

    def fix_content(self, mode: Union[RenditionKind, str]) -> None:
        """
        Correct the known defects of the Muxer's manifest.

        Idempotent: a second call leaves the document unchanged.
        """
        h265 = mode in (RenditionKind.VIDEO_H265, "h265", RenditionKind.VIDEO_H265.value)

        profiles = [p.strip() for p in self.root.get("@profiles", "").split(",") if p.strip()]
        if HBBTV_DASH_PROFILE not in profiles:
            profiles.append(HBBTV_DASH_PROFILE)
            self.root["@profiles"] = ",".join(profiles)

        for adaptation in self.adaptation_sets():
            content_type = self.content_type(adaptation)
            if content_type is None:
                logger.warning("AdaptationSet %s has no detectable content type", adaptation.get("@id", "?"))
                continue

            adaptation["@contentType"] = content_type
            if content_type in ("video", "audio"):
                adaptation["@mimeType"] = f"{content_type}/mp4"

            shared_codecs = adaptation.get("@codecs")
            if shared_codecs:
                adaptation["@codecs"] = _normalize_codecs(shared_codecs, h265)

            for representation in self.representations(adaptation):
                if "@mimeType" in adaptation:
                    representation.pop("@mimeType", None)
                codecs = representation.get("@codecs") or shared_codecs
                if codecs:
                    representation["@codecs"] = _normalize_codecs(codecs, h265)

            self._unify_segment_templates(adaptation)
            order_children(adaptation)

    def _unify_segment_templates(self, adaptation: dict) -> None:
        templates = [
            representation["SegmentTemplate"]
            for representation in self.representations(adaptation)
            if isinstance(representation.get("SegmentTemplate"), dict)
        ]
        if not templates:
            return

        shared = adaptation.get("SegmentTemplate")
        reference = shared if isinstance(shared, dict) else templates[0]
        for template in templates:
            if template is reference:
                continue
            for attr in ("@timescale", "@duration", "@startNumber"):
                if attr not in reference or template.get(attr) == reference[attr]:
                    continue
                # Attributes inherited from the AdaptationSet level need no copy
                if reference is shared and attr not in template:
                    continue
                logger.info(
                    "SegmentTemplate %s drift in AdaptationSet %s: %s -> %s",
                    attr,
                    adaptation.get("@id", "?"),
                    template.get(attr),
                    reference[attr],
                )
                template[attr] = reference[attr]

    def segment_timing(self) -> Optional[tuple[int, int]]:
        """
        (timescale, segment duration) of the video, or else audio, SegmentTemplate.
        """
        for wanted in ("video", "audio"):
            for adaptation in self.adaptation_sets():
                if self.content_type(adaptation) != wanted:
                    continue
                candidates = [adaptation.get("SegmentTemplate")] + [
                    representation.get("SegmentTemplate") for representation in self.representations(adaptation)
                ]
                for template in candidates:
                    if not isinstance(template, dict):
                        continue
                    timescale = int(template.get("@timescale", 1))
                    if "@duration" in template:
                        return timescale, int(template["@duration"])
                    timeline = template.get("SegmentTimeline")
                    if isinstance(timeline, dict) and timeline.get("S"):
                        first = _as_list(timeline["S"])[0]
                        return timescale, int(first["@d"])
        return None

    def rewrite_initialization(self, old: str, new: str) -> int:
        """Point every SegmentTemplate@initialization equal to ``old`` at ``new``."""
        count = 0
        for adaptation in self.adaptation_sets():
            elements = [adaptation] + self.representations(adaptation)
            for element in elements:
                template = element.get("SegmentTemplate")
                if isinstance(template, dict) and template.get("@initialization") == old:
                    template["@initialization"] = new
                    count += 1
        return count

    def add_adaptation_set(self, adaptation: dict) -> dict:
        """Append an AdaptationSet to the first Period, numbering it after the existing ones."""
        period = self.periods()[0]
        adaptations = period.setdefault("AdaptationSet", [])
        ids = [int(a["@id"]) for a in adaptations if str(a.get("@id", "")).isdigit()]
        if ids and "@id" not in adaptation:
            adaptation = {"@id": str(max(ids) + 1), **adaptation}
        adaptations.append(adaptation)
        order_children(adaptation)
        return adaptation

    # =========================================================================
    # DRM signalling
    # =========================================================================

    def add_namespaces(self) -> list[str]:
        """
        Declare the DRM signalling namespace prefixes on the MPD root.

        Returns:
            The prefixes that were added.
        """
        added = []
        for prefix, uri in DRM_NAMESPACES.items():
            key = f"@xmlns:{prefix}"
            if key not in self.root:
                self.root[key] = uri
                added.append(prefix)
        return added

    def add_content_protection_element(self, fragment: str) -> int:
        """
        Insert a <ContentProtection> fragment under the matching AdaptationSets.

        The optional ``applyTo`` attribute of the fragment (``video``, ``audio``
        or ``video,audio``, default both) selects the AdaptationSets and is not
        copied to the manifest. An element of the same scheme is replaced in
        place; otherwise the new element follows the existing ones.

        Returns:
            Number of AdaptationSets updated.

        Raises:
            ValueError: if the fragment is not a ContentProtection element
                with a schemeIdUri.
        """
        parsed = xmltodict.parse(fragment)
        element = parsed.get("ContentProtection")
        if len(parsed) != 1 or not isinstance(element, dict) or not element.get("@schemeIdUri"):
            raise ValueError("Fragment is not a <ContentProtection> element with a schemeIdUri")

        scheme = element["@schemeIdUri"].lower()
        apply_to = element.pop("@applyTo", "video,audio")
        targets = {target.strip() for target in apply_to.split(",") if target.strip()}

        # Declarations already made on the root are redundant
        for key in [k for k in element if k.startswith("@xmlns:")]:
            if self.root.get(key) == element[key]:
                del element[key]

        updated = 0
        for adaptation in self.adaptation_sets():
            if self.content_type(adaptation) not in targets:
                continue
            protections = _as_list(adaptation.get("ContentProtection"))
            new_element = copy.deepcopy(element)
            for index, existing in enumerate(protections):
                if isinstance(existing, dict) and existing.get("@schemeIdUri", "").lower() == scheme:
                    protections[index] = new_element
                    break
            else:
                protections.append(new_element)
            adaptation["ContentProtection"] = protections
            order_children(adaptation)
            updated += 1

        logger.debug("Added ContentProtection %s to %d AdaptationSet(s)", scheme, updated)
        return updated

    def remove_content_protection_element(self, keyword: str) -> int:
        """
        Remove every <ContentProtection> whose scheme contains ``keyword``.

        DRM names (playready, widevine, marlin, clearkey, cenc) also match the
        system identifiers of that DRM. Absence of a match is not an error.

        Returns:
            Number of elements removed.
        """
        needles = [keyword.lower(), *SCHEME_KEYWORDS.get(keyword.lower(), ())]

        def _matches(protection) -> bool:
            scheme = protection.get("@schemeIdUri", "").lower() if isinstance(protection, dict) else ""
            return any(needle in scheme for needle in needles)

        removed = 0
        for adaptation in self.adaptation_sets():
            for element in [adaptation] + self.representations(adaptation):
                protections = _as_list(element.get("ContentProtection"))
                if not protections:
                    continue
                kept = [protection for protection in protections if not _matches(protection)]
                removed += len(protections) - len(kept)
                if kept:
                    element["ContentProtection"] = kept
                else:
                    del element["ContentProtection"]
        return removed

    def content_protection_schemes(self) -> list[list[str]]:
        """Schemes of the AdaptationSet level ContentProtection elements, per AdaptationSet."""
        return [
            [p.get("@schemeIdUri", "") for p in _as_list(adaptation.get("ContentProtection")) if isinstance(p, dict)]
            for adaptation in self.adaptation_sets()
        ]

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_string(self) -> str:
        for adaptation in self.adaptation_sets():
            order_children(adaptation)
            for representation in self.representations(adaptation):
                order_children(representation)
        return xmltodict.unparse(self._doc, pretty=True, indent="  ", short_empty_elements=True) + "\n"

    def save(self, path: Union[str, Path, None] = None) -> Path:
        path = Path(path) if path is not None else self.source
        if path is None:
            raise ValueError("No path to save the manifest to")
        atomic_write(path, self.to_string())
        logger.debug("Saved manifest %s", path)
        return path
