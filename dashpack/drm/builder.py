import base64
import logging
from typing import Iterator, Sequence

import xmltodict

from dashpack.drm.systems import SIGNALLING_ORDER, SYSTEMS, DrmSystem
from dashpack.schemas import DrmDescriptor, DrmSystemName

logger = logging.getLogger(__name__)


class DrmDescriptorBuilder:
    """
    Builds the Muxer encryption spec and the per-DRM signalling fragments
    for one DrmDescriptor. Every method is pure and may be called in any order.
    """

    def __init__(self, descriptor: DrmDescriptor):
        self.descriptor = descriptor

    @property
    def enabled_systems(self) -> list[DrmSystem]:
        return [system for system in SYSTEMS.values() if self.descriptor.is_enabled(system.name)]

    def build_encryption_spec(self, track_ids: Sequence[int] = (1,)) -> str:
        """
        GPAC ``GPACDRM`` document for ``MP4Box -crypt`` (CENC AES-CTR).

        Declares a pssh for every enabled system that carries one and a
        CrypTrack with the key id, content key and IV for each track id.
        """
        descriptor = self.descriptor
        drm_info = []
        for system in self.enabled_systems:
            data = system.pssh_data(descriptor)
            if data is None:
                continue
            key_ids = system.pssh_key_ids(descriptor) or []
            entries = [{"@ID128": "0x" + system.pssh_system_id.replace("-", "")}]
            if key_ids:
                entries.append({"@bits": "32", "@value": str(len(key_ids))})
                entries.extend({"@ID128": "0x" + kid.hex()} for kid in key_ids)
            if data:
                entries.append({"@data64": base64.b64encode(data).decode("ascii")})
            drm_info.append({"@type": "pssh", "@version": "1" if key_ids else "0", "BS": entries})

        tracks = [
            {
                "@trackID": str(track_id),
                "@IsEncrypted": "1",
                "@IV_size": str(len(descriptor.iv)),
                "@first_IV": "0x" + descriptor.iv_hex,
                "@saiSavedBox": "senc",
                "key": {"@KID": "0x" + descriptor.kid_hex, "@value": "0x" + descriptor.key_hex},
            }
            for track_id in track_ids
        ]

        document = {"GPACDRM": {"@type": "CENC AES-CTR", "DRMInfo": drm_info, "CrypTrack": tracks}}
        if not drm_info:
            del document["GPACDRM"]["DRMInfo"]
        return xmltodict.unparse(document, pretty=True, indent="  ") + "\n"

    def build_signalling(self, name: DrmSystemName) -> str:
        return SYSTEMS[name].build_signalling(self.descriptor)

    def build_playready_signalling(self) -> str:
        return self.build_signalling(DrmSystemName.PLAYREADY)

    def build_widevine_signalling(self) -> str:
        return self.build_signalling(DrmSystemName.WIDEVINE)

    def build_marlin_signalling(self) -> str:
        return self.build_signalling(DrmSystemName.MARLIN)

    def build_clearkey_signalling(self) -> str:
        return self.build_signalling(DrmSystemName.CLEARKEY)

    def iter_signalling(self) -> Iterator[tuple[DrmSystemName, str]]:
        """Non-empty fragments of PlayReady, Widevine and Marlin, in insertion order."""
        for system in SIGNALLING_ORDER:
            fragment = system.build_signalling(self.descriptor)
            if fragment:
                yield system.name, fragment
            else:
                logger.info("%s signalling disabled, skipped", system.name.value)
