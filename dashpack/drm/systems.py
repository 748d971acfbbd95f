"""
DRM systems supported in the DASH signalling.

Every system knows its ``schemeIdUri``, how to build its ``pssh`` box and how
to build the ``<ContentProtection>`` fragment inserted into the manifest.
"""

import base64
import struct
from abc import ABC, abstractmethod
from typing import Optional

import xmltodict
from Crypto.Cipher import AES

from dashpack.const import (
    CLEARKEY_SYSTEM_ID,
    COMMON_PSSH_SYSTEM_ID,
    DRM_NAMESPACES,
    MARLIN_SYSTEM_ID,
    PLAYREADY_SYSTEM_ID,
    WIDEVINE_SYSTEM_ID,
)
from dashpack.remuxer.mp4_muxer import build_pssh_box
from dashpack.schemas import DrmDescriptor, DrmSystemName

PLAYREADY_HEADER_NAMESPACE = "http://schemas.microsoft.com/DRM/2007/03/PlayReadyHeader"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _xmlns(*prefixes: str) -> dict:
    return {f"@xmlns:{prefix}": DRM_NAMESPACES[prefix] for prefix in prefixes}


def guid_bytes_le(kid: bytes) -> bytes:
    """Key id in the little-endian GUID byte order used by PlayReady."""
    return kid[3::-1] + kid[5:3:-1] + kid[7:5:-1] + kid[8:]


class DrmSystem(ABC):
    """
    Base class for all DRM systems
    """

    name: DrmSystemName
    system_id: str

    @property
    def scheme_id_uri(self) -> str:
        return f"urn:uuid:{self.system_id}"

    @property
    def pssh_system_id(self) -> str:
        return self.system_id

    def build_pssh(self, descriptor: DrmDescriptor) -> Optional[bytes]:
        """Complete ``pssh`` box, or None for systems that carry no pssh."""
        data = self.pssh_data(descriptor)
        if data is None:
            return None
        return build_pssh_box(self.pssh_system_id, data, key_ids=self.pssh_key_ids(descriptor))

    def pssh_data(self, descriptor: DrmDescriptor) -> Optional[bytes]:
        return None

    def pssh_key_ids(self, descriptor: DrmDescriptor) -> Optional[list[bytes]]:
        """Key ids of a version 1 pssh; None writes a version 0 box."""
        return None

    @abstractmethod
    def content_protection(self, descriptor: DrmDescriptor) -> dict:
        """Attributes and children of the ``<ContentProtection>`` element."""
        raise NotImplementedError

    def build_signalling(self, descriptor: DrmDescriptor) -> str:
        """
        The ``<ContentProtection>`` fragment of this system, or an empty
        string when the system is not enabled in the descriptor.
        """
        if not descriptor.is_enabled(self.name):
            return ""
        element = {"@schemeIdUri": self.scheme_id_uri, **self.content_protection(descriptor)}
        return xmltodict.unparse({"ContentProtection": element}, full_document=False)

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.scheme_id_uri}>"


class PlayReady(DrmSystem):
    name = DrmSystemName.PLAYREADY
    system_id = PLAYREADY_SYSTEM_ID

    @staticmethod
    def checksum(descriptor: DrmDescriptor) -> bytes:
        """First 8 bytes of the AES-ECB encrypted little-endian key id."""
        cipher = AES.new(descriptor.key, AES.MODE_ECB)
        return cipher.encrypt(guid_bytes_le(descriptor.kid))[:8]

    def wrm_header(self, descriptor: DrmDescriptor) -> str:
        data = {
            "PROTECTINFO": {"KEYLEN": "16", "ALGID": "AESCTR"},
            "KID": _b64(guid_bytes_le(descriptor.kid)),
            "CHECKSUM": _b64(self.checksum(descriptor)),
        }
        if descriptor.playready_laurl:
            data["LA_URL"] = descriptor.playready_laurl
        header = {"WRMHEADER": {"@xmlns": PLAYREADY_HEADER_NAMESPACE, "@version": "4.0.0.0", "DATA": data}}
        return xmltodict.unparse(header, full_document=False)

    def pssh_data(self, descriptor: DrmDescriptor) -> bytes:
        """PlayReady Object holding a single rights management header record."""
        record = self.wrm_header(descriptor).encode("utf-16-le")
        record = struct.pack("<HH", 1, len(record)) + record  # type 1 = WRM header
        return struct.pack("<IH", 6 + len(record), 1) + record

    def content_protection(self, descriptor: DrmDescriptor) -> dict:
        return {
            "@value": "MSPR 2.0",
            "@cenc:default_KID": descriptor.kid_uuid,
            **_xmlns("cenc", "mspr"),
            "cenc:pssh": _b64(self.build_pssh(descriptor)),
            "mspr:pro": _b64(self.pssh_data(descriptor)),
        }


class Widevine(DrmSystem):
    name = DrmSystemName.WIDEVINE
    system_id = WIDEVINE_SYSTEM_ID

    def pssh_data(self, descriptor: DrmDescriptor) -> bytes:
        # WidevinePsshData protobuf, field 2 (key_id) only
        return b"\x12\x10" + descriptor.kid

    def content_protection(self, descriptor: DrmDescriptor) -> dict:
        return {
            "@value": "Widevine",
            "@cenc:default_KID": descriptor.kid_uuid,
            **_xmlns("cenc"),
            "cenc:pssh": _b64(self.build_pssh(descriptor)),
        }


class Marlin(DrmSystem):
    name = DrmSystemName.MARLIN
    system_id = MARLIN_SYSTEM_ID

    def content_protection(self, descriptor: DrmDescriptor) -> dict:
        return {
            **_xmlns("mas"),
            "mas:MarlinContentIds": {"mas:MarlinContentId": f"urn:marlin:kid:{descriptor.kid_hex}"},
        }


class ClearKey(DrmSystem):
    name = DrmSystemName.CLEARKEY
    system_id = CLEARKEY_SYSTEM_ID

    # W3C common pssh: version 1, key ids only
    pssh_system_id = COMMON_PSSH_SYSTEM_ID

    def pssh_data(self, descriptor: DrmDescriptor) -> bytes:
        return b""

    def pssh_key_ids(self, descriptor: DrmDescriptor) -> list[bytes]:
        return [descriptor.kid]

    def content_protection(self, descriptor: DrmDescriptor) -> dict:
        element = {
            "@value": "ClearKey1.0",
            "@cenc:default_KID": descriptor.kid_uuid,
            **_xmlns("cenc", "clearkey"),
        }
        if descriptor.clearkey_laurl:
            element["clearkey:Laurl"] = {"@Lic_type": "EME-1.0", "#text": descriptor.clearkey_laurl}
        element["cenc:pssh"] = _b64(self.build_pssh(descriptor))
        return element


# Insertion order into the DRM manifest; some clients read only the first element.
SIGNALLING_ORDER: tuple[DrmSystem, ...] = (PlayReady(), Widevine(), Marlin())

SYSTEMS: dict[DrmSystemName, DrmSystem] = {
    system.name: system for system in SIGNALLING_ORDER + (ClearKey(),)
}
