# airlite/services/container.py
# Formato del contenedor: header fijo de 64 bytes + payload comprimido.
from __future__ import annotations

import bz2
import hashlib
import struct
from dataclasses import dataclass
from typing import Callable

from airlite.errors import FormatError

PACK_FORMAT_VERSION = 1

HEADER_LENGTH = {
    "pack_version": 1,
    "version": 4,
    "sha": 32,
    "reserved": 27,
}
HEADER_SIZE = sum(HEADER_LENGTH.values())  # 64

CHECKSUM_OFFSET = HEADER_LENGTH["pack_version"] + HEADER_LENGTH["version"]
CHECKSUM_END = CHECKSUM_OFFSET + HEADER_LENGTH["sha"]

_PREFIX = struct.Struct("<BI")
MAX_VERSION = 0xFFFFFFFF


@dataclass(frozen=True)
class ContainerHeader:
    pack_version: int
    version: int
    checksum: bytes


@dataclass(frozen=True)
class Decoded:
    version: int
    verified: bool
    payload: bytes


def _digest(header: bytes, body: bytes) -> bytes:
    # checksum field is always zero while hashing
    h = hashlib.sha256()
    h.update(header[:CHECKSUM_OFFSET])
    h.update(bytes(HEADER_LENGTH["sha"]))
    h.update(header[CHECKSUM_END:HEADER_SIZE])
    h.update(body)
    return h.digest()


def read_header(data: bytes) -> ContainerHeader:
    if len(data) < HEADER_SIZE:
        raise FormatError(
            f"Container is {len(data)} bytes, shorter than the {HEADER_SIZE} byte header"
        )
    pack_version, version = _PREFIX.unpack_from(data, 0)
    if pack_version != PACK_FORMAT_VERSION:
        raise FormatError(f"Unsupported pack version {pack_version}")
    return ContainerHeader(
        pack_version=pack_version,
        version=version,
        checksum=bytes(data[CHECKSUM_OFFSET:CHECKSUM_END]),
    )


class ContainerCodec:
    """
    Packs payloads into checksummed containers and back.
    Pure: no file access. The compressor is fixed per store since the header
    does not record which one was used.
    """

    def __init__(
        self,
        compress: Callable[[bytes], bytes] = bz2.compress,
        decompress: Callable[[bytes], bytes] = bz2.decompress,
    ):
        self.compress = compress
        self.decompress = decompress

    def encode(self, version: int, payload: bytes) -> bytes:
        if not 0 <= version <= MAX_VERSION:
            raise FormatError(f"Version {version} does not fit in 4 bytes")

        body = self.compress(payload)
        header = bytearray(HEADER_SIZE)
        _PREFIX.pack_into(header, 0, PACK_FORMAT_VERSION, version)
        header[CHECKSUM_OFFSET:CHECKSUM_END] = _digest(bytes(header), body)
        return bytes(header) + body

    def decode(self, data: bytes) -> Decoded:
        header = read_header(data)
        body = bytes(data[HEADER_SIZE:])

        verified = _digest(bytes(data[:HEADER_SIZE]), body) == header.checksum
        if not verified:
            # no descomprimir datos no verificados
            return Decoded(version=header.version, verified=False, payload=b"")

        try:
            payload = self.decompress(body)
        except (OSError, ValueError, EOFError) as e:
            raise FormatError(f"Payload of version {header.version} does not decompress: {e}") from e
        return Decoded(version=header.version, verified=True, payload=payload)


_default = ContainerCodec()


def encode(version: int, payload: bytes) -> bytes:
    return _default.encode(version, payload)


def decode(data: bytes) -> Decoded:
    return _default.decode(data)
