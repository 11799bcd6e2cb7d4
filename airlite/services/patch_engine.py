# airlite/services/patch_engine.py
from __future__ import annotations

import hashlib

import bsdiff4

from airlite.errors import ExternalToolFailure


class _Identical:
    """Signal returned by diff() when both payloads are byte-identical."""

    def __repr__(self) -> str:
        return "IDENTICAL"


IDENTICAL = _Identical()


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def content_digest(data: bytes) -> bytes:
    # independent of the container's SHA-256 checksum
    return hashlib.blake2b(data, digest_size=32).digest()


def diff(old: bytes, new: bytes) -> bytes | _Identical:
    if old == new:
        return IDENTICAL
    try:
        return bsdiff4.diff(old, new)
    except Exception as e:
        raise ExternalToolFailure(f"bsdiff failed: {e}") from e


def apply(old: bytes, delta: bytes) -> bytes:
    try:
        return bsdiff4.patch(old, delta)
    except Exception as e:
        raise ExternalToolFailure(f"bspatch failed: {e}") from e
