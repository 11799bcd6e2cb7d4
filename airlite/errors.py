# airlite/errors.py
from __future__ import annotations


class AirLiteError(Exception):
    pass


class FormatError(AirLiteError, ValueError):
    """Malformed or truncated container."""


class IntegrityError(AirLiteError):
    pass


class ChecksumMismatch(IntegrityError):
    pass


class ContentMismatch(IntegrityError):
    pass


class StoreCorruption(AirLiteError):
    """The on-disk store breaks one of its invariants. Needs an operator."""


class StoreLocked(AirLiteError):
    pass


class VersionOrderError(AirLiteError, ValueError):
    pass


class ExternalToolFailure(AirLiteError, RuntimeError):
    pass


class IdenticalPayload(AirLiteError):
    def __init__(self, version: int):
        super().__init__(
            f"Both version {version} and the newest build have the same bundle"
        )
        self.version = version


class BuildFailed(AirLiteError):
    """
    One or more versions could not be diffed against the new build.
    `failures` maps each failing version to its error.
    """

    def __init__(self, new_version: int, failures: dict[int, Exception]):
        listed = ", ".join(f"{v}: {e}" for v, e in sorted(failures.items()))
        super().__init__(
            f"Build of version {new_version} failed for {len(failures)} version(s): {listed}"
        )
        self.new_version = new_version
        self.failures = failures
