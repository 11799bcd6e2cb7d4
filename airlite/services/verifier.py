# airlite/services/verifier.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from airlite.errors import AirLiteError, ChecksumMismatch, ContentMismatch
from airlite.services import patch_engine
from airlite.services.container import ContainerCodec
from airlite.services.storage import LATEST, VersionStore

log = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class VerifyReport:
    platform: str
    latest: Optional[int]
    passed: List[int] = field(default_factory=list)
    missing: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_dict(self) -> dict:
        return {
            "platform": self.platform,
            "latest": self.latest,
            "ok": self.ok,
            "passed": self.passed,
            "missing": self.missing,
            "failed": {str(k): v for k, v in sorted(self.failed.items())},
        }


class PatchVerifier:
    """Read-only checks of containers against the payloads they should produce."""

    def __init__(self, codec: Optional[ContainerCodec] = None, applier=patch_engine.apply):
        self.codec = codec or ContainerCodec()
        self.applier = applier

    def verify_bytes(self, old: bytes, container: bytes, expected: bytes,
                     name: str = "patch") -> int:
        """Returns the target version embedded in the container."""

        decoded = self.codec.decode(container)
        if not decoded.verified:
            raise ChecksumMismatch(f"Fail to verify the checksum of {name} (version {decoded.version})")

        result = self.applier(old, decoded.payload)
        if patch_engine.content_digest(result) != patch_engine.content_digest(expected):
            raise ContentMismatch(
                f"Applying {name} does not reproduce the expected payload of version {decoded.version}"
            )
        return decoded.version

    def verify(self, old_path: PathLike, patch_path: PathLike, expected_path: PathLike) -> int:
        return self.verify_bytes(
            Path(old_path).read_bytes(),
            Path(patch_path).read_bytes(),
            Path(expected_path).read_bytes(),
            name=str(patch_path),
        )

    def verify_base(self, base: bytes, expected: bytes, name: str = "base") -> int:
        decoded = self.codec.decode(base)
        if not decoded.verified:
            raise ChecksumMismatch(f"Fail to verify the checksum of {name} (version {decoded.version})")
        if patch_engine.content_digest(decoded.payload) != patch_engine.content_digest(expected):
            raise ContentMismatch(f"{name} does not hold the raw payload of version {decoded.version}")
        return decoded.version

    def verify_store(self, store: VersionStore) -> VerifyReport:
        """Check every published patch record and the latest base package."""

        latest = store.latest_pointer()
        report = VerifyReport(platform=store.platform, latest=latest)
        if latest is None:
            return report

        expected = store.raw_assets(LATEST).read_bytes()
        try:
            self.verify_base(store.base_package(LATEST).read_bytes(), expected,
                             name=str(store.base_package(LATEST)))
            report.passed.append(latest)
        except AirLiteError as e:
            report.failed[latest] = str(e)

        for v in store.scan_versions():
            patch = store.patch_path(v)
            if not patch.is_file():
                report.missing.append(v)
                continue
            try:
                target = self.verify(store.raw_assets(v), patch, store.raw_assets(LATEST))
                if target != latest:
                    report.failed[v] = f"{patch} targets version {target}, latest is {latest}"
                    continue
                report.passed.append(v)
            except AirLiteError as e:
                log.error("Version %d: %s", v, e)
                report.failed[v] = str(e)

        report.passed.sort(reverse=True)
        return report
