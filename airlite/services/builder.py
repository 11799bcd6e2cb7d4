# airlite/services/builder.py
from __future__ import annotations

import enum
import functools
import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import yaml

from airlite.errors import BuildFailed, ExternalToolFailure, IdenticalPayload, VersionOrderError
from airlite.services import patch_engine
from airlite.services.bundler import BundleResult, archive_directory, run_external_bundler
from airlite.services.container import ContainerCodec
from airlite.services.storage import (
    BASE_PACKAGE,
    LATEST,
    META_FILE,
    RAW_ASSETS,
    StagingHandle,
    VersionStore,
)

log = logging.getLogger(__name__)

Bundler = Callable[[str, str, Path], BundleResult]


class BuildState(str, enum.Enum):
    IDLE = "idle"
    STAGING = "staging"
    DIFFING = "diffing"
    PUBLISHING = "publishing"
    FAILED = "failed"


@dataclass(frozen=True)
class StoreState:
    """Snapshot of the store taken at the start of one build."""

    versions: Tuple[int, ...]
    latest: Optional[int]
    next_version: int

    @classmethod
    def from_store(cls, store: VersionStore) -> "StoreState":
        return cls(
            versions=tuple(store.list_versions()),
            latest=store.latest_pointer(),
            next_version=store.next_version(),
        )

    def slot(self, version: int):
        return LATEST if version == self.latest else version


@dataclass(frozen=True)
class PatchInfo:
    from_version: int
    size: int
    sha256: str


@dataclass
class BuildResult:
    platform: str
    version: int
    raw_sha256: str
    raw_bytes: int
    base_bytes: int
    patches: Dict[int, PatchInfo] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "platform": self.platform,
            "version": self.version,
            "raw_sha256": self.raw_sha256,
            "raw_bytes": self.raw_bytes,
            "base_bytes": self.base_bytes,
            "patches": {
                str(v): {"size": p.size, "sha256": p.sha256}
                for v, p in sorted(self.patches.items())
            },
        }


class PatchBuilder:
    """
    Builds the next release of one platform store:
    bundle -> archive -> diff against every published version -> publish.
    """

    def __init__(
        self,
        store: VersionStore,
        *,
        entry: str = "index",
        bundler: Optional[Bundler] = None,
        codec: Optional[ContainerCodec] = None,
        differ=patch_engine.diff,
        max_workers: int = 4,
    ):
        self.store = store
        self.entry = entry
        self.bundler = bundler or run_external_bundler
        self.codec = codec or ContainerCodec()
        self.differ = differ
        self.max_workers = max_workers
        self.state = BuildState.IDLE

    @classmethod
    def from_settings(cls, settings, platform: str, entry: Optional[str] = None) -> "PatchBuilder":
        store = VersionStore(settings.patch_root, platform)
        bundler = functools.partial(
            run_external_bundler,
            executable=settings.bundler,
            timeout=settings.bundler_timeout,
        )
        return cls(
            store,
            entry=entry or settings.entry,
            bundler=bundler,
            max_workers=settings.max_workers,
        )

    # -----------------------------
    # Entry points
    # -----------------------------
    def build_new_patch(self, patch_version: Optional[int] = None) -> BuildResult:
        snapshot, new_version = self._plan(patch_version)
        return self._run(snapshot, new_version, raw=None)

    def build_from_payload(self, raw: bytes, patch_version: Optional[int] = None) -> BuildResult:
        """Same as build_new_patch for a raw payload archived elsewhere."""

        snapshot, new_version = self._plan(patch_version)
        return self._run(snapshot, new_version, raw=raw)

    # -----------------------------
    # Steps
    # -----------------------------
    def _plan(self, patch_version: Optional[int]) -> Tuple[StoreState, int]:
        if self.state not in (BuildState.IDLE, BuildState.FAILED):
            raise RuntimeError(f"A build is already {self.state.value} for {self.store.base}")

        snapshot = StoreState.from_store(self.store)
        if patch_version is None:
            new_version = snapshot.next_version
        elif patch_version <= snapshot.next_version:
            raise VersionOrderError(
                f"Patch version {patch_version} must be greater than {snapshot.next_version} "
                f"for {self.store.base}"
            )
        else:
            new_version = patch_version

        log.info("The latest version is %s", snapshot.latest)
        log.info("The new version will be %d", new_version)
        return snapshot, new_version

    def _run(self, snapshot: StoreState, new_version: int, raw: Optional[bytes]) -> BuildResult:
        try:
            with self.store.begin_publish() as handle:
                self.state = BuildState.STAGING
                if raw is None:
                    raw = self._bundle(handle)

                self.state = BuildState.DIFFING
                patches = self._diff_all(handle, snapshot, new_version, raw)

                self.state = BuildState.PUBLISHING
                result = self._publish(handle, new_version, raw)
                result.patches = patches
        except BaseException:
            self.state = BuildState.FAILED
            raise

        self.state = BuildState.IDLE
        return result

    def _bundle(self, handle: StagingHandle) -> bytes:
        out_dir = handle.path / "bundle"
        out_dir.mkdir()
        platform = self.store.platform

        try:
            res = self.bundler(platform, self.entry, out_dir)
        except subprocess.TimeoutExpired as e:
            raise ExternalToolFailure(f"Bundler timed out after {e.timeout}s building {platform}") from e
        except OSError as e:
            raise ExternalToolFailure(f"Cannot run the bundler for {platform}: {e}") from e

        if not res.ok:
            log.error(res.stderr)
            if res.exit_status != 0:
                raise ExternalToolFailure(
                    f"Bundler exited with status {res.exit_status} for {platform}: {res.stderr.strip()}"
                )
            raise ExternalToolFailure(f"Fail to build RN bundle for {platform}: {res.stderr.strip()}")
        if res.stdout.strip():
            log.info(res.stdout.strip())
        if not any(out_dir.iterdir()):
            raise ExternalToolFailure(f"Bundler wrote nothing to {out_dir}")

        return archive_directory(out_dir)

    def _diff_one(self, handle: StagingHandle, snapshot: StoreState, version: int,
                  new_version: int, raw: bytes) -> PatchInfo:
        old = self.store.raw_assets(snapshot.slot(version)).read_bytes()
        delta = self.differ(old, raw)
        if delta is patch_engine.IDENTICAL:
            raise IdenticalPayload(version)

        container = self.codec.encode(new_version, delta)
        handle.patch_file(version).write_bytes(container)
        return PatchInfo(from_version=version, size=len(container), sha256=patch_engine.sha256(container))

    def _diff_all(self, handle: StagingHandle, snapshot: StoreState, new_version: int,
                  raw: bytes) -> Dict[int, PatchInfo]:
        patches: Dict[int, PatchInfo] = {}
        failures: Dict[int, Exception] = {}
        if not snapshot.versions:
            return patches

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                v: pool.submit(self._diff_one, handle, snapshot, v, new_version, raw)
                for v in snapshot.versions
            }
            for v, fut in sorted(futures.items()):
                try:
                    patches[v] = fut.result()
                except Exception as e:
                    log.error("Diff of version %d against %d failed: %s", v, new_version, e)
                    failures[v] = e

        if failures:
            raise BuildFailed(new_version, failures)
        return patches

    def _publish(self, handle: StagingHandle, new_version: int, raw: bytes) -> BuildResult:
        slot = handle.slot
        base = self.codec.encode(new_version, raw)
        (slot / RAW_ASSETS).write_bytes(raw)
        (slot / BASE_PACKAGE).write_bytes(base)

        meta = {
            "platform": self.store.platform,
            "version": new_version,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "assets": {"sha256": patch_engine.sha256(raw), "size_bytes": len(raw)},
            "base": {"sha256": patch_engine.sha256(base), "size_bytes": len(base)},
        }
        (slot / META_FILE).write_text(yaml.safe_dump(meta, sort_keys=False), encoding="utf-8")

        self.store.promote(handle, new_version)
        return BuildResult(
            platform=self.store.platform,
            version=new_version,
            raw_sha256=meta["assets"]["sha256"],
            raw_bytes=len(raw),
            base_bytes=len(base),
        )
