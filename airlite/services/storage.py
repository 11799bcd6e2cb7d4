# airlite/services/storage.py
from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from airlite.errors import (
    AirLiteError,
    FormatError,
    StoreCorruption,
    StoreLocked,
    VersionOrderError,
)
from airlite.services.container import HEADER_SIZE, read_header

log = logging.getLogger(__name__)

LATEST = "latest"
INTERMEDIATES = ".intermediates"
LOCK_FILE = ".publish.lock"

RAW_ASSETS = "assets.tar"
BASE_PACKAGE = "base"
PATCH_PACKAGE = "patch"
META_FILE = "meta.yaml"

_VERSION_RE = re.compile(r"^(0|[1-9][0-9]*)$")
_PLATFORM_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_STAGING_RE = re.compile(r"^build-([0-9]+)-")

Slot = Union[int, str]


class StagingHandle:
    """
    Scratch area of one build under `.intermediates/`.

    `slot` is prepared as the complete next `latest/` directory, `patches`
    holds one staged patch record per old version (file name = version).
    """

    def __init__(self, path: Path):
        self.path = path
        self.slot = path / "slot"
        self.patches = path / "patches"
        self.promoted = False
        self.slot.mkdir()
        self.patches.mkdir()

    def patch_file(self, version: int) -> Path:
        return self.patches / str(version)

    def staged_versions(self) -> list[int]:
        return sorted(int(p.name) for p in self.patches.iterdir())


def _owner_alive(name: str) -> bool:
    """Staging dirs are named build-<pid>-<random>; unparsable names have no owner."""

    m = _STAGING_RE.match(name)
    if not m:
        return False
    try:
        os.kill(int(m.group(1)), 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _read_head(path: Path) -> bytes:
    with open(path, "rb") as f:
        return f.read(HEADER_SIZE)


class VersionStore:
    """
    Layout for one platform:

        <root>/<platform>/
            0/ 1/ ... N/      assets.tar, base, patch
            latest/           assets.tar, base, meta.yaml
            .intermediates/   scratch, one dir per running build
            .publish.lock
    """

    def __init__(self, root: Union[str, Path], platform: str, check: bool = True):
        if not _PLATFORM_RE.match(platform or ""):
            raise ValueError(f"Invalid platform name: {platform!r}")
        self.root = Path(root)
        self.platform = platform
        self.base = self.root / platform
        self.base.mkdir(parents=True, exist_ok=True)
        if check:
            self.check()

    # -----------------------------
    # Paths
    # -----------------------------
    def path(self, version: Optional[Slot] = None, file: Optional[str] = None) -> Path:
        if version is None:
            return self.base
        p = self.base / str(version)
        return p / file if file else p

    def version_dir(self, version: Slot) -> Path:
        return self.path(version)

    def raw_assets(self, version: Slot) -> Path:
        return self.path(version, RAW_ASSETS)

    def base_package(self, version: Slot) -> Path:
        return self.path(version, BASE_PACKAGE)

    def patch_path(self, version: Slot) -> Path:
        return self.path(version, PATCH_PACKAGE)

    def meta_path(self, version: Slot) -> Path:
        return self.path(version, META_FILE)

    @property
    def intermediates(self) -> Path:
        return self.base / INTERMEDIATES

    # -----------------------------
    # Enumeration
    # -----------------------------
    def embedded_version(self, path: Path) -> int:
        try:
            return read_header(_read_head(path)).version
        except (OSError, FormatError) as e:
            raise StoreCorruption(f"Cannot read container header of {path}: {e}") from e

    def scan_versions(self) -> list[int]:
        """Numbered versions with both artifacts present, newest first."""

        out = []
        for entry in sorted(self.base.iterdir()):
            name = entry.name
            if name.startswith(".") or name == LATEST:
                continue
            if not _VERSION_RE.match(name):
                log.warning("%s is not a valid patch version", entry)
                continue
            if not entry.is_dir():
                log.warning("%s is not a valid version because it is not a directory", entry)
                continue
            if not (entry / RAW_ASSETS).is_file() or not (entry / BASE_PACKAGE).is_file():
                log.warning("%s lacks %s or %s, skipped", entry, RAW_ASSETS, BASE_PACKAGE)
                continue
            out.append(int(name))
        return sorted(out, reverse=True)

    def latest_pointer(self) -> Optional[int]:
        latest_dir = self.version_dir(LATEST)
        if not latest_dir.exists():
            return None
        base = self.base_package(LATEST)
        if not base.is_file() or not self.raw_assets(LATEST).is_file():
            raise StoreCorruption(f"{latest_dir} exists but is missing its artifacts")
        return self.embedded_version(base)

    def list_versions(self) -> list[int]:
        """Every published version, the latest slot included, newest first."""

        versions = self.scan_versions()
        latest = self.latest_pointer()
        if latest is not None:
            versions.append(latest)
        return sorted(versions, reverse=True)

    def next_version(self) -> int:
        latest = self.latest_pointer()
        if latest is not None:
            return latest + 1
        numbered = self.scan_versions()
        return numbered[0] + 1 if numbered else 0

    # -----------------------------
    # Consistency
    # -----------------------------
    def check(self) -> None:
        numbered = self.scan_versions()
        for v in numbered:
            emb = self.embedded_version(self.base_package(v))
            if emb != v:
                raise StoreCorruption(
                    f"{self.base_package(v)} embeds version {emb}, expected {v}"
                )

        latest = self.latest_pointer()
        if latest is not None and numbered and latest <= numbered[0]:
            raise StoreCorruption(
                f"{self.version_dir(LATEST)} embeds version {latest} but "
                f"{self.version_dir(numbered[0])} already exists"
            )

        newest = latest if latest is not None else (numbered[0] if numbered else None)
        for v in numbered:
            p = self.patch_path(v)
            if not p.is_file():
                continue
            target = self.embedded_version(p)
            if newest is not None and target > newest:
                raise StoreCorruption(f"{p} targets unpublished version {target}")
            if newest is not None and target < newest:
                log.warning("%s targets version %d, newest is %d (stale patch)", p, target, newest)

        if self.intermediates.exists():
            for leftover in sorted(self.intermediates.iterdir()):
                log.warning("Leftover staging directory %s from an interrupted build", leftover)

    # -----------------------------
    # Mutation
    # -----------------------------
    @contextmanager
    def lock(self) -> Iterator[Path]:
        path = self.base / LOCK_FILE
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            owner = path.read_text(encoding="utf-8").strip() if path.exists() else "?"
            raise StoreLocked(f"{path} is held by another publish (pid {owner})")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(str(os.getpid()))
            yield path
        finally:
            path.unlink(missing_ok=True)

    def _staging_dir(self) -> Path:
        # another build may remove .intermediates between mkdir and mkdtemp
        for _ in range(3):
            self.intermediates.mkdir(exist_ok=True)
            try:
                return Path(tempfile.mkdtemp(prefix=f"build-{os.getpid()}-", dir=self.intermediates))
            except FileNotFoundError:
                continue
        raise AirLiteError(f"Cannot create a staging directory under {self.intermediates}")

    def _remove_intermediates(self) -> None:
        try:
            self.intermediates.rmdir()
        except FileNotFoundError:
            pass
        except OSError:
            log.debug("%s still holds running builds", self.intermediates)

    def sweep_intermediates(self, keep: Optional[Path] = None) -> list[Path]:
        """Remove staging dirs whose owning process is gone. Call under lock()."""

        if not self.intermediates.is_dir():
            return []
        removed = []
        for entry in sorted(self.intermediates.iterdir()):
            if entry == keep or _owner_alive(entry.name):
                continue
            log.warning("Removing %s left by an interrupted build", entry)
            shutil.rmtree(entry, ignore_errors=True)
            removed.append(entry)
        return removed

    @contextmanager
    def begin_publish(self) -> Iterator[StagingHandle]:
        handle = StagingHandle(self._staging_dir())
        try:
            yield handle
        finally:
            shutil.rmtree(handle.path, ignore_errors=True)
            self._remove_intermediates()

    def promote(self, handle: StagingHandle, new_version: int) -> None:
        """
        Publish the staged slot as `latest/` and the staged patch records.

        Order: old latest -> numbered dir, staged slot -> latest, then each
        patch record. A kill between the first two renames leaves the newest
        number as the highest numbered dir, which check() accepts.
        """

        if handle.promoted:
            raise AirLiteError(f"{handle.path} was already promoted")
        slot = handle.slot
        if not (slot / RAW_ASSETS).is_file() or not (slot / BASE_PACKAGE).is_file():
            raise AirLiteError(f"Staged slot {slot} is missing {RAW_ASSETS} or {BASE_PACKAGE}")
        staged = self.embedded_version(slot / BASE_PACKAGE)
        if staged != new_version:
            raise VersionOrderError(f"{slot / BASE_PACKAGE} embeds {staged}, expected {new_version}")

        with self.lock():
            current = self.next_version()
            if new_version < current:
                raise VersionOrderError(
                    f"Version {new_version} is older than the next version {current} of {self.base}"
                )

            latest_dir = self.version_dir(LATEST)
            latest = self.latest_pointer()
            if latest is not None:
                target = self.version_dir(latest)
                if target.exists():
                    raise StoreCorruption(f"{target} already exists, refusing to replace it with {latest_dir}")
                log.info("Move %s to %s", latest_dir, target)
                os.rename(latest_dir, target)

            os.rename(slot, latest_dir)
            handle.promoted = True
            log.info("Version %d is now %s", new_version, latest_dir)

            for v in handle.staged_versions():
                dst = self.patch_path(v)
                if not dst.parent.is_dir():
                    log.warning("Version %d disappeared, dropping its patch", v)
                    continue
                os.replace(handle.patch_file(v), dst)
                log.info("The new patch outputs to %s", dst)

            self.sweep_intermediates(keep=handle.path)

    def describe(self) -> dict:
        latest = self.latest_pointer()
        out = []
        for v in self.list_versions():
            key = LATEST if v == latest else v
            entry = {
                "version": v,
                "latest": key == LATEST,
                "base_bytes": self.base_package(key).stat().st_size,
                "patch_target": None,
                "patch_bytes": None,
            }
            p = self.patch_path(key)
            if p.is_file():
                entry["patch_target"] = self.embedded_version(p)
                entry["patch_bytes"] = p.stat().st_size
            out.append(entry)
        return {"platform": self.platform, "latest": latest, "versions": out}
