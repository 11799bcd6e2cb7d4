from __future__ import annotations

from pathlib import Path

import pytest

from airlite.services.builder import PatchBuilder
from airlite.services.bundler import BundleResult
from airlite.services.storage import VersionStore


class FakeBundler:
    """Stands in for `react-native bundle`: writes `files` into the output dir."""

    def __init__(self, files=None, stdout="bundle done", stderr="", exit_status=0, exc=None):
        self.files = files if files is not None else {"main.jsbundle": b"console.log('v0')"}
        self.stdout = stdout
        self.stderr = stderr
        self.exit_status = exit_status
        self.exc = exc
        self.calls = []

    def __call__(self, platform, entry, output_dir: Path, **kwargs) -> BundleResult:
        self.calls.append((platform, entry, output_dir))
        if self.exc is not None:
            raise self.exc
        for name, data in self.files.items():
            p = output_dir / name
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        return BundleResult(exit_status=self.exit_status, stdout=self.stdout, stderr=self.stderr)


@pytest.fixture
def store(tmp_path: Path) -> VersionStore:
    return VersionStore(tmp_path / "airlite", "android")


@pytest.fixture
def bundler() -> FakeBundler:
    return FakeBundler()


@pytest.fixture
def builder(store: VersionStore, bundler: FakeBundler) -> PatchBuilder:
    return PatchBuilder(store, bundler=bundler, max_workers=2)


def payload(i: int) -> bytes:
    # distinct but similar payloads, like consecutive bundle builds
    return (b"var bundle = 'shared prefix';\n" * 200) + f"release {i}\n".encode() * (i + 1)


def snapshot_tree(root: Path) -> dict:
    return {
        str(p.relative_to(root)): (p.read_bytes() if p.is_file() else None)
        for p in sorted(root.rglob("*"))
    }
