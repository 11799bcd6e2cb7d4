# airlite/services/bundler.py
from __future__ import annotations

import io
import logging
import os
import subprocess
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)

JSBUNDLE_NAME = "main.jsbundle"
PLATFORMS = ("android", "ios")


@dataclass(frozen=True)
class BundleResult:
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.stderr.strip()


def bundle_command(platform: str, entry: str, output_dir: Path, executable: str = "react-native") -> list[str]:
    if platform not in PLATFORMS:
        raise ValueError(f"Only ios and android are supported: {platform!r}")
    entry = entry or "index"
    return [
        executable, "bundle",
        "--platform", platform,
        "--entry-file", f"{entry}.{platform}.js",
        "--dev", "false",
        "--bundle-output", str(output_dir / JSBUNDLE_NAME),
        "--assets-dest", str(output_dir),
    ]


def run_external_bundler(
    platform: str,
    entry: str,
    output_dir: Path,
    *,
    executable: str = "react-native",
    timeout: Optional[float] = None,
) -> BundleResult:
    """
    Run `react-native bundle` into output_dir and wait for it.
    Timeouts and a missing executable propagate to the caller as exceptions.
    """

    cmd = bundle_command(platform, entry, output_dir, executable)
    log.info("Running %s", " ".join(cmd))
    proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    return BundleResult(exit_status=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.mode = 0o755 if info.isdir() else 0o644
    return info


def archive_directory(root: Path) -> bytes:
    """Tar a directory tree into bytes that depend only on names and contents."""

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            rel_dir = Path(dirpath).relative_to(root)
            for name in dirnames:
                p = Path(dirpath) / name
                tar.addfile(_normalize(tar.gettarinfo(str(p), (rel_dir / name).as_posix())))
            for name in sorted(filenames):
                p = Path(dirpath) / name
                info = _normalize(tar.gettarinfo(str(p), (rel_dir / name).as_posix()))
                with open(p, "rb") as f:
                    tar.addfile(info, f)
    return buf.getvalue()
