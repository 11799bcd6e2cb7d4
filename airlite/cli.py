"""Command line interface of airlite-patcher."""

from __future__ import annotations

import argparse
import json
import pathlib
import sys

from airlite import __version__
from airlite.errors import AirLiteError
from airlite.logging_config import setup_logging
from airlite.routers.auth import make_token
from airlite.services.builder import PatchBuilder
from airlite.services.container import HEADER_SIZE, read_header
from airlite.services.storage import VersionStore
from airlite.services.verifier import PatchVerifier
from airlite.settings import Settings, load_settings


def _log_level(verbose: int, quiet: int) -> str:
    if quiet >= 2:
        return "ERROR"
    if quiet >= 1:
        return "WARNING"
    if verbose >= 1:
        return "DEBUG"
    return "INFO"


def _platform(settings: Settings, platform: str) -> str:
    if platform not in settings.platforms:
        raise AirLiteError(
            f"The platform must be one of {', '.join(settings.platforms)}: {platform!r}"
        )
    return platform


def _cmd_pack(ns: argparse.Namespace, settings: Settings) -> int:
    builder = PatchBuilder.from_settings(settings, _platform(settings, ns.platform), ns.entry)
    result = builder.build_new_patch(patch_version=ns.patch_version)
    print(json.dumps(result.as_dict(), indent=2))
    return 0


def _cmd_verify(ns: argparse.Namespace, settings: Settings) -> int:
    verifier = PatchVerifier()
    if ns.files:
        if len(ns.files) != 3:
            raise AirLiteError("verify takes OLD PATCH EXPECTED, or --platform alone")
        old, patch, expected = ns.files
        version = verifier.verify(old, patch, expected)
        print(f"{patch} verified, reaches version {version}")
        return 0

    if not ns.platform:
        raise AirLiteError("verify needs --platform or OLD PATCH EXPECTED")
    store = VersionStore(settings.patch_root, _platform(settings, ns.platform))
    report = verifier.verify_store(store)
    print(json.dumps(report.as_dict(), indent=2))
    return 0 if report.ok else 1


def _cmd_versions(ns: argparse.Namespace, settings: Settings) -> int:
    store = VersionStore(settings.patch_root, _platform(settings, ns.platform))
    print(json.dumps(store.describe(), indent=2))
    return 0


def _cmd_inspect(ns: argparse.Namespace, settings: Settings) -> int:
    with open(ns.file, "rb") as f:
        data = f.read()
    header = read_header(data)
    print(f"pack version: {header.pack_version}")
    print(f"version:      {header.version}")
    print(f"checksum:     {header.checksum.hex()}")
    print(f"payload:      {len(data) - HEADER_SIZE} bytes")
    return 0


def _cmd_token(ns: argparse.Namespace, settings: Settings) -> int:
    print(make_token(ns.email, ns.role, settings=settings))
    return 0


COMMANDS = {
    "pack": _cmd_pack,
    "verify": _cmd_verify,
    "versions": _cmd_versions,
    "inspect": _cmd_inspect,
    "token": _cmd_token,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="airlite",
        description="Build and verify incremental patches of a React Native bundle.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("--config", type=pathlib.Path, default=None, help="YAML settings file.")
    parser.add_argument("--patch-root", type=pathlib.Path, default=None,
                        help="Directory holding one store per platform.")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("-q", "--quiet", action="count", default=0)
    sub = parser.add_subparsers(dest="command", required=True)

    p_pack = sub.add_parser("pack", help="Build a new patch for every published version.")
    p_pack.add_argument("--platform", required=True,
                        help="Which platform the new patch will apply, ios or android?")
    p_pack.add_argument("--entry", default=None, help="Entry file of your RN project. Default is index.")
    p_pack.add_argument("--patch-version", type=int, default=None,
                        help="Explicit version of the new release.")

    p_verify = sub.add_parser("verify", help="Verify published patches or a single patch file.")
    p_verify.add_argument("--platform", default=None)
    p_verify.add_argument("files", nargs="*", type=pathlib.Path, metavar="FILE",
                          help="OLD PATCH EXPECTED")

    p_versions = sub.add_parser("versions", help="List published versions.")
    p_versions.add_argument("--platform", required=True)

    p_inspect = sub.add_parser("inspect", help="Print the header of a container.")
    p_inspect.add_argument("file", type=pathlib.Path)

    p_token = sub.add_parser("token", help="Mint a bearer token for the admin API.")
    p_token.add_argument("--email", required=True)
    p_token.add_argument("--role", default="admin")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    ns = parser.parse_args(argv)

    settings = load_settings(ns.config, patch_root=ns.patch_root)
    level = settings.log_level if not (ns.verbose or ns.quiet) else _log_level(ns.verbose, ns.quiet)
    setup_logging(level)

    try:
        return COMMANDS[ns.command](ns, settings)
    except (AirLiteError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
