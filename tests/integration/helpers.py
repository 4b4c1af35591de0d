#!/usr/bin/env python3
# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

from pathlib import Path
from subprocess import CalledProcessError, check_call, check_output


def get_command_path(command):
    try:
        return check_output(["which", command]).decode().strip()
    except CalledProcessError:
        return ""


def build_deb(directory: Path, name: str, version: str) -> Path:
    """Build a minimal architecture-independent package which ships /usr/bin/<name>."""
    root = directory / f"{name}_{version}"
    (root / "DEBIAN").mkdir(parents=True)
    (root / "usr" / "bin").mkdir(parents=True)

    script = root / "usr" / "bin" / name
    script.write_text(f"#!/bin/sh\necho {name} {version}\n")
    script.chmod(0o755)

    (root / "DEBIAN" / "control").write_text(
        f"Package: {name}\n"
        f"Version: {version}\n"
        "Architecture: all\n"
        "Maintainer: dpkg provider tests <root@localhost>\n"
        "Description: package built by the dpkg provider integration tests\n"
    )

    deb = directory / f"{name}_{version}_all.deb"
    check_call(["dpkg-deb", "--build", "--root-owner-group", str(root), str(deb)])
    return deb
