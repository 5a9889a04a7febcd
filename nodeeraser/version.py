"""Build identification and the user agent string sent by eraser components."""

from __future__ import annotations

import platform
import sys

# Values stamped in at build time; empty when running from a source tree.
BUILD_VERSION = ""
BUILD_TIME = ""
VCS_COMMIT = ""

DEFAULT_REPO = "ghcr.io/azure"

_OS_NAMES = {"win32": "windows", "cygwin": "windows"}
_ARCH_NAMES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "armv7l": "arm",
}


def _os_name() -> str:
    return _OS_NAMES.get(sys.platform, sys.platform.rstrip("0123456789"))


def _arch_name() -> str:
    machine = platform.machine().lower()
    return _ARCH_NAMES.get(machine, machine)


OS_NAME = _os_name()
ARCH = _arch_name()


def get_user_agent(component: str) -> str:
    """Return ``eraser/<component>/<version> (<os>/<arch>) <commit>/<timestamp>``."""
    return (
        f"eraser/{component}/{BUILD_VERSION} ({OS_NAME}/{ARCH}) "
        f"{VCS_COMMIT}/{BUILD_TIME}"
    )