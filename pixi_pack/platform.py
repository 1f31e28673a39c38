"""Platform helpers.

Conda names platforms ``<os>-<arch>`` (``linux-64``, ``osx-arm64``,
``win-64``, ...). This module maps the running host onto that naming and
answers the few platform questions the codec needs (line endings, script
flavour, extractor download triple).
"""

import platform as _platform
import sys

from pixi_pack.errors import UnknownPlatformError

KNOWN_PLATFORMS: frozenset[str] = frozenset(
    {
        "linux-32",
        "linux-64",
        "linux-aarch64",
        "linux-armv6l",
        "linux-armv7l",
        "linux-ppc64le",
        "linux-ppc64",
        "linux-s390x",
        "linux-riscv32",
        "linux-riscv64",
        "osx-64",
        "osx-arm64",
        "win-32",
        "win-64",
        "win-arm64",
        "emscripten-wasm32",
        "wasi-wasm32",
        "zos-z",
    }
)


def _normalize_arch(machine: str) -> str:
    """Normalize a machine string into a small set of expected values.

    :param machine: Raw machine string (e.g. from ``platform.machine()``).
    :returns: Normalized architecture string.
    """

    m: str = machine.lower()
    if m == "amd64" or m == "x86_64":
        return "x86_64"
    if m == "aarch64" or m == "arm64":
        return "aarch64"
    if m == "armv7l":
        return "armv7l"
    if m == "armv6l":
        return "armv6l"
    if m == "i386" or m == "i686" or m == "x86":
        return "i686"
    return m


def _conda_arch(arch: str) -> str:
    """Map a normalized architecture onto the conda platform suffix.

    :param arch: Normalized architecture.
    :returns: Conda architecture suffix (e.g. ``64``).
    """

    if arch == "x86_64":
        return "64"
    if arch == "i686":
        return "32"
    return arch


def current_platform() -> str:
    """Return the conda platform of the running host.

    :returns: Platform string such as ``linux-64``.
    :raises UnknownPlatformError: If the host does not map onto a known platform.
    """

    arch: str = _conda_arch(_normalize_arch(_platform.machine()))
    os_name: str
    if sys.platform.startswith("linux") is True:
        os_name = "linux"
    elif sys.platform == "darwin":
        os_name = "osx"
        if arch == "aarch64":
            arch = "arm64"
    elif sys.platform == "win32":
        os_name = "win"
        if arch == "aarch64":
            arch = "arm64"
    else:
        raise UnknownPlatformError(f"{sys.platform}-{_platform.machine()}")

    return validate_platform(f"{os_name}-{arch}")


def validate_platform(value: str) -> str:
    """Validate a platform string.

    :param value: Candidate platform string.
    :returns: The platform string.
    :raises UnknownPlatformError: If ``value`` is not a known conda platform.
    """

    if value not in KNOWN_PLATFORMS:
        raise UnknownPlatformError(value)
    return value


def is_windows(platform: str) -> bool:
    """Check whether a platform is a Windows platform.

    :param platform: Conda platform string.
    :returns: ``True`` for ``win-*`` platforms.
    """

    return platform.startswith("win-") is True


def line_ending(platform: str) -> str:
    """Return the text line terminator used for scripts targeting ``platform``."""

    if is_windows(platform) is True:
        return "\r\n"
    return "\n"


def extractor_triple(platform: str) -> str:
    """Return the release target triple of the extractor binary for ``platform``.

    :param platform: Conda platform string.
    :returns: Target triple, including ``.exe`` on Windows.
    :raises UnknownPlatformError: If no extractor is published for the platform.
    """

    triples: dict[str, str] = {
        "linux-64": "x86_64-unknown-linux-musl",
        "linux-aarch64": "aarch64-unknown-linux-musl",
        "osx-64": "x86_64-apple-darwin",
        "osx-arm64": "aarch64-apple-darwin",
        "win-64": "x86_64-pc-windows-msvc.exe",
        "win-arm64": "aarch64-pc-windows-msvc.exe",
    }
    triple: str | None = triples.get(platform)
    if triple is None:
        raise UnknownPlatformError(platform)
    return triple
