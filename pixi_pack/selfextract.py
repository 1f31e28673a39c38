"""Self-extracting scripts.

Layout of a self-extracting pack (``EOL`` is ``\\n`` for POSIX targets and
``\\r\\n`` for Windows targets)::

    [header][EOL][base64(tar)][EOL][SENTINEL][EOL][base64(pixi-unpack)]

The header is a bash script (POSIX) or a PowerShell script (Windows). At run
time it slices the two payloads out of its own file, decodes them, and runs
the embedded ``pixi-unpack`` against the decoded tar. The header text and the
framing above are a contract with that script and must stay byte-exact.
"""

import base64
import binascii
import logging
import pathlib
import textwrap
import time
from typing import IO
import urllib.parse
import urllib.request

import httpx

from pixi_pack import __version__
from pixi_pack.archive import atomic_output_file, extract_tar_bytes, tar_bytes
from pixi_pack.errors import ArchiveFormatError, DownloadError, MissingSentinelError
from pixi_pack.platform import extractor_triple, is_windows, line_ending

POSIX_HEADER_MARKER: str = "@@END_HEADER@@"
POSIX_SENTINEL: str = "@@END_ARCHIVE@@"
WINDOWS_HEADER_MARKER: str = "__END_HEADER__"
WINDOWS_SENTINEL: str = "__END_ARCHIVE__"

EXTRACTOR_URL_TEMPLATE: str = (
    "https://github.com/Quantco/pixi-pack/releases/download/v{version}/pixi-unpack-{triple}"
)

# Multiple of 3 so that encoded chunks concatenate into one base64 stream.
_ENCODE_CHUNK: int = 3 * 256 * 1024

_POSIX_HEADER: str = textwrap.dedent(
    r'''
    #!/usr/bin/env bash

    set -euo pipefail
    TEMPDIR="$(mktemp -d)"
    trap 'rm -rf "$TEMPDIR"' EXIT
    USAGE="
    Usage: $0 [OPTIONS]

    Arguments:
      Path to an environment packed using pixi-pack

    Options:
      -o, --output-directory <DIR>    Where to unpack the environment. The environment will be unpacked into a subdirectory of this path [default: .]
      -e, --env-name <NAME>           Name of the environment [default: env]
      -s, --shell <SHELL>             Sets the shell [options: bash, zsh, fish, powershell, cmd]
      -v, --verbose                   Increase logging verbosity
      -q, --quiet                     Decrease logging verbosity
      -h, --help                      Print help
    "

    for arg in "$@"; do
      if [ "$arg" = "-h" ] || [ "$arg" = "--help" ]; then
        echo "$USAGE"
        exit 0
      fi
    done

    archive_begin=$(grep -anm 1 "^@@END_HEADER@@" "$0" | awk -F: '{print $1}')
    archive_end=$(grep -anm 1 "^@@END_ARCHIVE@@" "$0" | awk -F: '{print $1}')

    if [ -z "$archive_begin" ] || [ -z "$archive_end" ]; then
      echo "ERROR: Markers @@END_HEADER@@ or @@END_ARCHIVE@@ not found." >&2
      exit 1
    fi

    archive_begin=$((archive_begin + 2))
    archive_end=$((archive_end - 1))
    pixi_unpack_start=$((archive_end + 2))

    echo "Unpacking payload ..."
    tail -n +$archive_begin "$0" | head -n $((archive_end - archive_begin + 1)) > "$TEMPDIR/archive_temp"
    tail -n +$pixi_unpack_start "$0" > "$TEMPDIR/pixi-unpack_temp"

    if base64 --version 2>&1 | grep -q 'GNU'; then
      base64 -d "$TEMPDIR/archive_temp" > "$TEMPDIR/archive.tar"
      base64 -d "$TEMPDIR/pixi-unpack_temp" > "$TEMPDIR/pixi-unpack"
    else
      base64 -d -i "$TEMPDIR/archive_temp" > "$TEMPDIR/archive.tar"
      base64 -d -i "$TEMPDIR/pixi-unpack_temp" > "$TEMPDIR/pixi-unpack"
    fi

    chmod +x "$TEMPDIR/pixi-unpack"

    "$TEMPDIR/pixi-unpack" "$@" "$TEMPDIR/archive.tar"

    exit 0
    @@END_HEADER@@
    '''
).lstrip("\n")

_WINDOWS_HEADER: str = textwrap.dedent(
    r'''
    $ErrorActionPreference = "Stop"
    $TEMPDIR = Join-Path ([System.IO.Path]::GetTempPath()) ([System.Guid]::NewGuid().ToString())
    New-Item -ItemType Directory -Path $TEMPDIR | Out-Null
    $USAGE = @"
    Usage: $($MyInvocation.MyCommand.Name) [OPTIONS]

    Arguments:
      Path to an environment packed using pixi-pack

    Options:
      -o, --output-directory <DIR>    Where to unpack the environment. The environment will be unpacked into a subdirectory of this path [default: .]
      -e, --env-name <NAME>           Name of the environment [default: env]
      -s, --shell <SHELL>             Sets the shell [options: bash, zsh, fish, powershell, cmd]
      -v, --verbose                   Increase logging verbosity
      -q, --quiet                     Decrease logging verbosity
      -h, --help                      Print help
    "@

    if ($args -contains "-h" -or $args -contains "--help") {
        Write-Output $USAGE
        exit 0
    }

    $lines = Get-Content -LiteralPath $PSCommandPath
    $archiveBegin = [array]::IndexOf($lines, "__END_HEADER__")
    $archiveEnd = [array]::IndexOf($lines, "__END_ARCHIVE__")

    if ($archiveBegin -lt 0 -or $archiveEnd -lt 0) {
        Write-Error "ERROR: Markers __END_HEADER__ or __END_ARCHIVE__ not found."
        exit 1
    }

    Write-Output "Unpacking payload ..."
    $archiveB64 = ($lines[($archiveBegin + 1)..($archiveEnd - 1)] -join "").Trim()
    $pixiUnpackB64 = ($lines[($archiveEnd + 1)..($lines.Length - 1)] -join "").Trim()
    $archivePath = Join-Path $TEMPDIR "archive.tar"
    $pixiUnpackPath = Join-Path $TEMPDIR "pixi-unpack.exe"
    [System.IO.File]::WriteAllBytes($archivePath, [System.Convert]::FromBase64String($archiveB64))
    [System.IO.File]::WriteAllBytes($pixiUnpackPath, [System.Convert]::FromBase64String($pixiUnpackB64))

    try {
        & $pixiUnpackPath @args $archivePath
        $exitCode = $LASTEXITCODE
    } finally {
        Remove-Item -Recurse -Force -LiteralPath $TEMPDIR
    }

    exit $exitCode
    __END_HEADER__
    '''
).lstrip("\n")


def header_text(platform: str) -> str:
    """Return the script header for ``platform`` with the platform's line endings.

    The header ends with its end-of-header marker line.
    """

    if is_windows(platform) is True:
        return _WINDOWS_HEADER.replace("\n", "\r\n")
    return _POSIX_HEADER


def sentinel(platform: str) -> str:
    """Return the archive sentinel for ``platform``."""

    if is_windows(platform) is True:
        return WINDOWS_SENTINEL
    return POSIX_SENTINEL


def script_extension(platform: str) -> str:
    """Return the self-extracting script extension (``.sh`` or ``.ps1``)."""

    if is_windows(platform) is True:
        return ".ps1"
    return ".sh"


def default_extractor_url(platform: str, *, version: str = __version__) -> str:
    """Release URL of the ``pixi-unpack`` binary for ``platform``.

    :raises UnknownPlatformError: If no binary is published for ``platform``.
    """

    return EXTRACTOR_URL_TEMPLATE.format(version=version, triple=extractor_triple(platform))


async def fetch_extractor(
    *,
    source: str | None,
    platform: str,
    client: httpx.AsyncClient,
    logger: logging.Logger | None = None,
) -> bytes:
    """Load the ``pixi-unpack`` executable embedded into self-extracting packs.

    :param source: Local path, ``file://`` URL or ``http(s)://`` URL; ``None`` uses the release URL.
    :param platform: Target platform.
    :param client: HTTP client for remote sources.
    :param logger: Optional logger.
    :returns: Executable bytes.
    :raises DownloadError: If the executable cannot be loaded.
    """

    if logger is None:
        logger = logging.getLogger("pixi_pack")

    location: str = source if source is not None else default_extractor_url(platform)
    logger.info(f"pixi-pack: loading pixi-unpack from {location}")

    parts = urllib.parse.urlsplit(location)
    if parts.scheme in ("http", "https"):
        try:
            response: httpx.Response = await client.get(location)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DownloadError("pixi-unpack", location, f"HTTP status {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise DownloadError("pixi-unpack", location, f"{type(e).__name__}: {e}") from e
        return response.content

    path: pathlib.Path
    if parts.scheme == "file":
        path = pathlib.Path(urllib.request.url2pathname(parts.path))
    else:
        path = pathlib.Path(location)
    try:
        return path.read_bytes()
    except OSError as e:
        raise DownloadError("pixi-unpack", location, str(e)) from e


def _write_base64(f: IO[bytes], data: bytes) -> None:
    """Write ``data`` base64-encoded without line wrapping."""

    i: int = 0
    n: int = len(data)
    while i < n:
        f.write(base64.b64encode(data[i : i + _ENCODE_CHUNK]))
        i += _ENCODE_CHUNK


def write_self_extracting_stream(
    f: IO[bytes],
    *,
    archive: bytes,
    extractor: bytes,
    platform: str,
) -> None:
    """Write the framed script to an open binary stream."""

    eol: bytes = line_ending(platform).encode("ascii")
    f.write(header_text(platform).encode("utf-8"))
    f.write(eol)
    _write_base64(f, archive)
    f.write(eol)
    f.write(sentinel(platform).encode("ascii"))
    f.write(eol)
    _write_base64(f, extractor)


def write_self_extracting(
    *,
    root: pathlib.Path,
    output: pathlib.Path,
    platform: str,
    extractor: bytes,
    logger: logging.Logger | None = None,
) -> None:
    """Write ``root`` as a self-extracting script at ``output``.

    :param root: Pack working directory.
    :param output: Output script path.
    :param platform: Target platform (selects header, sentinel and line endings).
    :param extractor: ``pixi-unpack`` executable bytes.
    :param logger: Optional logger.
    :raises OutputError: If the output cannot be written.
    """

    if logger is None:
        logger = logging.getLogger("pixi_pack")

    t0: float = time.perf_counter()
    archive: bytes = tar_bytes(root)
    mode: int = 0o644 if is_windows(platform) is True else 0o755
    with atomic_output_file(output, mode=mode) as f:
        write_self_extracting_stream(f, archive=archive, extractor=extractor, platform=platform)
    t1: float = time.perf_counter()

    size: int = output.stat().st_size
    logger.info(
        f"pixi-pack: wrote self-extracting {output} ({size / (1024 * 1024):.1f} MiB) in {t1 - t0:.2f}s"
    )


def _find_marker_line(data: bytes, marker: bytes, start: int = 0) -> int:
    """Find ``marker`` at the start of a line; returns the marker offset or -1."""

    if start == 0 and data.startswith(marker) is True:
        return 0
    idx: int = data.find(b"\n" + marker, max(start - 1, 0))
    if idx < 0:
        return -1
    return idx + 1


def is_self_extracting(data: bytes) -> bool:
    """Check whether ``data`` looks like a self-extracting script."""

    for marker in (POSIX_HEADER_MARKER, WINDOWS_HEADER_MARKER):
        if _find_marker_line(data, marker.encode("ascii")) >= 0:
            return True
    return False


def split_self_extracting(data: bytes, *, source: pathlib.Path) -> tuple[bytes, bytes]:
    """Decode the two payloads of a self-extracting script.

    :param data: Script bytes.
    :param source: Script path used in error messages.
    :returns: ``(archive, extractor)`` bytes.
    :raises MissingSentinelError: If the header marker or sentinel is missing.
    :raises ArchiveFormatError: If a payload is not valid base64.
    """

    header_marker: bytes
    end_marker: bytes
    header_at: int = _find_marker_line(data, POSIX_HEADER_MARKER.encode("ascii"))
    if header_at >= 0:
        header_marker = POSIX_HEADER_MARKER.encode("ascii")
        end_marker = POSIX_SENTINEL.encode("ascii")
    else:
        header_at = _find_marker_line(data, WINDOWS_HEADER_MARKER.encode("ascii"))
        if header_at < 0:
            raise MissingSentinelError(source, POSIX_HEADER_MARKER)
        header_marker = WINDOWS_HEADER_MARKER.encode("ascii")
        end_marker = WINDOWS_SENTINEL.encode("ascii")

    payload_start: int = header_at + len(header_marker)
    sentinel_at: int = _find_marker_line(data, end_marker, payload_start)
    if sentinel_at < 0:
        raise MissingSentinelError(source, end_marker.decode("ascii"))

    try:
        archive: bytes = base64.b64decode(b"".join(data[payload_start:sentinel_at].split()), validate=True)
        extractor: bytes = base64.b64decode(
            b"".join(data[sentinel_at + len(end_marker) :].split()),
            validate=True,
        )
    except binascii.Error as e:
        raise ArchiveFormatError(source, f"invalid base64 payload: {e}") from e
    return archive, extractor


def extract_self_extracting(data: bytes, dest_dir: pathlib.Path, *, source: pathlib.Path) -> None:
    """Extract the archive embedded in a self-extracting script into ``dest_dir``."""

    archive, _extractor = split_self_extracting(data, source=source)
    extract_tar_bytes(archive, dest_dir, source=source)
