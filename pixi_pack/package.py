"""Readers for package files.

Two conda package formats exist:

- ``.tar.bz2``: a bzip2-compressed tarball holding ``info/`` and the payload;
- ``.conda``: a zip holding ``info-<stem>.tar.zst`` and ``pkg-<stem>.tar.zst``.

Wheels are zips with a ``<name>-<version>.dist-info/METADATA`` file.
"""

import contextlib
import hashlib
import json
import pathlib
import tarfile
from typing import Any, Iterator
import zipfile

from packaging.metadata import parse_email
import zstandard

from pixi_pack.archive import safe_extract_tar
from pixi_pack.errors import ArchiveFormatError, InvalidPackageError

INDEX_JSON_PATH: str = "info/index.json"


@contextlib.contextmanager
def _open_zst_tar(zf: zipfile.ZipFile, member: str) -> Iterator[tarfile.TarFile]:
    dctx: zstandard.ZstdDecompressor = zstandard.ZstdDecompressor()
    with zf.open(member, "r") as raw, dctx.stream_reader(raw) as reader:
        with tarfile.open(fileobj=reader, mode="r|") as tf:
            yield tf


def _conda_component(zf: zipfile.ZipFile, prefix: str) -> str | None:
    for name in zf.namelist():
        if name.startswith(prefix) is True and name.endswith(".tar.zst") is True and "/" not in name:
            return name
    return None


def _read_member(tf: tarfile.TarFile, name: str) -> bytes | None:
    for member in tf:
        if member.name == name or member.name == f"./{name}":
            f = tf.extractfile(member)
            if f is None:
                return None
            with f:
                return f.read()
    return None


def read_index_json(path: pathlib.Path) -> dict[str, Any]:
    """Read ``info/index.json`` from a conda package.

    :param path: ``.conda`` or ``.tar.bz2`` file.
    :returns: Parsed ``index.json``.
    :raises InvalidPackageError: If the file is not a readable conda package.
    """

    data: bytes | None = None
    try:
        if path.name.endswith(".conda") is True:
            with zipfile.ZipFile(path, "r") as zf:
                info: str | None = _conda_component(zf, "info-")
                if info is None:
                    raise InvalidPackageError(path, "missing info-*.tar.zst")
                with _open_zst_tar(zf, info) as tf:
                    data = _read_member(tf, INDEX_JSON_PATH)
        elif path.name.endswith(".tar.bz2") is True:
            with tarfile.open(path, mode="r|bz2") as tf:
                data = _read_member(tf, INDEX_JSON_PATH)
        else:
            raise InvalidPackageError(path, "not a .conda or .tar.bz2 file")
    except (OSError, zipfile.BadZipFile, tarfile.TarError, zstandard.ZstdError) as e:
        raise InvalidPackageError(path, str(e)) from e

    if data is None:
        raise InvalidPackageError(path, f"missing {INDEX_JSON_PATH}")
    try:
        index: Any = json.loads(data)
    except json.JSONDecodeError as e:
        raise InvalidPackageError(path, f"invalid {INDEX_JSON_PATH}: {e}") from e
    if isinstance(index, dict) is False:
        raise InvalidPackageError(path, f"{INDEX_JSON_PATH} is not an object")
    return index


def extract_conda_package(path: pathlib.Path, dest_dir: pathlib.Path) -> None:
    """Extract a conda package (info and payload) into ``dest_dir``.

    Permission bits are kept as stored in the package.

    :raises InvalidPackageError: If the package cannot be read or contains unsafe members.
    """

    try:
        if path.name.endswith(".conda") is True:
            with zipfile.ZipFile(path, "r") as zf:
                for prefix in ("info-", "pkg-"):
                    member: str | None = _conda_component(zf, prefix)
                    if member is None:
                        raise InvalidPackageError(path, f"missing {prefix}*.tar.zst")
                    with _open_zst_tar(zf, member) as tf:
                        safe_extract_tar(tf, dest_dir, source=path, preserve_modes=True)
        elif path.name.endswith(".tar.bz2") is True:
            with tarfile.open(path, mode="r|bz2") as tf:
                safe_extract_tar(tf, dest_dir, source=path, preserve_modes=True)
        else:
            raise InvalidPackageError(path, "not a .conda or .tar.bz2 file")
    except ArchiveFormatError as e:
        raise InvalidPackageError(path, e.reason) from e
    except (OSError, zipfile.BadZipFile, tarfile.TarError, zstandard.ZstdError) as e:
        raise InvalidPackageError(path, str(e)) from e


def read_wheel_metadata(path: pathlib.Path) -> tuple[str, str]:
    """Read the project name and version of a wheel.

    :param path: ``.whl`` file.
    :returns: ``(name, version)`` from ``*.dist-info/METADATA``.
    :raises InvalidPackageError: If the wheel has no readable metadata.
    """

    try:
        with zipfile.ZipFile(path, "r") as zf:
            candidates: list[str] = [
                n
                for n in zf.namelist()
                if n.count("/") == 1 and n.endswith(".dist-info/METADATA") is True
            ]
            if len(candidates) != 1:
                raise InvalidPackageError(path, "expected exactly one *.dist-info/METADATA")
            raw: bytes = zf.read(candidates[0])
    except (OSError, zipfile.BadZipFile) as e:
        raise InvalidPackageError(path, str(e)) from e

    fields, _unparsed = parse_email(raw)
    name: str | None = fields.get("name")
    version: str | None = fields.get("version")
    if name is None or version is None:
        raise InvalidPackageError(path, "METADATA lacks Name or Version")
    return str(name).strip(), str(version).strip()


def hash_file(path: pathlib.Path) -> tuple[str, str, int]:
    """Hash a file.

    :param path: File to hash.
    :returns: ``(md5, sha256, size)``.
    """

    md5 = hashlib.md5()
    sha256 = hashlib.sha256()
    size: int = 0
    with open(path, "rb") as f:
        while True:
            chunk: bytes = f.read(1024 * 1024)
            if len(chunk) == 0:
                break
            md5.update(chunk)
            sha256.update(chunk)
            size += len(chunk)
    return md5.hexdigest(), sha256.hexdigest(), size
