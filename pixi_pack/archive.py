"""Archive codec.

A pack is a plain, uncompressed tar of the pack working directory. The tar is
deterministic: members are sorted by path, directories are included, and
timestamps, ownership and modes are normalized, so the same input directory
always yields the same bytes.

The writers in this module never leave a partial file at the final output
path: everything is written next to it under a temporary name and renamed on
success.
"""

import contextlib
import io
import logging
import os
import pathlib
import re
import shutil
import stat
import tarfile
import tempfile
import time
from typing import IO, Iterator

from pixi_pack.errors import ArchiveFormatError, OutputError

_DIR_MODE: int = 0o755
_EXEC_MODE: int = 0o755
_FILE_MODE: int = 0o644
_DRIVE_RE: re.Pattern[str] = re.compile(r"^[A-Za-z]:")


def _collect_paths(root: pathlib.Path) -> list[tuple[str, pathlib.Path]]:
    """Collect ``(arcname, path)`` pairs below ``root`` in lexicographic order.

    :param root: Directory to archive.
    :returns: Sorted member list (directories included).
    :raises OutputError: If the tree contains something other than files and directories.
    """

    members: list[tuple[str, pathlib.Path]] = []
    for p in root.rglob("*"):
        if p.is_symlink() is True or (p.is_file() is False and p.is_dir() is False):
            raise OutputError(p, "only regular files and directories can be packed")
        arcname: str = p.relative_to(root).as_posix()
        members.append((arcname, p))
    members.sort(key=lambda m: m[0])
    return members


def _normalized_info(arcname: str, path: pathlib.Path) -> tarfile.TarInfo:
    info: tarfile.TarInfo = tarfile.TarInfo(arcname)
    info.mtime = 0
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    if path.is_dir() is True:
        info.type = tarfile.DIRTYPE
        info.mode = _DIR_MODE
        info.size = 0
        return info

    st: os.stat_result = path.stat()
    info.type = tarfile.REGTYPE
    info.size = st.st_size
    if st.st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH) != 0:
        info.mode = _EXEC_MODE
    else:
        info.mode = _FILE_MODE
    return info


def write_tar(*, root: pathlib.Path, fileobj: IO[bytes]) -> int:
    """Write a deterministic tar of ``root`` to ``fileobj``.

    :param root: Directory to archive; members are relative to it.
    :param fileobj: Binary stream to write to.
    :returns: Number of members written.
    :raises OutputError: If the tree contains unsupported entries.
    """

    members: list[tuple[str, pathlib.Path]] = _collect_paths(root)
    with tarfile.open(fileobj=fileobj, mode="w", format=tarfile.PAX_FORMAT) as tf:
        for arcname, path in members:
            info: tarfile.TarInfo = _normalized_info(arcname, path)
            if info.isdir() is True:
                tf.addfile(info)
                continue
            with open(path, "rb") as f:
                tf.addfile(info, f)
    return len(members)


def tar_bytes(root: pathlib.Path) -> bytes:
    """Return the deterministic tar of ``root`` as bytes."""

    buf: io.BytesIO = io.BytesIO()
    write_tar(root=root, fileobj=buf)
    return buf.getvalue()


@contextlib.contextmanager
def atomic_output_file(output: pathlib.Path, *, mode: int = _FILE_MODE) -> Iterator[IO[bytes]]:
    """Open a temporary file next to ``output`` and rename it into place on success.

    On failure the temporary file is removed and ``output`` is left untouched.

    :param output: Final output path.
    :param mode: Permission bits of the finished file.
    :raises OutputError: If the temporary file cannot be created or renamed.
    """

    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{output.name}.", suffix=".tmp", dir=output.parent)
    except OSError as e:
        raise OutputError(output, str(e)) from e

    tmp: pathlib.Path = pathlib.Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            yield f
        os.chmod(tmp, mode)
        tmp.replace(output)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise OutputError(output, str(e)) from e
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def write_archive(
    *,
    root: pathlib.Path,
    output: pathlib.Path,
    logger: logging.Logger | None = None,
) -> None:
    """Write ``root`` as a plain tar artifact at ``output``.

    :param root: Pack working directory.
    :param output: Output file path.
    :param logger: Optional logger.
    :raises OutputError: If the output cannot be written.
    """

    if logger is None:
        logger = logging.getLogger("pixi_pack")

    t0: float = time.perf_counter()
    with atomic_output_file(output) as f:
        count: int = write_tar(root=root, fileobj=f)
    t1: float = time.perf_counter()
    size: int = output.stat().st_size
    logger.info(
        f"pixi-pack: wrote {output} ({count} entries, {size / (1024 * 1024):.1f} MiB) in {t1 - t0:.2f}s"
    )


def write_directory(
    *,
    root: pathlib.Path,
    output: pathlib.Path,
    logger: logging.Logger | None = None,
) -> None:
    """Copy ``root`` to the directory ``output``.

    The tree is copied into a temporary sibling directory and renamed.

    :param root: Pack working directory.
    :param output: Output directory; must not exist or be empty.
    :param logger: Optional logger.
    :raises OutputError: If ``output`` is a non-empty directory or a file.
    """

    if logger is None:
        logger = logging.getLogger("pixi_pack")

    if output.exists() is True:
        if output.is_dir() is False:
            raise OutputError(output, "exists and is not a directory")
        if any(output.iterdir()) is True:
            raise OutputError(output, "directory is not empty")

    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        tmp: pathlib.Path = pathlib.Path(tempfile.mkdtemp(prefix=f".{output.name}.", dir=output.parent))
    except OSError as e:
        raise OutputError(output, str(e)) from e

    try:
        shutil.copytree(root, tmp, dirs_exist_ok=True)
        os.chmod(tmp, _DIR_MODE)
        if output.exists() is True:
            output.rmdir()
        tmp.replace(output)
    except OSError as e:
        shutil.rmtree(tmp, ignore_errors=True)
        raise OutputError(output, str(e)) from e
    except BaseException:
        shutil.rmtree(tmp, ignore_errors=True)
        raise

    logger.info(f"pixi-pack: wrote directory {output}")


def _check_member_name(name: str, *, source: pathlib.Path) -> pathlib.PurePosixPath:
    if "\\" in name:
        raise ArchiveFormatError(source, f"refusing to extract backslash path: {name!r}")
    p: pathlib.PurePosixPath = pathlib.PurePosixPath(name)
    if len(p.parts) > 0 and _DRIVE_RE.match(p.parts[0]) is not None:
        raise ArchiveFormatError(source, f"refusing to extract drive-like path: {name!r}")
    if p.is_absolute() is True:
        raise ArchiveFormatError(source, f"refusing to extract absolute path: {name!r}")
    if ".." in p.parts:
        raise ArchiveFormatError(source, f"refusing to extract parent-traversal path: {name!r}")
    return p


def _check_link_target(member: tarfile.TarInfo, *, rel: pathlib.PurePosixPath, source: pathlib.Path) -> None:
    target: pathlib.PurePosixPath = pathlib.PurePosixPath(member.linkname)
    if target.is_absolute() is True:
        raise ArchiveFormatError(source, f"refusing to extract absolute link: {member.name!r}")
    base: pathlib.PurePosixPath = rel.parent if member.issym() is True else pathlib.PurePosixPath()
    depth: int = 0
    for part in (base / target).parts:
        if part == "..":
            depth -= 1
        elif part != ".":
            depth += 1
        if depth < 0:
            raise ArchiveFormatError(source, f"refusing to extract link escaping the target: {member.name!r}")


def safe_extract_tar(
    tf: tarfile.TarFile,
    dest_dir: pathlib.Path,
    *,
    source: pathlib.Path,
    preserve_modes: bool = False,
) -> None:
    """Extract a tar stream into ``dest_dir``, refusing entries that escape it.

    Works on streaming archives (``r|*`` modes): members are handled in order.

    :param tf: Open tar file.
    :param dest_dir: Destination directory.
    :param source: Archive path used in error messages.
    :param preserve_modes: Keep member permission bits instead of normalizing them.
    :raises ArchiveFormatError: For unsafe or unsupported members.
    """

    dest_dir.mkdir(parents=True, exist_ok=True)
    for member in tf:
        rel: pathlib.PurePosixPath = _check_member_name(member.name, source=source)
        if len(rel.parts) == 0:
            continue
        out_path: pathlib.Path = dest_dir.joinpath(*rel.parts)

        if member.isdir() is True:
            out_path.mkdir(parents=True, exist_ok=True)
            continue

        out_path.parent.mkdir(parents=True, exist_ok=True)
        if out_path.is_symlink() is True or out_path.exists() is True:
            out_path.unlink()

        if member.issym() is True:
            _check_link_target(member, rel=rel, source=source)
            os.symlink(member.linkname, out_path)
            continue
        if member.islnk() is True:
            _check_link_target(member, rel=rel, source=source)
            link_rel: pathlib.PurePosixPath = _check_member_name(member.linkname, source=source)
            os.link(dest_dir.joinpath(*link_rel.parts), out_path)
            continue
        if member.isfile() is False:
            raise ArchiveFormatError(source, f"unsupported member type for {member.name!r}")

        src = tf.extractfile(member)
        if src is None:
            raise ArchiveFormatError(source, f"cannot read member {member.name!r}")
        with src, open(out_path, "wb") as dst:
            shutil.copyfileobj(src, dst)

        mode: int
        if preserve_modes is True:
            mode = member.mode & 0o777
        elif member.mode & 0o111 != 0:
            mode = _EXEC_MODE
        else:
            mode = _FILE_MODE
        os.chmod(out_path, mode)


def extract_tar_bytes(data: bytes, dest_dir: pathlib.Path, *, source: pathlib.Path) -> None:
    """Extract an in-memory tar into ``dest_dir``.

    :raises ArchiveFormatError: If the bytes are not a valid tar.
    """

    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r|") as tf:
            safe_extract_tar(tf, dest_dir, source=source)
    except (OSError, tarfile.TarError) as e:
        raise ArchiveFormatError(source, str(e)) from e
