"""Unpack pipeline.

Decodes a pack into a scratch directory, checks its metadata against the
host, installs the conda packages and wheels into ``<output>/<env_name>`` and
finally writes ``<output>/activate.<ext>``. The activation script is the last
thing written: any earlier failure leaves no script pointing at a partially
built prefix.
"""

import asyncio
from dataclasses import dataclass
import json
import logging
import pathlib
import shutil
import tarfile
import tempfile
import time
from typing import Any

from pixi_pack import (
    CHANNEL_DIRECTORY_NAME,
    DEFAULT_PIXI_PACK_VERSION,
    PIXI_PACK_METADATA_PATH,
    PYPI_DIRECTORY_NAME,
)
from pixi_pack.archive import safe_extract_tar
from pixi_pack.errors import (
    ArchiveFormatError,
    MetadataError,
    OutputError,
    PlatformMismatchError,
    UnsupportedPackVersionError,
)
from pixi_pack.install import (
    CONDA_META_DIRECTORY_NAME,
    ChannelIndex,
    CondaPackageInstaller,
    PackageInstaller,
    PipWheelInstaller,
    WheelInstaller,
    prefix_python,
)
from pixi_pack.platform import current_platform
from pixi_pack.records import PackageRecord, PixiPackMetadata
from pixi_pack.repodata import REPODATA_FILE_NAME
from pixi_pack.selfextract import extract_self_extracting, is_self_extracting
from pixi_pack.shell import Shell, activation_script, find_activate_scripts

DEFAULT_ENV_NAME: str = "env"

HISTORY_CONTENT: str = "// not relevant for pixi but for `conda run -p`"


@dataclass(frozen=True, slots=True)
class UnpackOptions:
    """Options for unpacking a pack.

    :ivar pack_file: Pack to unpack (tar, self-extracting script or pack directory).
    :ivar output_directory: Directory receiving ``<env_name>/`` and the activation script.
    :ivar env_name: Name of the prefix directory.
    :ivar shell: Activation script dialect; defaults to the host's usual shell.
    :ivar cache_dir: Persistent package cache; defaults to a scratch directory.
    """

    pack_file: pathlib.Path
    output_directory: pathlib.Path
    env_name: str = DEFAULT_ENV_NAME
    shell: Shell | None = None
    package_installer: PackageInstaller | None = None
    wheel_installer: WheelInstaller | None = None
    cache_dir: pathlib.Path | None = None


def unarchive(pack_file: pathlib.Path, target_dir: pathlib.Path) -> None:
    """Decode a pack into ``target_dir``.

    :param pack_file: Plain tar, self-extracting script, or pack directory.
    :param target_dir: Destination directory.
    :raises ArchiveFormatError: If the pack cannot be decoded.
    """

    if pack_file.is_dir() is True:
        try:
            shutil.copytree(pack_file, target_dir, dirs_exist_ok=True)
        except OSError as e:
            raise ArchiveFormatError(pack_file, str(e)) from e
        return
    if pack_file.is_file() is False:
        raise ArchiveFormatError(pack_file, "file does not exist")

    try:
        if tarfile.is_tarfile(pack_file) is True:
            with tarfile.open(pack_file, mode="r|*") as tf:
                safe_extract_tar(tf, target_dir, source=pack_file)
            return
        data: bytes = pack_file.read_bytes()
    except (OSError, tarfile.TarError) as e:
        raise ArchiveFormatError(pack_file, str(e)) from e

    if is_self_extracting(data) is False:
        raise ArchiveFormatError(pack_file, "neither a tar archive nor a self-extracting script")
    extract_self_extracting(data, target_dir, source=pack_file)


def read_metadata(unpack_dir: pathlib.Path) -> PixiPackMetadata:
    """Read ``pixi-pack.json`` from a decoded pack.

    :raises MetadataError: If the file is missing or malformed.
    """

    path: pathlib.Path = unpack_dir / PIXI_PACK_METADATA_PATH
    try:
        text: str = path.read_text(encoding="utf-8")
    except OSError as e:
        raise MetadataError(path, str(e)) from e
    try:
        return PixiPackMetadata.from_json(text)
    except ValueError as e:
        raise MetadataError(path, str(e)) from e


def validate_metadata(
    metadata: PixiPackMetadata,
    *,
    host_platform: str,
    logger: logging.Logger | None = None,
) -> None:
    """Check that a pack can be unpacked on this host.

    :raises UnsupportedPackVersionError: If the pack format version is not understood.
    :raises PlatformMismatchError: If the pack targets another platform.
    """

    if logger is None:
        logger = logging.getLogger("pixi_pack")

    if metadata.version != DEFAULT_PIXI_PACK_VERSION:
        raise UnsupportedPackVersionError(metadata.version)
    if metadata.platform != host_platform:
        raise PlatformMismatchError(metadata.platform, host_platform)
    if metadata.pixi_pack_version is None:
        logger.warning("pixi-unpack: pack does not record the pixi-pack version that created it")


def collect_packages(channel_dir: pathlib.Path) -> ChannelIndex:
    """Read every ``<subdir>/repodata.json`` below ``channel_dir``.

    :returns: Subdir -> file name -> record.
    :raises ArchiveFormatError: If a repodata file is malformed.
    """

    index: ChannelIndex = {}
    if channel_dir.is_dir() is False:
        return index

    for subdir in sorted(p for p in channel_dir.iterdir() if p.is_dir() is True):
        repodata_path: pathlib.Path = subdir / REPODATA_FILE_NAME
        if repodata_path.is_file() is False:
            continue
        try:
            data: Any = json.loads(repodata_path.read_text(encoding="utf-8"))
            packages: dict[str, PackageRecord] = {}
            for key in ("packages", "packages.conda"):
                for file_name, entry in (data.get(key) or {}).items():
                    packages[file_name] = PackageRecord.from_dict(entry, defaults={"subdir": subdir.name})
        except (OSError, ValueError, TypeError, AttributeError) as e:
            raise ArchiveFormatError(repodata_path, str(e)) from e
        if len(packages) > 0:
            index[subdir.name] = packages
    return index


def collect_wheels(pypi_dir: pathlib.Path) -> list[pathlib.Path]:
    if pypi_dir.is_dir() is False:
        return []
    return sorted(pypi_dir.glob("*.whl"))


def _write_activation_script(
    *,
    shell: Shell,
    prefix: pathlib.Path,
    output_directory: pathlib.Path,
    platform: str,
) -> pathlib.Path:
    path: pathlib.Path = output_directory / f"activate.{shell.extension}"
    text: str = activation_script(
        shell,
        prefix,
        platform=platform,
        activate_scripts=find_activate_scripts(shell, prefix),
    )
    try:
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(text)
    except OSError as e:
        raise OutputError(path, str(e)) from e
    return path


async def unpack(options: UnpackOptions, *, logger: logging.Logger | None = None) -> pathlib.Path:
    """Unpack a pack into ``options.output_directory``.

    :param options: Unpack options.
    :param logger: Optional logger.
    :returns: Path of the written activation script.
    :raises PixiPackError: On any failure; no activation script is written then.
    """

    if logger is None:
        logger = logging.getLogger("pixi_pack")

    t_total0: float = time.perf_counter()
    host_platform: str = current_platform()
    output_directory: pathlib.Path = options.output_directory.absolute()
    prefix: pathlib.Path = output_directory / options.env_name
    logger.info(f"pixi-unpack: unpacking {options.pack_file} into {prefix}")

    with tempfile.TemporaryDirectory(prefix="pixi-pack-unpack-") as td:
        scratch: pathlib.Path = pathlib.Path(td)
        unpack_dir: pathlib.Path = scratch / "pack"

        t0: float = time.perf_counter()
        await asyncio.to_thread(unarchive, options.pack_file, unpack_dir)
        t1: float = time.perf_counter()
        logger.info(f"pixi-unpack: decoded pack in {t1 - t0:.2f}s")

        metadata: PixiPackMetadata = read_metadata(unpack_dir)
        validate_metadata(metadata, host_platform=host_platform, logger=logger)

        cache_dir: pathlib.Path = options.cache_dir if options.cache_dir is not None else scratch / "cache"
        channel_dir: pathlib.Path = unpack_dir / CHANNEL_DIRECTORY_NAME
        index: ChannelIndex = collect_packages(channel_dir)
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"pixi-unpack: cache_dir={cache_dir}")

        try:
            prefix.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputError(prefix, str(e)) from e

        installer: PackageInstaller = options.package_installer or CondaPackageInstaller(
            platform=host_platform,
            logger=logger,
        )
        await asyncio.to_thread(
            installer.install,
            index=index,
            channel_dir=channel_dir,
            prefix=prefix,
            cache_dir=cache_dir,
        )

        history: pathlib.Path = prefix / CONDA_META_DIRECTORY_NAME / "history"
        try:
            history.parent.mkdir(parents=True, exist_ok=True)
            history.write_text(HISTORY_CONTENT, encoding="utf-8")
        except OSError as e:
            raise OutputError(history, str(e)) from e

        wheels: list[pathlib.Path] = collect_wheels(unpack_dir / PYPI_DIRECTORY_NAME)
        if len(wheels) > 0:
            wheel_installer: WheelInstaller = options.wheel_installer or PipWheelInstaller(logger=logger)
            await asyncio.to_thread(
                wheel_installer.install,
                python=prefix_python(prefix, platform=host_platform),
                wheels=wheels,
                find_links=unpack_dir / PYPI_DIRECTORY_NAME,
            )

    shell: Shell = options.shell if options.shell is not None else Shell.default_for(host_platform)
    script: pathlib.Path = _write_activation_script(
        shell=shell,
        prefix=prefix,
        output_directory=output_directory,
        platform=host_platform,
    )

    t_total1: float = time.perf_counter()
    logger.info(f"pixi-unpack: wrote {script}; done in {t_total1 - t_total0:.2f}s")
    return script
