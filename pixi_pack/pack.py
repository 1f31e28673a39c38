"""Pack pipeline.

lock -> download -> inject -> validate -> channel index -> encode.

The download phase is a barrier: indexing and encoding only start once every
package is on disk.
"""

from dataclasses import dataclass
import logging
import pathlib
import tempfile
import time

import httpx

from pixi_pack.archive import write_archive, write_directory
from pixi_pack.config import PackConfig
from pixi_pack.download import DownloadObserver, build_client, download_packages
from pixi_pack.inject import inject_packages, validate_working_set
from pixi_pack.lockfile import LockedEnvironment, load_environment, working_set_from
from pixi_pack.records import OutputMode, PackageRef, PixiPackMetadata, WorkingSet
from pixi_pack.repodata import write_manifests
from pixi_pack.selfextract import fetch_extractor, script_extension, write_self_extracting

DEFAULT_OUTPUT_STEM: str = "environment"


@dataclass(frozen=True, slots=True)
class PackOptions:
    """Options for one pack invocation.

    :ivar environment: Environment name in the lock file.
    :ivar platform: Conda platform to pack for.
    :ivar manifest_path: ``pixi.toml``, ``pyproject.toml`` or the project directory.
    :ivar output_file: Output path (file, or directory for ``OutputMode.DIRECTORY``).
    :ivar injected_packages: Local ``.conda``/``.tar.bz2``/``.whl`` files to add.
    :ivar extractor_source: Path or URL of ``pixi-unpack`` for self-extracting output.
    """

    environment: str
    platform: str
    manifest_path: pathlib.Path
    output_file: pathlib.Path
    metadata: PixiPackMetadata
    injected_packages: tuple[pathlib.Path, ...] = ()
    ignore_pypi_non_wheel: bool = False
    output_mode: OutputMode = OutputMode.ARCHIVE
    cache_dir: pathlib.Path | None = None
    auth_file: pathlib.Path | None = None
    config: PackConfig | None = None
    extractor_source: str | None = None


def default_output_file(mode: OutputMode, platform: str) -> pathlib.Path:
    """Default output path for ``mode`` (``environment.tar``, ``.sh``/``.ps1`` or a directory)."""

    if mode == OutputMode.EXECUTABLE:
        return pathlib.Path(DEFAULT_OUTPUT_STEM + script_extension(platform))
    if mode == OutputMode.DIRECTORY:
        return pathlib.Path(DEFAULT_OUTPUT_STEM)
    return pathlib.Path(DEFAULT_OUTPUT_STEM + ".tar")


async def pack(
    options: PackOptions,
    *,
    logger: logging.Logger | None = None,
    observer: DownloadObserver | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Pack a locked environment into ``options.output_file``.

    :param options: Pack options.
    :param logger: Optional logger.
    :param observer: Optional download progress observer.
    :param transport: Optional HTTP transport override.
    :raises PixiPackError: On any failure; nothing is left at the output path then.
    """

    if logger is None:
        logger = logging.getLogger("pixi_pack")

    t_total0: float = time.perf_counter()
    logger.info(
        f"pixi-pack: environment={options.environment} platform={options.platform} "
        f"mode={options.output_mode.value} output={options.output_file}"
    )

    locked: LockedEnvironment = load_environment(
        manifest_path=options.manifest_path,
        environment=options.environment,
        platform=options.platform,
        ignore_pypi_non_wheel=options.ignore_pypi_non_wheel,
        logger=logger,
    )
    working_set: WorkingSet = working_set_from(locked)

    async with build_client(auth_file=options.auth_file, transport=transport) as client:
        with tempfile.TemporaryDirectory(prefix="pixi-pack-") as td:
            work_dir: pathlib.Path = pathlib.Path(td)

            t0: float = time.perf_counter()
            await download_packages(
                working_set=working_set,
                output_dir=work_dir,
                client=client,
                cache_dir=options.cache_dir,
                config=options.config,
                observer=observer,
            )
            t1: float = time.perf_counter()
            logger.info(f"pixi-pack: downloads complete in {t1 - t0:.2f}s")

            injected: list[PackageRef] = inject_packages(
                paths=list(options.injected_packages),
                working_set=working_set,
                output_dir=work_dir,
                logger=logger,
            )
            if len(injected) > 0:
                validate_working_set(working_set, logger=logger)

            write_manifests(
                working_set=working_set,
                output_dir=work_dir,
                metadata=options.metadata,
                logger=logger,
            )

            if options.output_mode == OutputMode.ARCHIVE:
                write_archive(root=work_dir, output=options.output_file, logger=logger)
            elif options.output_mode == OutputMode.DIRECTORY:
                write_directory(root=work_dir, output=options.output_file, logger=logger)
            elif options.output_mode == OutputMode.EXECUTABLE:
                extractor: bytes = await fetch_extractor(
                    source=options.extractor_source,
                    platform=options.platform,
                    client=client,
                    logger=logger,
                )
                write_self_extracting(
                    root=work_dir,
                    output=options.output_file,
                    platform=options.platform,
                    extractor=extractor,
                    logger=logger,
                )
            else:
                raise AssertionError(f"Unhandled output mode: {options.output_mode}")

    t_total1: float = time.perf_counter()
    logger.info(f"pixi-pack: done in {t_total1 - t_total0:.2f}s")
