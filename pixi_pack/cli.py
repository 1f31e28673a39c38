"""Command line interface for pixi-pack."""

import argparse
import asyncio
import logging
import pathlib
import sys
from typing import Callable

from pixi_pack import __version__
from pixi_pack.config import PackConfig, load_config
from pixi_pack.download import LoggingDownloadObserver
from pixi_pack.errors import PixiPackError, UnknownPlatformError
from pixi_pack.pack import PackOptions, default_output_file, pack
from pixi_pack.platform import current_platform, validate_platform
from pixi_pack.records import OutputMode, PixiPackMetadata
from pixi_pack.shell import Shell
from pixi_pack.unpack import DEFAULT_ENV_NAME, UnpackOptions, unpack


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the pixi-pack logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("pixi_pack")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _platform_arg(value: str) -> str:
    try:
        return validate_platform(value)
    except UnknownPlatformError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _add_logging_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def _add_pack_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "manifest_path",
        type=pathlib.Path,
        nargs="?",
        default=pathlib.Path("."),
        help="Path to pixi.toml, pyproject.toml or the project directory (defaults to cwd).",
    )
    parser.add_argument(
        "-e",
        "--environment",
        type=str,
        default="default",
        help="Environment to pack.",
    )
    parser.add_argument(
        "-p",
        "--platform",
        type=_platform_arg,
        default=None,
        help="Platform to pack for (defaults to the current platform).",
    )
    parser.add_argument(
        "-o",
        "--output-file",
        type=pathlib.Path,
        default=None,
        help="Output path (defaults to environment.tar, environment.sh/.ps1 or environment/).",
    )
    parser.add_argument(
        "--auth-file",
        type=pathlib.Path,
        default=None,
        help="Authentication file for fetching packages (defaults to $RATTLER_AUTH_FILE).",
    )
    parser.add_argument(
        "--use-cache",
        type=pathlib.Path,
        default=None,
        metavar="DIR",
        help="Reuse downloaded packages from this cache directory.",
    )
    parser.add_argument(
        "-i",
        "--inject",
        type=pathlib.Path,
        action="append",
        default=[],
        help="Add a local .conda, .tar.bz2 or .whl package. Can be passed multiple times.",
    )
    parser.add_argument(
        "--ignore-pypi-non-wheel",
        action="store_true",
        help="Skip PyPI packages that are not wheels instead of failing.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--create-executable",
        action="store_true",
        help="Write a self-extracting script instead of a tar archive.",
    )
    mode.add_argument(
        "--directory-only",
        action="store_true",
        help="Write the pack contents as a plain directory.",
    )
    parser.add_argument(
        "--pixi-unpack-source",
        type=str,
        default=None,
        help="Path or URL of the pixi-unpack executable embedded by --create-executable.",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=pathlib.Path,
        default=None,
        help="Config file with [mirrors] and [concurrency] settings.",
    )
    _add_logging_arguments(parser)


def _add_unpack_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "pack_file",
        type=pathlib.Path,
        help="Pack to unpack (tar archive, self-extracting script or pack directory).",
    )
    parser.add_argument(
        "-o",
        "--output-directory",
        type=pathlib.Path,
        default=pathlib.Path("."),
        help="Directory to unpack into (defaults to cwd).",
    )
    parser.add_argument(
        "-e",
        "--env-name",
        type=str,
        default=DEFAULT_ENV_NAME,
        help="Name of the environment directory.",
    )
    parser.add_argument(
        "-s",
        "--shell",
        type=str,
        choices=[s.value for s in Shell],
        default=None,
        help="Shell for the activation script (defaults to bash, or powershell on Windows).",
    )
    _add_logging_arguments(parser)


def _run_pack(ns: argparse.Namespace) -> int:
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    platform: str = ns.platform if ns.platform is not None else current_platform()
    mode: OutputMode = OutputMode.ARCHIVE
    if ns.create_executable is True:
        mode = OutputMode.EXECUTABLE
    elif ns.directory_only is True:
        mode = OutputMode.DIRECTORY

    config: PackConfig | None = None
    if ns.config is not None:
        config = load_config(ns.config)

    output_file: pathlib.Path = ns.output_file if ns.output_file is not None else default_output_file(mode, platform)
    options: PackOptions = PackOptions(
        environment=ns.environment,
        platform=platform,
        manifest_path=ns.manifest_path,
        output_file=output_file,
        metadata=PixiPackMetadata.default(platform),
        injected_packages=tuple(ns.inject),
        ignore_pypi_non_wheel=ns.ignore_pypi_non_wheel,
        output_mode=mode,
        cache_dir=ns.use_cache,
        auth_file=ns.auth_file,
        config=config,
        extractor_source=ns.pixi_unpack_source,
    )
    asyncio.run(pack(options, logger=logger, observer=LoggingDownloadObserver(logger)))
    return 0


def _run_unpack(ns: argparse.Namespace) -> int:
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    options: UnpackOptions = UnpackOptions(
        pack_file=ns.pack_file,
        output_directory=ns.output_directory,
        env_name=ns.env_name,
        shell=Shell(ns.shell) if ns.shell is not None else None,
    )
    asyncio.run(unpack(options, logger=logger))
    return 0


def _guarded(run: Callable[[argparse.Namespace], int], ns: argparse.Namespace) -> int:
    try:
        return run(ns)
    except PixiPackError as e:
        logging.getLogger("pixi_pack").error(f"error: {e}")
        return 1


def pack_main(argv: list[str] | None = None) -> int:
    """Run the ``pixi-pack`` CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="pixi-pack",
        description="Pack a locked pixi environment into a single portable file.",
    )
    parser.add_argument("--version", action="version", version=f"pixi-pack {__version__}")
    _add_pack_arguments(parser)
    return _guarded(_run_pack, parser.parse_args(argv))


def unpack_main(argv: list[str] | None = None) -> int:
    """Run the ``pixi-unpack`` CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="pixi-unpack",
        description="Unpack an environment created by pixi-pack.",
    )
    parser.add_argument("--version", action="version", version=f"pixi-unpack {__version__}")
    _add_unpack_arguments(parser)
    return _guarded(_run_unpack, parser.parse_args(argv))


def main(argv: list[str] | None = None) -> int:
    """Run the combined ``python -m pixi_pack {pack,unpack}`` CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="pixi-pack",
        description="Pack locked pixi environments and unpack them without network access.",
    )
    parser.add_argument("--version", action="version", version=f"pixi-pack {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_pack = subparsers.add_parser("pack", help="Pack an environment.")
    _add_pack_arguments(p_pack)
    p_unpack = subparsers.add_parser("unpack", help="Unpack a pack.")
    _add_unpack_arguments(p_unpack)

    ns = parser.parse_args(argv)
    if ns.command == "pack":
        return _guarded(_run_pack, ns)
    if ns.command == "unpack":
        return _guarded(_run_unpack, ns)

    raise AssertionError(f"Unhandled command: {ns.command}")
