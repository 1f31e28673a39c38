"""Channel index and manifest files written into the pack.

The pack working directory doubles as a local conda channel::

    pixi-pack.json
    environment.yml
    channel/<subdir>/repodata.json
    channel/<subdir>/<package files>
    pypi/<wheels>
"""

import json
import logging
import pathlib
from typing import Any

import yaml

from pixi_pack import (
    CHANNEL_DIRECTORY_NAME,
    ENVIRONMENT_FILE_NAME,
    PIXI_PACK_METADATA_PATH,
    PYPI_DIRECTORY_NAME,
)
from pixi_pack.errors import OutputError
from pixi_pack.records import PixiPackMetadata, WorkingSet

REPODATA_FILE_NAME: str = "repodata.json"
REPODATA_VERSION: int = 1


def build_repodata(working_set: WorkingSet, *, platform: str) -> dict[str, dict[str, Any]]:
    """Group the conda packages of ``working_set`` into per-subdir repodata.

    ``noarch`` and ``platform`` are always present, even when empty.

    :param working_set: Working set.
    :param platform: Target platform.
    :returns: Subdir -> repodata document.
    """

    out: dict[str, dict[str, Any]] = {}
    for subdir in ("noarch", platform):
        out[subdir] = {"info": {"subdir": subdir}, "packages": {}, "packages.conda": {}}

    for pkg in working_set.conda_packages:
        subdir: str = pkg.record.subdir
        doc: dict[str, Any] = out.setdefault(
            subdir,
            {"info": {"subdir": subdir}, "packages": {}, "packages.conda": {}},
        )
        key: str = "packages.conda" if pkg.file_name.endswith(".conda") is True else "packages"
        doc[key][pkg.file_name] = pkg.record.to_dict()

    for doc in out.values():
        doc["repodata_version"] = REPODATA_VERSION
    return out


def render_environment_file(working_set: WorkingSet) -> str:
    """Render ``environment.yml`` for ``conda``/``micromamba``.

    :param working_set: Working set.
    :returns: YAML document text.
    """

    dependencies: list[Any] = sorted(p.record.display() for p in working_set.conda_packages)
    if len(working_set.wheels) > 0:
        pip_lines: list[str] = ["--no-index", f"--find-links ./{PYPI_DIRECTORY_NAME}"]
        pip_lines.extend(sorted(w.display() for w in working_set.wheels))
        dependencies.append({"pip": pip_lines})

    data: dict[str, Any] = {
        "channels": [f"./{CHANNEL_DIRECTORY_NAME}", "nodefaults"],
        "dependencies": dependencies,
    }
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def _write_text(path: pathlib.Path, text: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
    except OSError as e:
        raise OutputError(path, str(e)) from e


def write_manifests(
    *,
    working_set: WorkingSet,
    output_dir: pathlib.Path,
    metadata: PixiPackMetadata,
    logger: logging.Logger | None = None,
) -> None:
    """Write repodata, ``environment.yml`` and ``pixi-pack.json`` into ``output_dir``.

    :param working_set: Final working set.
    :param output_dir: Pack working directory (package files already in place).
    :param metadata: Pack metadata.
    :param logger: Optional logger.
    :raises OutputError: If a file cannot be written.
    """

    if logger is None:
        logger = logging.getLogger("pixi_pack")

    repodata: dict[str, dict[str, Any]] = build_repodata(working_set, platform=metadata.platform)
    for subdir, doc in sorted(repodata.items()):
        path: pathlib.Path = output_dir / CHANNEL_DIRECTORY_NAME / subdir / REPODATA_FILE_NAME
        _write_text(path, json.dumps(doc, indent=2, sort_keys=True) + "\n")
        if logger.isEnabledFor(logging.DEBUG) is True:
            count: int = len(doc["packages"]) + len(doc["packages.conda"])
            logger.debug(f"pixi-pack: {path} ({count} packages)")

    _write_text(output_dir / ENVIRONMENT_FILE_NAME, render_environment_file(working_set))
    _write_text(output_dir / PIXI_PACK_METADATA_PATH, metadata.to_json())
    logger.info(f"pixi-pack: wrote channel index for {len(repodata)} subdirs")
