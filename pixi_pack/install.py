"""Installers used by unpack.

Unpack hands the decoded channel to a :class:`PackageInstaller` and the
decoded wheels to a :class:`WheelInstaller`. The defaults below produce a
working prefix without network access:

- :class:`CondaPackageInstaller` extracts each package into a cache keyed by
  package identity (``<cache>/<subdir>/<name>-<version>-<build>``), links the
  files into the prefix (hard link, falling back to a copy), rewrites prefix
  placeholders, and writes ``conda-meta/<name>-<version>-<build>.json``.
- :class:`PipWheelInstaller` runs the prefix's own pip with ``--no-index``.
"""

import json
import logging
import os
import pathlib
import re
import shutil
import subprocess
import tempfile
import textwrap
import time
from typing import Any, Protocol

from pixi_pack.errors import InstallError, InvalidPackageError
from pixi_pack.package import extract_conda_package
from pixi_pack.platform import is_windows
from pixi_pack.records import CacheKey, PackageRecord, split_conda_extension

# bucket (subdir) -> file name -> record
ChannelIndex = dict[str, dict[str, PackageRecord]]

CONDA_META_DIRECTORY_NAME: str = "conda-meta"
_DEFAULT_PLACEHOLDER: str = "/opt/anaconda1anaconda2anaconda3"


class PackageInstaller(Protocol):
    """Installs the conda packages of a decoded pack into a prefix."""

    def install(
        self,
        *,
        index: ChannelIndex,
        channel_dir: pathlib.Path,
        prefix: pathlib.Path,
        cache_dir: pathlib.Path,
    ) -> None: ...


class WheelInstaller(Protocol):
    """Installs local wheels into the Python environment of a prefix."""

    def install(
        self,
        *,
        python: pathlib.Path,
        wheels: list[pathlib.Path],
        find_links: pathlib.Path,
    ) -> None: ...


def prefix_python(prefix: pathlib.Path, *, platform: str) -> pathlib.Path:
    """Return the interpreter path inside ``prefix``."""

    if is_windows(platform) is True:
        return prefix / "python.exe"
    return prefix / "bin" / "python"


def _python_version(index: ChannelIndex) -> str | None:
    for packages in index.values():
        for record in packages.values():
            if record.name == "python":
                return ".".join(record.version.split(".")[0:2])
    return None


def _replace_binary(data: bytes, placeholder: bytes, new_prefix: bytes) -> bytes:
    """Replace ``placeholder`` inside NUL-terminated strings, keeping their length."""

    if len(new_prefix) > len(placeholder):
        raise ValueError(f"prefix {new_prefix!r} is longer than the placeholder {placeholder!r}")

    pattern: re.Pattern[bytes] = re.compile(re.escape(placeholder) + b"([^\0]*?)\0")

    def _pad(m: re.Match[bytes]) -> bytes:
        out: bytes = new_prefix + m.group(1)
        return out + b"\0" * (len(m.group(0)) - len(out))

    return pattern.sub(_pad, data)


_ENTRY_POINT_TEMPLATE: str = textwrap.dedent(
    r'''
    # -*- coding: utf-8 -*-
    import re
    import sys

    from __MODULE__ import __IMPORT__

    if __name__ == "__main__":
        sys.argv[0] = re.sub(r"(-script\.pyw?|\.exe)?$", "", sys.argv[0])
        sys.exit(__CALL__())
    '''
).lstrip("\n")


class CondaPackageInstaller:
    """Default :class:`PackageInstaller`.

    :param platform: Platform of the prefix.
    :param logger: Optional logger.
    """

    def __init__(self, *, platform: str, logger: logging.Logger | None = None) -> None:
        self._platform: str = platform
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("pixi_pack")

    def install(
        self,
        *,
        index: ChannelIndex,
        channel_dir: pathlib.Path,
        prefix: pathlib.Path,
        cache_dir: pathlib.Path,
    ) -> None:
        """Install every package of ``index`` into ``prefix``.

        :raises InstallError: If a package cannot be extracted or linked.
        """

        t0: float = time.perf_counter()
        conda_meta: pathlib.Path = prefix / CONDA_META_DIRECTORY_NAME
        conda_meta.mkdir(parents=True, exist_ok=True)
        python_version: str | None = _python_version(index)

        count: int = 0
        for bucket in sorted(index):
            for file_name in sorted(index[bucket]):
                record: PackageRecord = index[bucket][file_name]
                package_path: pathlib.Path = channel_dir / bucket / file_name
                extracted: pathlib.Path = self._ensure_extracted(package_path, record, cache_dir)
                try:
                    paths_data: list[dict[str, Any]] = self._link_package(
                        extracted=extracted,
                        prefix=prefix,
                        record=record,
                        python_version=python_version,
                    )
                    self._write_prefix_record(
                        conda_meta=conda_meta,
                        record=record,
                        file_name=file_name,
                        package_path=package_path,
                        extracted=extracted,
                        paths_data=paths_data,
                    )
                except OSError as e:
                    raise InstallError(record.display(), str(e)) from e
                except ValueError as e:
                    raise InstallError(record.display(), str(e)) from e
                except KeyError as e:
                    raise InstallError(
                        record.display(), f"malformed package metadata: missing {e}"
                    ) from e
                count += 1

        t1: float = time.perf_counter()
        self._logger.info(f"pixi-unpack: installed {count} packages into {prefix} in {t1 - t0:.2f}s")

    def _ensure_extracted(
        self,
        package_path: pathlib.Path,
        record: PackageRecord,
        cache_dir: pathlib.Path,
    ) -> pathlib.Path:
        _stem, ext = split_conda_extension(package_path.name)
        key: CacheKey = CacheKey.for_conda(record, ext)
        target: pathlib.Path = cache_dir / key.bucket / key.directory_name
        if (target / "info" / "index.json").is_file() is True:
            if self._logger.isEnabledFor(logging.DEBUG) is True:
                self._logger.debug(f"pixi-unpack: cache hit for {record.display()}")
            return target

        if package_path.is_file() is False:
            raise InstallError(record.display(), f"package file {package_path} is missing from the pack")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp: pathlib.Path = pathlib.Path(
                tempfile.mkdtemp(prefix=f".{key.directory_name}.", dir=target.parent)
            )
        except OSError as e:
            raise InstallError(record.display(), str(e)) from e

        try:
            extract_conda_package(package_path, tmp)
            if target.exists() is True:
                shutil.rmtree(target)
            os.replace(tmp, target)
        except InvalidPackageError as e:
            shutil.rmtree(tmp, ignore_errors=True)
            raise InstallError(record.display(), e.reason) from e
        except OSError as e:
            shutil.rmtree(tmp, ignore_errors=True)
            raise InstallError(record.display(), str(e)) from e
        except BaseException:
            shutil.rmtree(tmp, ignore_errors=True)
            raise
        return target

    def _read_paths(self, extracted: pathlib.Path) -> list[dict[str, Any]]:
        """Read the file list of an extracted package."""

        paths_json: pathlib.Path = extracted / "info" / "paths.json"
        if paths_json.is_file() is True:
            data: Any = json.loads(paths_json.read_text(encoding="utf-8"))
            return list(data.get("paths", []))

        placeholders: dict[str, tuple[str, str]] = {}
        has_prefix: pathlib.Path = extracted / "info" / "has_prefix"
        if has_prefix.is_file() is True:
            for line in has_prefix.read_text(encoding="utf-8").splitlines():
                parts: list[str] = line.strip().split()
                if len(parts) == 3:
                    placeholders[parts[2]] = (parts[0], parts[1])
                elif len(parts) == 1:
                    placeholders[parts[0]] = (_DEFAULT_PLACEHOLDER, "text")

        entries: list[dict[str, Any]] = []
        files: pathlib.Path = extracted / "info" / "files"
        if files.is_file() is True:
            for line in files.read_text(encoding="utf-8").splitlines():
                rel: str = line.strip()
                if len(rel) == 0:
                    continue
                entry: dict[str, Any] = {"_path": rel, "path_type": "hardlink"}
                if rel in placeholders:
                    entry["prefix_placeholder"], entry["file_mode"] = placeholders[rel]
                entries.append(entry)
        return entries

    def _target_path(self, rel: str, *, record: PackageRecord, python_version: str | None) -> str:
        if record.noarch != "python":
            return rel

        if rel.startswith("site-packages/") is True or rel.startswith("python-scripts/") is True:
            if python_version is None:
                raise ValueError("noarch python package requires python in the environment")
        if rel.startswith("site-packages/") is True:
            sp_dir: str = "Lib/site-packages"
            if is_windows(self._platform) is False:
                sp_dir = f"lib/python{python_version}/site-packages"
            return sp_dir + rel[len("site-packages") :]
        if rel.startswith("python-scripts/") is True:
            bin_dir: str = "Scripts" if is_windows(self._platform) is True else "bin"
            return bin_dir + rel[len("python-scripts") :]
        return rel

    def _link_file(self, *, src: pathlib.Path, dst: pathlib.Path, entry: dict[str, Any], prefix: pathlib.Path) -> None:
        dst.parent.mkdir(parents=True, exist_ok=True)
        if dst.is_symlink() is True or dst.is_file() is True:
            dst.unlink()

        if entry.get("path_type") == "softlink" or src.is_symlink() is True:
            os.symlink(os.readlink(src), dst)
            return

        placeholder: str | None = entry.get("prefix_placeholder")
        if placeholder is not None:
            data: bytes = src.read_bytes()
            new_prefix: bytes = str(prefix).encode("utf-8")
            if entry.get("file_mode") == "binary":
                data = _replace_binary(data, placeholder.encode("utf-8"), new_prefix)
            else:
                data = data.replace(placeholder.encode("utf-8"), new_prefix)
            dst.write_bytes(data)
            shutil.copymode(src, dst)
            return

        if entry.get("no_link") is True:
            shutil.copy2(src, dst)
            return
        try:
            os.link(src, dst)
        except OSError:
            shutil.copy2(src, dst)

    def _link_package(
        self,
        *,
        extracted: pathlib.Path,
        prefix: pathlib.Path,
        record: PackageRecord,
        python_version: str | None,
    ) -> list[dict[str, Any]]:
        linked: list[dict[str, Any]] = []
        for entry in self._read_paths(extracted):
            rel: str = str(entry["_path"])
            target_rel: str = self._target_path(rel, record=record, python_version=python_version)
            dst: pathlib.Path = prefix.joinpath(*pathlib.PurePosixPath(target_rel).parts)
            if entry.get("path_type") == "directory":
                dst.mkdir(parents=True, exist_ok=True)
            else:
                self._link_file(src=extracted / rel, dst=dst, entry=entry, prefix=prefix)
            linked.append({**entry, "_path": target_rel})

        if record.noarch == "python":
            linked.extend(self._write_entry_points(extracted=extracted, prefix=prefix))
        return linked

    def _write_entry_points(self, *, extracted: pathlib.Path, prefix: pathlib.Path) -> list[dict[str, Any]]:
        """Create console scripts listed in ``info/link.json`` of noarch python packages."""

        link_json: pathlib.Path = extracted / "info" / "link.json"
        if link_json.is_file() is False:
            return []
        data: Any = json.loads(link_json.read_text(encoding="utf-8"))
        entry_points: list[str] = list((data.get("noarch") or {}).get("entry_points") or [])

        windows: bool = is_windows(self._platform)
        written: list[dict[str, Any]] = []
        for spec in entry_points:
            command, _, target = spec.partition("=")
            module, _, call = target.strip().partition(":")
            source: str = _ENTRY_POINT_TEMPLATE
            source = source.replace("__MODULE__", module.strip())
            source = source.replace("__IMPORT__", call.strip().split(".")[0])
            source = source.replace("__CALL__", call.strip())

            rel: str
            if windows is True:
                rel = f"Scripts/{command.strip()}-script.py"
            else:
                rel = f"bin/{command.strip()}"
                source = f"#!{prefix_python(prefix, platform=self._platform)}\n" + source
            path: pathlib.Path = prefix.joinpath(*pathlib.PurePosixPath(rel).parts)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(source, encoding="utf-8")
            os.chmod(path, 0o755)
            written.append({"_path": rel, "path_type": "unix_python_entry_point"})
        return written

    def _write_prefix_record(
        self,
        *,
        conda_meta: pathlib.Path,
        record: PackageRecord,
        file_name: str,
        package_path: pathlib.Path,
        extracted: pathlib.Path,
        paths_data: list[dict[str, Any]],
    ) -> None:
        data: dict[str, Any] = record.to_dict()
        data["fn"] = file_name
        data["url"] = package_path.resolve().as_uri()
        data["channel"] = package_path.parent.parent.resolve().as_uri()
        data["extracted_package_dir"] = str(extracted)
        data["files"] = [p["_path"] for p in paths_data]
        data["paths_data"] = {"paths": paths_data, "paths_version": 1}
        data["link"] = {"source": str(extracted), "type": 1}
        data["requested_spec"] = ""

        path: pathlib.Path = conda_meta / f"{record.name}-{record.version}-{record.build}.json"
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def _pip(python: pathlib.Path, args: list[str], *, logger: logging.Logger | None) -> None:
    """Invoke pip with the prefix interpreter.

    :param python: Interpreter of the prefix.
    :param args: Arguments after ``-m pip``.
    :param logger: Optional logger for debug output.
    :raises InstallError: If pip fails.
    """

    cmd: list[str] = [str(python), "-m", "pip", *args]
    if logger is not None and logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"pixi-unpack: running pip: {' '.join(cmd)}")

    try:
        proc = subprocess.run(cmd, check=False)
    except OSError as e:
        raise InstallError("pypi packages", f"cannot run {python}: {e}") from e
    if proc.returncode != 0:
        raise InstallError("pypi packages", f"pip invocation failed (exit={proc.returncode}): {' '.join(cmd)}")


class PipWheelInstaller:
    """Default :class:`WheelInstaller`: ``pip install --no-index --no-deps``."""

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("pixi_pack")

    def install(
        self,
        *,
        python: pathlib.Path,
        wheels: list[pathlib.Path],
        find_links: pathlib.Path,
    ) -> None:
        if len(wheels) == 0:
            return
        if python.exists() is False:
            raise InstallError("pypi packages", f"no python interpreter at {python}")

        t0: float = time.perf_counter()
        _pip(
            python,
            ["install", "--no-index", "--no-deps", "--find-links", str(find_links), *[str(w) for w in wheels]],
            logger=self._logger,
        )
        t1: float = time.perf_counter()
        self._logger.info(f"pixi-unpack: installed {len(wheels)} wheels in {t1 - t0:.2f}s")
