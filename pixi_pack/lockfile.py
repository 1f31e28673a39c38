"""``pixi.lock`` reader and package classifier.

The lock is a YAML document. Each environment lists, per platform, the URLs
of its ``conda`` and ``pypi`` packages; the top-level ``packages`` table holds
the record for every URL. Lock format versions 4 to 6 are understood:
version 6 keys package entries by ``conda:``/``pypi:``, older versions use
``kind:`` plus ``url:``.
"""

from dataclasses import dataclass
import logging
import pathlib
import posixpath
from typing import Any
import urllib.parse

from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import InvalidWheelFilename, canonicalize_name, parse_wheel_filename
import yaml

from pixi_pack.errors import (
    EnvironmentNotAvailableError,
    LockFileError,
    ManifestError,
    PlatformNotAvailableError,
    PypiNonWheelError,
)
from pixi_pack.records import (
    CondaPackage,
    PackageRecord,
    PypiSourceDist,
    PypiWheel,
    WorkingSet,
    parse_conda_file_name,
)

LOCK_FILE_NAME: str = "pixi.lock"
SUPPORTED_LOCK_VERSIONS: frozenset[int] = frozenset({4, 5, 6})


@dataclass(frozen=True, slots=True)
class LockedEnvironment:
    """Packages of one environment/platform pair, classified by kind."""

    conda_packages: list[CondaPackage]
    wheels: list[PypiWheel]
    source_dists: list[PypiSourceDist]


def url_file_name(url: str) -> str:
    """Return the last path segment of a URL or path."""

    path: str = urllib.parse.urlsplit(url).path
    return urllib.parse.unquote(posixpath.basename(path.rstrip("/")))


def locate_lock_file(manifest_path: pathlib.Path) -> pathlib.Path:
    """Find ``pixi.lock`` for a manifest.

    :param manifest_path: ``pixi.toml``, ``pyproject.toml`` or the project directory.
    :returns: Lock file path.
    :raises ManifestError: If the manifest or lock file does not exist.
    """

    if manifest_path.exists() is False:
        raise ManifestError(manifest_path, "path does not exist")

    project_dir: pathlib.Path
    if manifest_path.is_dir() is True:
        project_dir = manifest_path
    else:
        project_dir = manifest_path.parent

    lock_path: pathlib.Path = project_dir / LOCK_FILE_NAME
    if lock_path.is_file() is False:
        raise ManifestError(manifest_path, f"{LOCK_FILE_NAME} not found in {project_dir}")
    return lock_path


def read_lock_file(lock_path: pathlib.Path) -> dict[str, Any]:
    """Parse a lock file.

    :param lock_path: Path to ``pixi.lock``.
    :returns: Parsed YAML document.
    :raises LockFileError: If the document is not a supported lock file.
    """

    try:
        with open(lock_path, "r", encoding="utf-8") as f:
            data: Any = yaml.safe_load(f)
    except OSError as e:
        raise LockFileError(lock_path, str(e)) from e
    except yaml.YAMLError as e:
        raise LockFileError(lock_path, str(e)) from e

    if isinstance(data, dict) is False:
        raise LockFileError(lock_path, "expected a mapping at the top level")

    version: Any = data.get("version")
    if version not in SUPPORTED_LOCK_VERSIONS:
        raise LockFileError(lock_path, f"unsupported lock file version {version!r}")
    if isinstance(data.get("environments"), dict) is False:
        raise LockFileError(lock_path, "missing 'environments' table")
    if isinstance(data.get("packages"), list) is False:
        raise LockFileError(lock_path, "missing 'packages' list")
    return data


def _package_kind_and_url(entry: dict[str, Any]) -> tuple[str, str] | None:
    if "conda" in entry:
        return "conda", str(entry["conda"])
    if "pypi" in entry:
        return "pypi", str(entry["pypi"])
    kind: Any = entry.get("kind")
    if kind in ("conda", "pypi") and "url" in entry:
        return str(kind), str(entry["url"])
    return None


def _resolve_location(url: str, lock_dir: pathlib.Path) -> str:
    """Turn lock-relative paths into absolute ones; URLs are kept as is."""

    scheme: str = urllib.parse.urlsplit(url).scheme
    if len(scheme) > 1:
        return url
    path: pathlib.Path = pathlib.Path(url)
    if path.is_absolute() is False:
        path = lock_dir / path
    return str(path)


def _conda_package(entry: dict[str, Any], url: str, lock_path: pathlib.Path) -> CondaPackage:
    file_name: str = url_file_name(url)
    defaults: dict[str, Any] = {}
    try:
        name, version, build = parse_conda_file_name(file_name)
        defaults.update({"name": name, "version": version, "build": build})
    except ValueError:
        pass

    parent: str = posixpath.basename(posixpath.dirname(urllib.parse.urlsplit(url).path.rstrip("/")))
    if len(parent) > 0:
        defaults["subdir"] = parent

    try:
        record: PackageRecord = PackageRecord.from_dict(entry, defaults=defaults)
    except (TypeError, ValueError) as e:
        raise LockFileError(lock_path, f"invalid conda package {url}: {e}") from e

    if file_name.endswith(".conda") is False and file_name.endswith(".tar.bz2") is False:
        raise LockFileError(lock_path, f"conda package {url} is not a .conda or .tar.bz2 archive")

    return CondaPackage(
        record=record,
        url=_resolve_location(url, lock_path.parent),
        file_name=file_name,
    )


def _requirement_names(entry: dict[str, Any], lock_path: pathlib.Path) -> set[str]:
    names: set[str] = set()
    for req in entry.get("requires_dist") or []:
        try:
            names.add(canonicalize_name(Requirement(str(req)).name))
        except InvalidRequirement as e:
            raise LockFileError(
                lock_path,
                f"invalid requirement {req!r} of pypi package {entry.get('name')}: {e}",
            ) from e
    return names


def load_environment(
    *,
    manifest_path: pathlib.Path,
    environment: str,
    platform: str,
    ignore_pypi_non_wheel: bool,
    logger: logging.Logger | None = None,
) -> LockedEnvironment:
    """Load and classify the packages of one environment/platform pair.

    :param manifest_path: ``pixi.toml``, ``pyproject.toml`` or project directory.
    :param environment: Environment name (e.g. ``default``).
    :param platform: Conda platform (e.g. ``linux-64``).
    :param ignore_pypi_non_wheel: Skip non-wheel PyPI packages instead of failing.
    :param logger: Optional logger.
    :returns: Classified packages.
    :raises ManifestError: If the lock file cannot be found.
    :raises LockFileError: If the lock file is malformed.
    :raises EnvironmentNotAvailableError: If the environment is not locked.
    :raises PlatformNotAvailableError: If the environment is not locked for the platform.
    :raises PypiNonWheelError: If a PyPI package is not a wheel and not ignored.
    """

    if logger is None:
        logger = logging.getLogger("pixi_pack")

    lock_path: pathlib.Path = locate_lock_file(manifest_path)
    logger.info(f"pixi-pack: reading {lock_path}")
    data: dict[str, Any] = read_lock_file(lock_path)

    env: Any = data["environments"].get(environment)
    if isinstance(env, dict) is False:
        raise EnvironmentNotAvailableError(environment)
    env_packages: Any = (env.get("packages") or {}).get(platform)
    if env_packages is None:
        raise PlatformNotAvailableError(platform)

    table: dict[tuple[str, str], dict[str, Any]] = {}
    for entry in data["packages"]:
        if isinstance(entry, dict) is False:
            raise LockFileError(lock_path, f"invalid package entry {entry!r}")
        key: tuple[str, str] | None = _package_kind_and_url(entry)
        if key is None:
            raise LockFileError(lock_path, f"package entry without conda/pypi location: {entry!r}")
        table.setdefault(key, entry)

    conda_packages: list[CondaPackage] = []
    wheels: list[PypiWheel] = []
    source_dists: list[PypiSourceDist] = []
    wheel_requirements: dict[str, set[str]] = {}

    for ref in env_packages:
        if isinstance(ref, dict) is False:
            raise LockFileError(lock_path, f"invalid environment package reference {ref!r}")
        ref_key: tuple[str, str] | None = _package_kind_and_url(ref)
        if ref_key is None:
            raise LockFileError(lock_path, f"invalid environment package reference {ref!r}")
        entry = table.get(ref_key)
        if entry is None:
            raise LockFileError(lock_path, f"package {ref_key[1]} is not in the packages table")

        kind, url = ref_key
        if kind == "conda":
            conda_packages.append(_conda_package(entry, url, lock_path))
            continue

        name: str = str(entry.get("name") or url_file_name(url))
        version: Any = entry.get("version")
        file_name: str = url_file_name(url)
        if file_name.endswith(".whl") is False:
            source_dists.append(
                PypiSourceDist(name=name, version=None if version is None else str(version), url=url)
            )
            continue
        try:
            wheel_name, wheel_version, _build, _tags = parse_wheel_filename(file_name)
        except InvalidWheelFilename as e:
            raise LockFileError(lock_path, f"invalid wheel file name {file_name}: {e}") from e
        if entry.get("name") is None:
            name = str(wheel_name)
        if version is None:
            version = wheel_version
        wheels.append(
            PypiWheel(
                name=name,
                version=str(version),
                url=_resolve_location(url, lock_path.parent),
                file_name=file_name,
                sha256=entry.get("sha256"),
            )
        )
        wheel_requirements[canonicalize_name(name)] = _requirement_names(entry, lock_path)

    seen: set[tuple[str, str]] = set()
    for pkg in conda_packages:
        if pkg.record.identity in seen:
            raise LockFileError(
                lock_path,
                f"package {pkg.record.name} is locked twice for {pkg.record.subdir}",
            )
        seen.add(pkg.record.identity)

    for sdist in source_dists:
        if ignore_pypi_non_wheel is False:
            raise PypiNonWheelError(sdist.name)
        logger.warning(f"pixi-pack: skipping pypi package {sdist.name}: not a wheel file")
        skipped: str = canonicalize_name(sdist.name)
        dependents: list[str] = sorted(n for n, reqs in wheel_requirements.items() if skipped in reqs)
        if len(dependents) > 0:
            logger.warning(
                f"pixi-pack: skipped pypi package {sdist.name} is required by {', '.join(dependents)}; "
                "the unpacked environment will be missing it"
            )

    logger.info(
        f"pixi-pack: environment {environment} on {platform}: "
        f"{len(conda_packages)} conda packages, {len(wheels)} wheels"
    )
    return LockedEnvironment(conda_packages=conda_packages, wheels=wheels, source_dists=source_dists)


def working_set_from(locked: LockedEnvironment) -> WorkingSet:
    """Build the initial working set from a locked environment."""

    return WorkingSet(conda_packages=list(locked.conda_packages), wheels=list(locked.wheels))
