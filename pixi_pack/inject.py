"""Injection of local package files and working-set validation.

Injected packages are added on top of the locked environment. Since they did
not take part in solving, the working set is re-checked afterwards: every
``depends`` entry must be satisfied by some member and no member may violate a
``constrains`` entry.
"""

import logging
import pathlib
import shutil

from packaging.utils import canonicalize_name

from pixi_pack import CHANNEL_DIRECTORY_NAME, PYPI_DIRECTORY_NAME
from pixi_pack.errors import (
    DuplicatePackageError,
    InvalidPackageError,
    MissingDependencyError,
    OutputError,
    UnsatisfiedConstraintError,
)
from pixi_pack.matchspec import MatchSpec, parse_match_spec
from pixi_pack.package import hash_file, read_index_json, read_wheel_metadata
from pixi_pack.records import (
    CONDA_EXTENSIONS,
    CondaPackage,
    PackageRecord,
    PackageRef,
    PypiWheel,
    WorkingSet,
)


def _copy_into(src: pathlib.Path, dst: pathlib.Path) -> None:
    try:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst)
    except OSError as e:
        raise OutputError(dst, str(e)) from e


def _inject_conda(path: pathlib.Path, working_set: WorkingSet, output_dir: pathlib.Path) -> CondaPackage:
    md5, sha256, size = hash_file(path)
    try:
        record: PackageRecord = PackageRecord.from_dict(
            read_index_json(path),
            defaults={"md5": md5, "sha256": sha256, "size": size},
        )
    except (TypeError, ValueError) as e:
        raise InvalidPackageError(path, str(e)) from e

    for existing in working_set.conda_packages:
        if existing.record.identity == record.identity:
            raise DuplicatePackageError(record.display(), existing.display())

    _copy_into(path, output_dir / CHANNEL_DIRECTORY_NAME / record.subdir / path.name)
    pkg: CondaPackage = CondaPackage(record=record, url=path.resolve().as_uri(), file_name=path.name)
    working_set.conda_packages.append(pkg)
    return pkg


def _inject_wheel(path: pathlib.Path, working_set: WorkingSet, output_dir: pathlib.Path) -> PypiWheel:
    name, version = read_wheel_metadata(path)
    _md5, sha256, _size = hash_file(path)
    wheel: PypiWheel = PypiWheel(
        name=name,
        version=version,
        url=path.resolve().as_uri(),
        file_name=path.name,
        sha256=sha256,
    )

    for existing in working_set.wheels:
        if canonicalize_name(existing.name) == canonicalize_name(name):
            raise DuplicatePackageError(wheel.display(), existing.display())

    _copy_into(path, output_dir / PYPI_DIRECTORY_NAME / path.name)
    working_set.wheels.append(wheel)
    return wheel


def inject_packages(
    *,
    paths: list[pathlib.Path],
    working_set: WorkingSet,
    output_dir: pathlib.Path,
    logger: logging.Logger | None = None,
) -> list[PackageRef]:
    """Copy local package files into the pack and add them to ``working_set``.

    :param paths: ``.conda``, ``.tar.bz2`` or ``.whl`` files.
    :param working_set: Working set to extend in place.
    :param output_dir: Pack working directory.
    :param logger: Optional logger.
    :returns: The injected package references.
    :raises InvalidPackageError: If a file is not a readable package.
    :raises DuplicatePackageError: If a package collides with an existing member.
    """

    if logger is None:
        logger = logging.getLogger("pixi_pack")

    injected: list[PackageRef] = []
    for path in paths:
        if path.is_file() is False:
            raise InvalidPackageError(path, "file does not exist")

        ref: PackageRef
        if path.name.endswith(".whl") is True:
            ref = _inject_wheel(path, working_set, output_dir)
        elif path.name.endswith(CONDA_EXTENSIONS) is True:
            ref = _inject_conda(path, working_set, output_dir)
        else:
            raise InvalidPackageError(path, "expected a .conda, .tar.bz2 or .whl file")

        logger.info(f"pixi-pack: injected {ref.display()} from {path}")
        injected.append(ref)
    return injected


def _by_name(records: list[PackageRecord]) -> dict[str, list[PackageRecord]]:
    out: dict[str, list[PackageRecord]] = {}
    for record in records:
        out.setdefault(record.name.lower(), []).append(record)
    return out


def validate_working_set(working_set: WorkingSet, *, logger: logging.Logger | None = None) -> None:
    """Check that ``depends`` and ``constrains`` hold within the working set.

    Virtual packages (``__glibc``, ``__unix``, ...) are provided by the host and
    are not checked.

    :param working_set: Working set to validate.
    :param logger: Optional logger.
    :raises MissingDependencyError: If a dependency has no matching member.
    :raises UnsatisfiedConstraintError: If a member violates a constraint.
    :raises MatchSpecError: If a dependency string cannot be parsed.
    """

    if logger is None:
        logger = logging.getLogger("pixi_pack")

    records: list[PackageRecord] = working_set.records()
    members: dict[str, list[PackageRecord]] = _by_name(records)

    checked: int = 0
    for record in records:
        for dep in record.depends:
            spec: MatchSpec = parse_match_spec(dep)
            if spec.is_virtual is True:
                continue
            if any(spec.matches(m) for m in members.get(spec.name, [])) is False:
                raise MissingDependencyError(record.display(), dep)
            checked += 1

        for constraint in record.constrains:
            cspec: MatchSpec = parse_match_spec(constraint)
            if cspec.is_virtual is True:
                continue
            for member in members.get(cspec.name, []):
                if cspec.matches(member) is False:
                    raise UnsatisfiedConstraintError(record.display(), constraint, member.display())
            checked += 1

    logger.info(f"pixi-pack: validated {checked} dependency entries of {len(records)} packages")
