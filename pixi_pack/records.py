"""Package records and the other value types shared by pack and unpack."""

from dataclasses import dataclass, field
import enum
import json
from typing import Any

from pixi_pack import DEFAULT_PIXI_PACK_VERSION, __version__
from pixi_pack.platform import current_platform, validate_platform

CONDA_EXTENSIONS: tuple[str, ...] = (".conda", ".tar.bz2")

# Keys of a repodata record that map onto PackageRecord attributes.
_RECORD_KEYS: tuple[str, ...] = (
    "name",
    "version",
    "build",
    "build_number",
    "subdir",
    "depends",
    "constrains",
    "md5",
    "sha256",
    "size",
    "timestamp",
    "license",
    "license_family",
    "noarch",
    "features",
    "track_features",
)

# Lock-only keys that never belong in repodata.
_LOCK_ONLY_KEYS: frozenset[str] = frozenset({"conda", "kind", "url", "channel", "fn", "purls", "input"})


def split_conda_extension(file_name: str) -> tuple[str, str]:
    """Split a conda package file name into stem and extension.

    :param file_name: File name such as ``zlib-1.3.1-h4ab18f5_1.conda``.
    :returns: ``(stem, extension)``.
    :raises ValueError: If the file name has no conda package extension.
    """

    for ext in CONDA_EXTENSIONS:
        if file_name.endswith(ext) is True:
            return file_name[0 : -len(ext)], ext
    raise ValueError(f"not a conda package file name: {file_name!r}")


def parse_conda_file_name(file_name: str) -> tuple[str, str, str]:
    """Derive ``(name, version, build)`` from a conda package file name.

    :param file_name: Conda package file name.
    :returns: Name, version and build string.
    :raises ValueError: If the file name does not have three dash-separated parts.
    """

    stem, _ext = split_conda_extension(file_name)
    parts: list[str] = stem.rsplit("-", 2)
    if len(parts) != 3 or any(len(p) == 0 for p in parts) is True:
        raise ValueError(f"cannot derive name/version/build from {file_name!r}")
    return parts[0], parts[1], parts[2]


@dataclass(frozen=True, slots=True)
class PackageRecord:
    """A conda package record as it appears in ``repodata.json``.

    :ivar extra: Record keys without a dedicated attribute, kept verbatim.
    """

    name: str
    version: str
    build: str
    subdir: str
    build_number: int = 0
    depends: tuple[str, ...] = ()
    constrains: tuple[str, ...] = ()
    md5: str | None = None
    sha256: str | None = None
    size: int | None = None
    timestamp: int | None = None
    license: str | None = None
    license_family: str | None = None
    noarch: str | None = None
    features: str | None = None
    track_features: str | None = None
    extra: tuple[tuple[str, Any], ...] = ()

    @property
    def identity(self) -> tuple[str, str]:
        """``(name, subdir)``; unique within a working set."""

        return (self.name, self.subdir)

    def display(self) -> str:
        """Render as ``name=version=build``."""

        return f"{self.name}={self.version}={self.build}"

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, defaults: dict[str, Any] | None = None) -> "PackageRecord":
        """Build a record from a repodata/index/lock mapping.

        :param data: Mapping with repodata keys.
        :param defaults: Values used for keys missing from ``data``.
        :returns: Package record.
        :raises ValueError: If a required key is missing.
        """

        merged: dict[str, Any] = dict(defaults or {})
        for key, value in data.items():
            if value is not None:
                merged[key] = value

        for required in ("name", "version", "build", "subdir"):
            if required not in merged:
                raise ValueError(f"package record is missing {required!r}")

        kwargs: dict[str, Any] = {}
        for key in _RECORD_KEYS:
            if key not in merged:
                continue
            value = merged[key]
            if key in ("depends", "constrains"):
                value = tuple(str(v) for v in value)
            elif key in ("name", "version", "build", "subdir"):
                value = str(value)
            kwargs[key] = value

        extra: list[tuple[str, Any]] = []
        for key in sorted(merged):
            if key in _RECORD_KEYS or key in _LOCK_ONLY_KEYS:
                continue
            extra.append((key, merged[key]))
        kwargs["extra"] = tuple(extra)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize into a repodata record mapping (``None`` values omitted)."""

        out: dict[str, Any] = {}
        for key in _RECORD_KEYS:
            value: Any = getattr(self, key)
            if value is None:
                continue
            if key in ("depends", "constrains"):
                if key == "constrains" and len(value) == 0:
                    continue
                value = list(value)
            out[key] = value
        for key, value in self.extra:
            out[key] = value
        return out


@dataclass(frozen=True, slots=True)
class CacheKey:
    """Identity-derived cache key.

    The key never looks at download URLs: two packages with the same identity
    share a key wherever they were fetched from.

    :ivar bucket: Cache bucket (conda subdir, or ``pypi`` for wheels).
    :ivar file_name: Canonical file name of the package.
    """

    bucket: str
    file_name: str

    @classmethod
    def for_conda(cls, record: PackageRecord, extension: str) -> "CacheKey":
        return cls(
            bucket=record.subdir,
            file_name=f"{record.name}-{record.version}-{record.build}{extension}",
        )

    @property
    def directory_name(self) -> str:
        """Name of the extracted-package directory in the install cache."""

        for ext in CONDA_EXTENSIONS + (".whl",):
            if self.file_name.endswith(ext) is True:
                return self.file_name[0 : -len(ext)]
        return self.file_name


@dataclass(frozen=True, slots=True)
class CondaPackage:
    """A conda package reference.

    :ivar url: Source location (``https://``, ``file://`` or a local path).
    :ivar file_name: File name inside the channel subdir.
    """

    record: PackageRecord
    url: str
    file_name: str

    @property
    def cache_key(self) -> CacheKey:
        _stem, ext = split_conda_extension(self.file_name)
        return CacheKey.for_conda(self.record, ext)

    def display(self) -> str:
        return self.record.display()


@dataclass(frozen=True, slots=True)
class PypiWheel:
    """A PyPI wheel reference."""

    name: str
    version: str
    url: str
    file_name: str
    sha256: str | None = None

    @property
    def cache_key(self) -> CacheKey:
        return CacheKey(bucket="pypi", file_name=self.file_name)

    def display(self) -> str:
        return f"{self.name}=={self.version}"


@dataclass(frozen=True, slots=True)
class PypiSourceDist:
    """A PyPI package that is not a wheel (sdist, VCS or directory source)."""

    name: str
    version: str | None
    url: str


PackageRef = CondaPackage | PypiWheel


@dataclass(slots=True)
class WorkingSet:
    """Packages that end up in the pack."""

    conda_packages: list[CondaPackage] = field(default_factory=list)
    wheels: list[PypiWheel] = field(default_factory=list)

    def refs(self) -> list[PackageRef]:
        out: list[PackageRef] = []
        out.extend(self.conda_packages)
        out.extend(self.wheels)
        return out

    def records(self) -> list[PackageRecord]:
        return [p.record for p in self.conda_packages]


class OutputMode(enum.Enum):
    """Shape of the artifact written by pack."""

    ARCHIVE = "archive"
    EXECUTABLE = "executable"
    DIRECTORY = "directory"


@dataclass(frozen=True, slots=True)
class PixiPackMetadata:
    """Contents of ``pixi-pack.json``.

    :ivar version: Pack format version.
    :ivar pixi_pack_version: Version of the tool that produced the pack, if known.
    :ivar platform: Platform the pack was created for.
    """

    version: str
    pixi_pack_version: str | None
    platform: str

    @classmethod
    def default(cls, platform: str | None = None) -> "PixiPackMetadata":
        return cls(
            version=DEFAULT_PIXI_PACK_VERSION,
            pixi_pack_version=__version__,
            platform=platform if platform is not None else current_platform(),
        )

    def to_json(self) -> str:
        """Serialize compactly; ``pixi-pack-version`` is omitted when unknown."""

        data: dict[str, str] = {"version": self.version}
        if self.pixi_pack_version is not None:
            data["pixi-pack-version"] = self.pixi_pack_version
        data["platform"] = self.platform
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> "PixiPackMetadata":
        """Parse metadata.

        :param text: JSON document.
        :returns: Parsed metadata.
        :raises ValueError: If the document does not match the expected shape.
        """

        data: Any = json.loads(text)
        if isinstance(data, dict) is False:
            raise ValueError("expected a JSON object")

        version: Any = data.get("version")
        if isinstance(version, str) is False:
            raise ValueError(f"'version' must be a string, got {version!r}")

        tool_version: Any = data.get("pixi-pack-version")
        if tool_version is not None and isinstance(tool_version, str) is False:
            raise ValueError(f"'pixi-pack-version' must be a string, got {tool_version!r}")

        platform: Any = data.get("platform")
        if isinstance(platform, str) is False:
            raise ValueError(f"'platform' must be a string, got {platform!r}")

        return cls(version=version, pixi_pack_version=tool_version, platform=validate_platform(platform))
