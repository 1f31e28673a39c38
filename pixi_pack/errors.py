"""Error types.

Every failure raised by pixi-pack derives from :class:`PixiPackError`. Each
subclass keeps the values that identify the failure (package, path, expected
and actual value) as attributes and renders its message from them, so the CLI
can print ``str(error)`` as the single user-facing line.
"""

import pathlib


class PixiPackError(RuntimeError):
    """Base class for pixi-pack failures."""


# Input errors.


class ManifestError(PixiPackError):
    """Raised when the manifest or its lock file cannot be located."""

    def __init__(self, path: pathlib.Path, reason: str) -> None:
        self.path: pathlib.Path = path
        self.reason: str = reason
        super().__init__(f"The manifest path is incorrect: {path} ({reason})")


class LockFileError(PixiPackError):
    """Raised when ``pixi.lock`` cannot be parsed."""

    def __init__(self, path: pathlib.Path, reason: str) -> None:
        self.path: pathlib.Path = path
        self.reason: str = reason
        super().__init__(f"An error occurred while parsing the pixi.lock file {path}: {reason}")


class EnvironmentNotAvailableError(PixiPackError):
    """Raised when the requested environment is not part of the lock."""

    def __init__(self, environment: str) -> None:
        self.environment: str = environment
        super().__init__(f"The environment {environment} is not available")


class PlatformNotAvailableError(PixiPackError):
    """Raised when the environment is not locked for the requested platform."""

    def __init__(self, platform: str) -> None:
        self.platform: str = platform
        super().__init__(f"The platform {platform} is not available")


class PypiNonWheelError(PixiPackError):
    """Raised when a locked PyPI package is not a wheel."""

    def __init__(self, name: str) -> None:
        self.name: str = name
        super().__init__(
            f"package {name} is not a wheel file, we require all dependencies to be wheels."
        )


class UnknownPlatformError(PixiPackError, ValueError):
    """Raised when a platform string is not a known conda platform."""

    def __init__(self, value: str) -> None:
        self.value: str = value
        super().__init__(f"Unknown platform {value!r}")


class ConfigError(PixiPackError):
    """Raised when a config or auth file is invalid."""

    def __init__(self, path: pathlib.Path, reason: str) -> None:
        self.path: pathlib.Path = path
        self.reason: str = reason
        super().__init__(f"Failed to parse config file {path}: {reason}")


# Transport errors.


class DownloadError(PixiPackError):
    """Raised when a package cannot be fetched."""

    def __init__(self, package: str, url: str, reason: str) -> None:
        self.package: str = package
        self.url: str = url
        self.reason: str = reason
        super().__init__(f"could not download package {package} from {url}: {reason}")


# Validation errors.


class MatchSpecError(PixiPackError, ValueError):
    """Raised when a dependency string cannot be parsed."""

    def __init__(self, spec: str, reason: str) -> None:
        self.spec: str = spec
        self.reason: str = reason
        super().__init__(f"Invalid match spec {spec!r}: {reason}")


class InvalidPackageError(PixiPackError):
    """Raised when a package file cannot be read."""

    def __init__(self, path: pathlib.Path, reason: str) -> None:
        self.path: pathlib.Path = path
        self.reason: str = reason
        super().__init__(f"Invalid package file {path}: {reason}")


class DuplicatePackageError(PixiPackError):
    """Raised when an injected package collides with an existing member."""

    def __init__(self, package: str, existing: str) -> None:
        self.package: str = package
        self.existing: str = existing
        super().__init__(
            f"package '{package}' cannot be injected, '{existing}' is already in the environment"
        )


class MissingDependencyError(PixiPackError):
    """Raised when a ``depends`` entry is not satisfied by the working set."""

    def __init__(self, package: str, dependency: str) -> None:
        self.package: str = package
        self.dependency: str = dependency
        super().__init__(
            f"package '{package}' has dependency '{dependency}', which is not in the environment"
        )


class UnsatisfiedConstraintError(PixiPackError):
    """Raised when a ``constrains`` entry is violated by a present member."""

    def __init__(self, package: str, constraint: str, member: str) -> None:
        self.package: str = package
        self.constraint: str = constraint
        self.member: str = member
        super().__init__(
            f"package '{package}' has constraint '{constraint}', "
            f"which is not satisfied by '{member}' in the environment"
        )


# Format errors.


class ArchiveFormatError(PixiPackError):
    """Raised when an artifact is unreadable or corrupt."""

    def __init__(self, path: pathlib.Path, reason: str) -> None:
        self.path: pathlib.Path = path
        self.reason: str = reason
        super().__init__(f"Could not read pack {path}: {reason}")


class MissingSentinelError(ArchiveFormatError):
    """Raised when a self-extracting script lacks one of its markers."""

    def __init__(self, path: pathlib.Path, sentinel: str) -> None:
        self.sentinel: str = sentinel
        super().__init__(path, f"marker {sentinel} not found")


class MetadataError(PixiPackError):
    """Raised when ``pixi-pack.json`` is missing or malformed."""

    def __init__(self, path: pathlib.Path, reason: str) -> None:
        self.path: pathlib.Path = path
        self.reason: str = reason
        super().__init__(f"An error occurred while parsing the pixi-pack metadata {path}: {reason}")


# Compatibility errors.


class UnsupportedPackVersionError(PixiPackError):
    """Raised when the pack format version is not understood."""

    def __init__(self, version: str) -> None:
        self.version: str = version
        super().__init__(f"Unsupported pack version `{version}`. Please upgrade pixi-pack.")


class PlatformMismatchError(PixiPackError):
    """Raised when the pack targets a platform other than the host."""

    def __init__(self, pack_platform: str, host_platform: str) -> None:
        self.pack_platform: str = pack_platform
        self.host_platform: str = host_platform
        super().__init__(
            f"The pack was created for a different platform: {pack_platform} "
            f"(current platform: {host_platform})"
        )


# Filesystem and install errors.


class OutputError(PixiPackError):
    """Raised when the output location cannot be written."""

    def __init__(self, path: pathlib.Path, reason: str) -> None:
        self.path: pathlib.Path = path
        self.reason: str = reason
        super().__init__(f"Could not write {path}: {reason}")


class InstallError(PixiPackError):
    """Raised when a package cannot be installed into the prefix."""

    def __init__(self, package: str, reason: str) -> None:
        self.package: str = package
        self.reason: str = reason
        super().__init__(f"An error occurred while installing {package}: {reason}")
