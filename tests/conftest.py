"""Shared fixtures: synthetic packages, lock files and an in-memory channel."""

from dataclasses import dataclass, field
import hashlib
import io
import json
import logging
import pathlib
import tarfile
import zipfile

import httpx
import pytest
import yaml
import zstandard

from pixi_pack.platform import current_platform

CHANNEL_URL: str = "https://conda.example.org/conda-forge"
PYPI_URL: str = "https://files.example.org/packages"
PLACEHOLDER: str = "/opt/anaconda1anaconda2anaconda3"


def tar_of(members: dict[str, bytes]) -> bytes:
    """Build an uncompressed tar with fixed metadata."""

    buf: io.BytesIO = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tf:
        for name in sorted(members):
            data: bytes = members[name]
            info: tarfile.TarInfo = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            info.mtime = 0
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def build_conda_package(
    directory: pathlib.Path,
    *,
    name: str,
    version: str,
    build: str,
    subdir: str,
    extension: str = ".tar.bz2",
    depends: list[str] | None = None,
    constrains: list[str] | None = None,
    with_placeholder: bool = False,
) -> pathlib.Path:
    """Write a minimal conda package and return its path."""

    payload: dict[str, bytes] = {f"share/{name}/README.txt": f"{name} {version}\n".encode("utf-8")}
    paths: list[dict[str, object]] = [
        {"_path": f"share/{name}/README.txt", "path_type": "hardlink"},
    ]
    if with_placeholder is True:
        payload[f"etc/{name}.conf"] = f"prefix={PLACEHOLDER}\n".encode("utf-8")
        paths.append(
            {
                "_path": f"etc/{name}.conf",
                "path_type": "hardlink",
                "prefix_placeholder": PLACEHOLDER,
                "file_mode": "text",
            }
        )

    index: dict[str, object] = {
        "name": name,
        "version": version,
        "build": build,
        "build_number": 0,
        "subdir": subdir,
        "depends": depends or [],
        "license": "MIT",
        "timestamp": 1700000000000,
    }
    if constrains is not None:
        index["constrains"] = constrains

    info: dict[str, bytes] = {
        "info/index.json": json.dumps(index).encode("utf-8"),
        "info/paths.json": json.dumps({"paths": paths, "paths_version": 1}).encode("utf-8"),
    }

    directory.mkdir(parents=True, exist_ok=True)
    stem: str = f"{name}-{version}-{build}"
    path: pathlib.Path = directory / f"{stem}{extension}"
    if extension == ".tar.bz2":
        with tarfile.open(path, mode="w:bz2") as tf:
            for member_name, data in sorted({**info, **payload}.items()):
                tinfo: tarfile.TarInfo = tarfile.TarInfo(member_name)
                tinfo.size = len(data)
                tinfo.mode = 0o644
                tinfo.mtime = 0
                tf.addfile(tinfo, io.BytesIO(data))
    else:
        cctx: zstandard.ZstdCompressor = zstandard.ZstdCompressor()
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("metadata.json", json.dumps({"conda_pkg_format_version": 2}))
            zf.writestr(f"info-{stem}.tar.zst", cctx.compress(tar_of(info)))
            zf.writestr(f"pkg-{stem}.tar.zst", cctx.compress(tar_of(payload)))
    return path


def build_wheel(directory: pathlib.Path, *, name: str, version: str) -> pathlib.Path:
    """Write a minimal pure-Python wheel and return its path."""

    directory.mkdir(parents=True, exist_ok=True)
    module: str = name.replace("-", "_")
    path: pathlib.Path = directory / f"{module}-{version}-py3-none-any.whl"
    dist_info: str = f"{module}-{version}.dist-info"
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr(f"{module}/__init__.py", f'__version__ = "{version}"\n')
        zf.writestr(f"{dist_info}/METADATA", f"Metadata-Version: 2.1\nName: {name}\nVersion: {version}\n")
        zf.writestr(f"{dist_info}/WHEEL", "Wheel-Version: 1.0\nRoot-Is-Purelib: true\nTag: py3-none-any\n")
        zf.writestr(f"{dist_info}/RECORD", "")
    return path


def sha256_of(path: pathlib.Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


@dataclass
class FakeChannel:
    """Serves package bytes by URL through an ``httpx.MockTransport``."""

    files: dict[str, bytes] = field(default_factory=dict)
    requests: list[str] = field(default_factory=list)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url: str = str(request.url)
        self.requests.append(url)
        content: bytes | None = self.files.get(url)
        if content is None:
            return httpx.Response(404)
        return httpx.Response(200, content=content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@dataclass
class Project:
    """A pixi project with a lock file and the channel serving its packages."""

    root: pathlib.Path
    platform: str
    channel: FakeChannel
    conda_files: dict[str, pathlib.Path]
    wheel_files: dict[str, pathlib.Path]

    @property
    def manifest(self) -> pathlib.Path:
        return self.root / "pixi.toml"


def _conda_lock_entry(path: pathlib.Path, url: str, subdir: str) -> dict[str, object]:
    with tarfile.open(path, "r:bz2") if path.name.endswith(".tar.bz2") else _conda_info(path) as tf:
        index: dict[str, object] = json.loads(tf.extractfile("info/index.json").read())
    entry: dict[str, object] = {"conda": url}
    entry.update(index)
    entry["subdir"] = subdir
    entry["sha256"] = sha256_of(path)
    entry["md5"] = hashlib.md5(path.read_bytes()).hexdigest()
    entry["size"] = path.stat().st_size
    return entry


def _conda_info(path: pathlib.Path) -> tarfile.TarFile:
    with zipfile.ZipFile(path) as zf:
        name: str = next(n for n in zf.namelist() if n.startswith("info-"))
        data: bytes = zstandard.ZstdDecompressor().decompressobj().decompress(zf.read(name))
    return tarfile.open(fileobj=io.BytesIO(data), mode="r:")


def create_project(
    root: pathlib.Path,
    *,
    platform: str,
    with_wheel: bool = False,
    with_sdist: bool = False,
) -> Project:
    """Create a project locking three conda packages (and optionally PyPI packages)."""

    pkgs_dir: pathlib.Path = root / "_packages"
    libzlib: pathlib.Path = build_conda_package(
        pkgs_dir,
        name="libzlib",
        version="1.3.1",
        build="h4ab18f5_1",
        subdir=platform,
        extension=".conda",
        with_placeholder=True,
    )
    zlib: pathlib.Path = build_conda_package(
        pkgs_dir,
        name="zlib",
        version="1.3.1",
        build="h4ab18f5_1",
        subdir=platform,
        depends=["libzlib 1.3.1 h4ab18f5_1", "__glibc >=2.17,<3.0.a0"],
    )
    ca: pathlib.Path = build_conda_package(
        pkgs_dir,
        name="ca-certificates",
        version="2024.7.4",
        build="hbcca054_0",
        subdir=platform,
        extension=".conda",
        constrains=["zlib >=1.2"],
    )

    channel: FakeChannel = FakeChannel()
    conda_files: dict[str, pathlib.Path] = {}
    env_refs: list[dict[str, str]] = []
    packages: list[dict[str, object]] = []
    for path in (libzlib, zlib, ca):
        url: str = f"{CHANNEL_URL}/{platform}/{path.name}"
        channel.files[url] = path.read_bytes()
        conda_files[path.name] = path
        env_refs.append({"conda": url})
        packages.append(_conda_lock_entry(path, url, platform))

    wheel_files: dict[str, pathlib.Path] = {}
    if with_wheel is True:
        wheel: pathlib.Path = build_wheel(pkgs_dir, name="tinyutil", version="0.2.0")
        url = f"{PYPI_URL}/{wheel.name}"
        channel.files[url] = wheel.read_bytes()
        wheel_files[wheel.name] = wheel
        env_refs.append({"pypi": url})
        packages.append(
            {
                "pypi": url,
                "name": "tinyutil",
                "version": "0.2.0",
                "sha256": sha256_of(wheel),
                "requires_dist": ["legacy-thing>=1"] if with_sdist is True else [],
            }
        )
    if with_sdist is True:
        url = f"{PYPI_URL}/legacy-thing-1.0.tar.gz"
        env_refs.append({"pypi": url})
        packages.append({"pypi": url, "name": "legacy-thing", "version": "1.0"})

    lock: dict[str, object] = {
        "version": 6,
        "environments": {
            "default": {
                "channels": [{"url": "https://conda.example.org/conda-forge/"}],
                "packages": {platform: env_refs},
            }
        },
        "packages": packages,
    }
    root.mkdir(parents=True, exist_ok=True)
    (root / "pixi.toml").write_text('[workspace]\nname = "demo"\n', encoding="utf-8")
    (root / "pixi.lock").write_text(yaml.safe_dump(lock, sort_keys=False), encoding="utf-8")
    return Project(
        root=root,
        platform=platform,
        channel=channel,
        conda_files=conda_files,
        wheel_files=wheel_files,
    )


@pytest.fixture(autouse=True)
def _no_ambient_auth_file(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RATTLER_AUTH_FILE", raising=False)


@pytest.fixture(autouse=True)
def _reset_logger() -> None:
    """The CLI reconfigures the ``pixi_pack`` logger; undo that between tests."""

    logger: logging.Logger = logging.getLogger("pixi_pack")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def project(tmp_path: pathlib.Path) -> Project:
    """Three conda packages locked for linux-64."""

    return create_project(tmp_path / "project", platform="linux-64")


@pytest.fixture
def host_project(tmp_path: pathlib.Path) -> Project:
    """Three conda packages locked for the running host."""

    return create_project(tmp_path / "project", platform=current_platform())
