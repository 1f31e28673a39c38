"""End-to-end tests for the pack pipeline."""

import dataclasses
import io
import json
import os
import pathlib
import tarfile

import httpx
import pytest
import yaml

from conftest import Project, build_conda_package, create_project
from pixi_pack.errors import DownloadError, MissingDependencyError, PlatformNotAvailableError
from pixi_pack.pack import PackOptions, default_output_file, pack
from pixi_pack.records import OutputMode, PixiPackMetadata
from pixi_pack.selfextract import split_self_extracting

EXTRACTOR: bytes = b"fake pixi-unpack"


def _options(project: Project, output: pathlib.Path, **kwargs) -> PackOptions:
    options = PackOptions(
        environment="default",
        platform=project.platform,
        manifest_path=project.manifest,
        output_file=output,
        metadata=PixiPackMetadata(version="1", pixi_pack_version="0.1.0", platform=project.platform),
    )
    return dataclasses.replace(options, **kwargs)


def _members(data: bytes) -> dict[str, bytes | None]:
    out: dict[str, bytes | None] = {}
    with tarfile.open(fileobj=io.BytesIO(data)) as tf:
        for member in tf.getmembers():
            f = tf.extractfile(member)
            out[member.name] = None if f is None else f.read()
    return out


class TestPack:
    """Tests for :func:`pack`."""

    @pytest.mark.asyncio
    async def test_archive_layout(self, project: Project, tmp_path: pathlib.Path) -> None:
        """Three locked packages yield a channel with three repodata entries."""

        output = tmp_path / "environment.tar"
        await pack(_options(project, output), transport=project.channel.transport)

        members = _members(output.read_bytes())
        assert members["pixi-pack.json"] == b'{"version":"1","pixi-pack-version":"0.1.0","platform":"linux-64"}'
        for name, path in project.conda_files.items():
            assert members[f"channel/linux-64/{name}"] == path.read_bytes()

        repodata = json.loads(members["channel/linux-64/repodata.json"])
        assert len(repodata["packages"]) + len(repodata["packages.conda"]) == 3
        assert "channel/noarch/repodata.json" in members

        environment = yaml.safe_load(members["environment.yml"])
        assert environment["channels"] == ["./channel", "nodefaults"]
        assert len(environment["dependencies"]) == 3
        assert "zlib=1.3.1=h4ab18f5_1" in environment["dependencies"]

    @pytest.mark.asyncio
    async def test_deterministic(self, project: Project, tmp_path: pathlib.Path) -> None:
        first = tmp_path / "first.tar"
        second = tmp_path / "second.tar"
        await pack(_options(project, first), transport=project.channel.transport)
        await pack(_options(project, second), transport=project.channel.transport)
        assert first.read_bytes() == second.read_bytes()

    @pytest.mark.asyncio
    async def test_executable_embeds_the_archive(self, project: Project, tmp_path: pathlib.Path) -> None:
        extractor = tmp_path / "pixi-unpack"
        extractor.write_bytes(EXTRACTOR)
        archive = tmp_path / "environment.tar"
        script = tmp_path / "environment.sh"

        await pack(_options(project, archive), transport=project.channel.transport)
        await pack(
            _options(project, script, output_mode=OutputMode.EXECUTABLE, extractor_source=str(extractor)),
            transport=project.channel.transport,
        )

        assert os.access(script, os.X_OK) is True
        assert split_self_extracting(script.read_bytes(), source=script) == (archive.read_bytes(), EXTRACTOR)

    @pytest.mark.asyncio
    async def test_directory_output(self, project: Project, tmp_path: pathlib.Path) -> None:
        output = tmp_path / "environment"
        await pack(_options(project, output, output_mode=OutputMode.DIRECTORY), transport=project.channel.transport)
        assert (output / "pixi-pack.json").is_file() is True
        assert sorted(p.name for p in (output / "channel" / "linux-64").glob("*.conda")) == [
            "ca-certificates-2024.7.4-hbcca054_0.conda",
            "libzlib-1.3.1-h4ab18f5_1.conda",
        ]

    @pytest.mark.asyncio
    async def test_wheels(self, tmp_path: pathlib.Path) -> None:
        project = create_project(tmp_path / "p", platform="linux-64", with_wheel=True)
        output = tmp_path / "environment.tar"
        await pack(_options(project, output), transport=project.channel.transport)

        members = _members(output.read_bytes())
        assert members["pypi/tinyutil-0.2.0-py3-none-any.whl"] == project.wheel_files[
            "tinyutil-0.2.0-py3-none-any.whl"
        ].read_bytes()
        environment = yaml.safe_load(members["environment.yml"])
        assert environment["dependencies"][-1] == {
            "pip": ["--no-index", "--find-links ./pypi", "tinyutil==0.2.0"]
        }

    @pytest.mark.asyncio
    async def test_inject(self, project: Project, tmp_path: pathlib.Path) -> None:
        extra = build_conda_package(
            tmp_path / "local",
            name="plugin",
            version="0.1",
            build="h0_0",
            subdir="noarch",
            depends=["zlib >=1.3"],
        )
        output = tmp_path / "environment.tar"
        await pack(_options(project, output, injected_packages=(extra,)), transport=project.channel.transport)

        members = _members(output.read_bytes())
        noarch = json.loads(members["channel/noarch/repodata.json"])
        assert list(noarch["packages"]) == ["plugin-0.1-h0_0.tar.bz2"]
        assert members["channel/noarch/plugin-0.1-h0_0.tar.bz2"] == extra.read_bytes()

    @pytest.mark.asyncio
    async def test_inject_missing_dependency_leaves_no_output(self, project: Project, tmp_path: pathlib.Path) -> None:
        extra = build_conda_package(
            tmp_path / "local",
            name="plugin",
            version="0.1",
            build="h0_0",
            subdir="linux-64",
            depends=["libbar"],
        )
        output_dir = tmp_path / "out"
        output_dir.mkdir()
        with pytest.raises(MissingDependencyError):
            await pack(
                _options(project, output_dir / "environment.tar", injected_packages=(extra,)),
                transport=project.channel.transport,
            )
        assert list(output_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_download_failure_leaves_no_output(self, project: Project, tmp_path: pathlib.Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith(".tar.bz2") is True:
                return httpx.Response(503)
            return project.channel.handler(request)

        output_dir = tmp_path / "out"
        output_dir.mkdir()
        with pytest.raises(DownloadError, match="zlib=1.3.1=h4ab18f5_1"):
            await pack(_options(project, output_dir / "environment.tar"), transport=httpx.MockTransport(handler))
        assert list(output_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_unknown_platform(self, project: Project, tmp_path: pathlib.Path) -> None:
        with pytest.raises(PlatformNotAvailableError):
            await pack(
                _options(project, tmp_path / "environment.tar", platform="win-64"),
                transport=project.channel.transport,
            )
        assert (tmp_path / "environment.tar").exists() is False

    @pytest.mark.asyncio
    async def test_cache_reuse(self, project: Project, tmp_path: pathlib.Path) -> None:
        cache = tmp_path / "cache"
        await pack(_options(project, tmp_path / "a.tar", cache_dir=cache), transport=project.channel.transport)
        requests_after_first = len(project.channel.requests)
        await pack(_options(project, tmp_path / "b.tar", cache_dir=cache), transport=project.channel.transport)
        assert len(project.channel.requests) == requests_after_first
        assert (tmp_path / "a.tar").read_bytes() == (tmp_path / "b.tar").read_bytes()


@pytest.mark.parametrize(
    "mode,platform,expected",
    [
        (OutputMode.ARCHIVE, "linux-64", "environment.tar"),
        (OutputMode.EXECUTABLE, "linux-64", "environment.sh"),
        (OutputMode.EXECUTABLE, "win-64", "environment.ps1"),
        (OutputMode.DIRECTORY, "osx-arm64", "environment"),
    ],
)
def test_default_output_file(mode: OutputMode, platform: str, expected: str) -> None:
    assert default_output_file(mode, platform) == pathlib.Path(expected)
