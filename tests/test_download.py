"""Tests for concurrent package download."""

import asyncio
import json
import pathlib
import shutil
import time

import httpx
import pytest

from conftest import CHANNEL_URL, FakeChannel, Project, build_conda_package, sha256_of
from pixi_pack.config import PackConfig
from pixi_pack.download import DownloadObserver, build_client, download_packages, plan_downloads
from pixi_pack.errors import DownloadError
from pixi_pack.lockfile import load_environment, working_set_from
from pixi_pack.records import CondaPackage, PackageRecord, PackageRef, WorkingSet


def _working_set(project: Project) -> WorkingSet:
    locked = load_environment(
        manifest_path=project.root,
        environment="default",
        platform=project.platform,
        ignore_pypi_non_wheel=False,
    )
    return working_set_from(locked)


def _conda_ref(url: str, name: str, sha256: str | None = None) -> CondaPackage:
    file_name: str = url.rsplit("/", 1)[1]
    record = PackageRecord(name=name, version="1.0", build="h0_0", subdir="linux-64", sha256=sha256)
    return CondaPackage(record=record, url=url, file_name=file_name)


class RecordingObserver(DownloadObserver):
    def __init__(self) -> None:
        self.total: int | None = None
        self.done: list[tuple[str, bool]] = []
        self.finished: bool = False

    def on_start(self, total: int) -> None:
        self.total = total

    def on_package_done(self, ref: PackageRef, *, from_cache: bool) -> None:
        self.done.append((ref.file_name, from_cache))

    def on_finish(self) -> None:
        self.finished = True


class TestPlanDownloads:
    """Tests for :func:`plan_downloads`."""

    def test_layout(self, project: Project, tmp_path: pathlib.Path) -> None:
        units = plan_downloads(working_set=_working_set(project), output_dir=tmp_path / "out")
        destinations = sorted(u.destination.relative_to(tmp_path / "out").as_posix() for u in units)
        assert destinations == [
            "channel/linux-64/ca-certificates-2024.7.4-hbcca054_0.conda",
            "channel/linux-64/libzlib-1.3.1-h4ab18f5_1.conda",
            "channel/linux-64/zlib-1.3.1-h4ab18f5_1.tar.bz2",
        ]

    def test_mirror_rewrite(self, project: Project, tmp_path: pathlib.Path) -> None:
        units = plan_downloads(
            working_set=_working_set(project),
            output_dir=tmp_path,
            mirrors={f"{CHANNEL_URL}/": ["https://mirror.example.org/cf/"]},
        )
        assert all(u.url.startswith("https://mirror.example.org/cf/linux-64/") for u in units)


class TestDownloadPackages:
    """Tests for :func:`download_packages`."""

    @pytest.mark.asyncio
    async def test_downloads_all(self, project: Project, tmp_path: pathlib.Path) -> None:
        """Every package lands in its channel subdir with its original bytes."""

        observer = RecordingObserver()
        out = tmp_path / "out"
        async with build_client(auth_file=None, transport=project.channel.transport) as client:
            units = await download_packages(
                working_set=_working_set(project),
                output_dir=out,
                client=client,
                observer=observer,
            )

        assert len(units) == 3
        for unit in units:
            assert unit.destination.read_bytes() == project.conda_files[unit.destination.name].read_bytes()
        assert observer.total == 3
        assert sorted(observer.done) == sorted((name, False) for name in project.conda_files)
        assert observer.finished is True
        assert list(out.rglob("*.part")) == []

    @pytest.mark.asyncio
    async def test_cache_hit_skips_network(self, project: Project, tmp_path: pathlib.Path) -> None:
        cache = tmp_path / "cache"
        working_set = _working_set(project)

        async with build_client(auth_file=None, transport=project.channel.transport) as client:
            await download_packages(working_set=working_set, output_dir=tmp_path / "first", client=client, cache_dir=cache)
        assert len(project.channel.requests) == 3
        assert sorted(p.name for p in (cache / "linux-64").iterdir()) == sorted(project.conda_files)

        offline = FakeChannel()
        observer = RecordingObserver()
        async with build_client(auth_file=None, transport=offline.transport) as client:
            await download_packages(
                working_set=working_set,
                output_dir=tmp_path / "second",
                client=client,
                cache_dir=cache,
                observer=observer,
            )
        assert offline.requests == []
        assert all(from_cache is True for _name, from_cache in observer.done)
        for name, path in project.conda_files.items():
            assert (tmp_path / "second" / "channel" / "linux-64" / name).read_bytes() == path.read_bytes()

    @pytest.mark.asyncio
    async def test_cache_key_ignores_url(self, project: Project, tmp_path: pathlib.Path) -> None:
        """A package cached from one URL is reused when locked from another."""

        cache = tmp_path / "cache"
        path = project.conda_files["libzlib-1.3.1-h4ab18f5_1.conda"]
        (cache / "linux-64").mkdir(parents=True)
        (cache / "linux-64" / path.name).write_bytes(path.read_bytes())

        record = next(p.record for p in _working_set(project).conda_packages if p.record.name == "libzlib")
        moved = CondaPackage(record=record, url=f"https://elsewhere.example.org/linux-64/{path.name}", file_name=path.name)
        offline = FakeChannel()
        async with build_client(auth_file=None, transport=offline.transport) as client:
            await download_packages(
                working_set=WorkingSet(conda_packages=[moved]),
                output_dir=tmp_path / "out",
                client=client,
                cache_dir=cache,
            )
        assert offline.requests == []

    @pytest.mark.asyncio
    async def test_file_url(self, tmp_path: pathlib.Path) -> None:
        path = build_conda_package(tmp_path / "local", name="pkg", version="1.0", build="h0_0", subdir="linux-64")
        ref = _conda_ref(path.as_uri(), "pkg", sha256=sha256_of(path))
        offline = FakeChannel()
        async with build_client(auth_file=None, transport=offline.transport) as client:
            await download_packages(working_set=WorkingSet(conda_packages=[ref]), output_dir=tmp_path / "out", client=client)
        assert (tmp_path / "out" / "channel" / "linux-64" / path.name).read_bytes() == path.read_bytes()
        assert offline.requests == []

    @pytest.mark.asyncio
    async def test_sha256_mismatch(self, tmp_path: pathlib.Path) -> None:
        url = "https://conda.example.org/cf/linux-64/pkg-1.0-h0_0.conda"
        channel = FakeChannel(files={url: b"not the expected bytes"})
        ref = _conda_ref(url, "pkg", sha256="0" * 64)
        async with build_client(auth_file=None, transport=channel.transport) as client:
            with pytest.raises(DownloadError, match="sha256 mismatch"):
                await download_packages(working_set=WorkingSet(conda_packages=[ref]), output_dir=tmp_path, client=client)
        assert list(tmp_path.rglob("pkg-1.0-h0_0.conda*")) == []

    @pytest.mark.asyncio
    async def test_http_error(self, tmp_path: pathlib.Path) -> None:
        url = "https://conda.example.org/cf/linux-64/gone-1.0-h0_0.conda"
        async with build_client(auth_file=None, transport=FakeChannel().transport) as client:
            with pytest.raises(DownloadError) as excinfo:
                await download_packages(
                    working_set=WorkingSet(conda_packages=[_conda_ref(url, "gone")]),
                    output_dir=tmp_path,
                    client=client,
                )
        assert excinfo.value.package == "gone=1.0=h0_0"
        assert excinfo.value.url == url
        assert "404" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_first_failure_cancels_siblings(self, tmp_path: pathlib.Path) -> None:
        """A failing unit cancels in-flight downloads and their partial files are removed."""

        slow_url = "https://conda.example.org/cf/linux-64/slow-1.0-h0_0.conda"
        bad_url = "https://conda.example.org/cf/linux-64/bad-1.0-h0_0.conda"
        first_chunk_written = asyncio.Event()
        cancelled: list[str] = []

        async def slow_body():
            yield b"x" * 1024
            first_chunk_written.set()
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                cancelled.append(slow_url)
                raise
            yield b"never"

        async def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == slow_url:
                return httpx.Response(200, content=slow_body())
            await first_chunk_written.wait()
            return httpx.Response(500)

        working_set = WorkingSet(conda_packages=[_conda_ref(slow_url, "slow"), _conda_ref(bad_url, "bad")])
        out = tmp_path / "out"
        async with build_client(auth_file=None, transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(DownloadError) as excinfo:
                await asyncio.wait_for(
                    download_packages(working_set=working_set, output_dir=out, client=client),
                    timeout=30,
                )

        assert excinfo.value.url == bad_url
        assert cancelled == [slow_url]
        assert list(out.rglob("*.part")) == []
        assert list(out.rglob("*.conda")) == []

    @pytest.mark.asyncio
    async def test_cancelled_cache_copy_settles_first(
        self, tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A cache copy interrupted by a sibling failure finishes before the error is raised."""

        cached_url = "https://conda.example.org/cf/linux-64/cached-1.0-h0_0.conda"
        bad_url = "https://conda.example.org/cf/linux-64/bad-1.0-h0_0.conda"
        cache = tmp_path / "cache"
        (cache / "linux-64").mkdir(parents=True)
        (cache / "linux-64" / "cached-1.0-h0_0.conda").write_bytes(b"cached bytes")

        copies: list[str] = []
        real_copyfile = shutil.copyfile

        def slow_copyfile(src, dst):
            time.sleep(0.3)
            result = real_copyfile(src, dst)
            copies.append(pathlib.Path(dst).name)
            return result

        monkeypatch.setattr(shutil, "copyfile", slow_copyfile)

        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.05)
            return httpx.Response(500)

        working_set = WorkingSet(conda_packages=[_conda_ref(cached_url, "cached"), _conda_ref(bad_url, "bad")])
        async with build_client(auth_file=None, transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(DownloadError) as excinfo:
                await download_packages(working_set=working_set, output_dir=tmp_path / "out", client=client, cache_dir=cache)

        assert excinfo.value.url == bad_url
        assert copies == ["cached-1.0-h0_0.conda"]

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, tmp_path: pathlib.Path) -> None:
        active = 0
        peak = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return httpx.Response(200, content=b"data")

        refs = [_conda_ref(f"https://conda.example.org/cf/linux-64/p{i}-1.0-h0_0.conda", f"p{i}") for i in range(6)]
        async with build_client(auth_file=None, transport=httpx.MockTransport(handler)) as client:
            await download_packages(
                working_set=WorkingSet(conda_packages=refs),
                output_dir=tmp_path,
                client=client,
                config=PackConfig(download_concurrency=2),
            )
        assert peak <= 2


class TestStorageAuth:
    """Tests for credentials attached by the shared client."""

    @pytest.mark.asyncio
    async def test_bearer_and_basic(self, tmp_path: pathlib.Path) -> None:
        auth_file = tmp_path / "auth.json"
        auth_file.write_text(
            json.dumps(
                {
                    "bearer.example.org": {"BearerToken": "tok"},
                    "*.basic.example.org": {"BasicHTTP": {"username": "user", "password": "pass"}},
                }
            ),
            encoding="utf-8",
        )
        seen: dict[str, str | None] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen[request.url.host] = request.headers.get("Authorization")
            return httpx.Response(200)

        async with build_client(auth_file=auth_file, transport=httpx.MockTransport(handler)) as client:
            await client.get("https://bearer.example.org/x")
            await client.get("https://repo.basic.example.org/x")
            await client.get("https://anonymous.example.org/x")

        assert seen["bearer.example.org"] == "Bearer tok"
        assert seen["repo.basic.example.org"] == "Basic dXNlcjpwYXNz"
        assert seen["anonymous.example.org"] is None

    @pytest.mark.asyncio
    async def test_conda_token_and_env_var(self, tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
        auth_file = tmp_path / "auth.json"
        auth_file.write_text(json.dumps({"conda.example.org": {"CondaToken": "secret"}}), encoding="utf-8")
        monkeypatch.setenv("RATTLER_AUTH_FILE", str(auth_file))
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200)

        async with build_client(auth_file=None, transport=httpx.MockTransport(handler)) as client:
            await client.get("https://conda.example.org/cf/linux-64/repodata.json")
        assert paths == ["/t/secret/cf/linux-64/repodata.json"]

    @pytest.mark.asyncio
    async def test_user_agent(self) -> None:
        agents: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            agents.append(request.headers["User-Agent"])
            return httpx.Response(200)

        async with build_client(auth_file=None, transport=httpx.MockTransport(handler)) as client:
            await client.get("https://conda.example.org/")
        assert agents[0].startswith("pixi-pack/")
