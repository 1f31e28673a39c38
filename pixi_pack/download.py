"""Concurrent package download.

Every package of the working set is materialized under the pack's working
directory, laid out like a channel (``channel/<subdir>/<file>``) plus
``pypi/<wheel>``. Units run concurrently on one shared ``httpx.AsyncClient``,
bounded by a semaphore.

Failure policy: fail fast. The first unit that fails cancels all in-flight and
queued siblings; once the cancellations have settled (and their partial
``.part`` files are removed) the failure is raised as a single
:class:`~pixi_pack.errors.DownloadError`.

With a cache directory configured, a unit first looks for
``<cache>/<bucket>/<file>`` and copies it without touching the network. On a
miss the completed destination file is copied into the cache under a temporary
name and renamed into place, so readers never observe a partial entry. Cache
copies run in worker threads; a cancelled unit waits for its copy to return
before it settles, so no file is written after the failure is raised.
"""

import asyncio
import base64
from dataclasses import dataclass
import hashlib
import logging
import os
import pathlib
import shutil
import tempfile
from typing import Any, Callable, Generator, TypeVar
import urllib.parse
import urllib.request

import httpx

from pixi_pack import CHANNEL_DIRECTORY_NAME, PYPI_DIRECTORY_NAME, __version__
from pixi_pack.config import (
    Credentials,
    DEFAULT_DOWNLOAD_CONCURRENCY,
    PackConfig,
    apply_mirrors,
    credentials_for_host,
    load_auth_file,
    resolve_auth_file,
)
from pixi_pack.errors import DownloadError
from pixi_pack.records import CacheKey, CondaPackage, PackageRef, WorkingSet

_CHUNK_SIZE: int = 1024 * 1024
_TIMEOUT_SECONDS: float = 5 * 60

T = TypeVar("T")


class DownloadObserver:
    """Receives download progress. The default implementation ignores it."""

    def on_start(self, total: int) -> None:
        pass

    def on_package_done(self, ref: PackageRef, *, from_cache: bool) -> None:
        pass

    def on_finish(self) -> None:
        pass


class LoggingDownloadObserver(DownloadObserver):
    """Reports progress through a logger."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger: logging.Logger = logger
        self._total: int = 0
        self._done: int = 0

    def on_start(self, total: int) -> None:
        self._total = total
        self._done = 0
        self._logger.info(f"pixi-pack: downloading {total} packages")

    def on_package_done(self, ref: PackageRef, *, from_cache: bool) -> None:
        self._done += 1
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            source: str = "cache" if from_cache is True else "network"
            self._logger.debug(f"pixi-pack: [{self._done}/{self._total}] {ref.file_name} ({source})")

    def on_finish(self) -> None:
        self._logger.info(f"pixi-pack: downloaded {self._done}/{self._total} packages")


class StorageAuth(httpx.Auth):
    """Attach credentials from a rattler authentication store to requests."""

    def __init__(self, store: dict[str, Credentials]) -> None:
        self._store: dict[str, Credentials] = store

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        creds: Credentials | None = credentials_for_host(self._store, request.url.host)
        if creds is not None:
            if creds.kind == "BearerToken":
                request.headers["Authorization"] = f"Bearer {creds.token}"
            elif creds.kind == "BasicHTTP":
                raw: bytes = f"{creds.username}:{creds.password}".encode("utf-8")
                request.headers["Authorization"] = "Basic " + base64.b64encode(raw).decode("ascii")
            elif creds.kind == "CondaToken":
                request.url = request.url.copy_with(path=f"/t/{creds.token}{request.url.path}")
        yield request


def build_client(
    *,
    auth_file: pathlib.Path | None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the shared HTTP client.

    :param auth_file: Optional rattler auth file (falls back to ``RATTLER_AUTH_FILE``).
    :param transport: Optional transport override (tests use ``httpx.MockTransport``).
    :returns: Async HTTP client; the caller closes it.
    :raises ConfigError: If the auth file is invalid.
    """

    store: dict[str, Credentials] = {}
    resolved: pathlib.Path | None = resolve_auth_file(auth_file)
    if resolved is not None:
        store = load_auth_file(resolved)

    return httpx.AsyncClient(
        auth=StorageAuth(store),
        timeout=httpx.Timeout(_TIMEOUT_SECONDS, connect=30.0),
        headers={"User-Agent": f"pixi-pack/{__version__}"},
        limits=httpx.Limits(max_keepalive_connections=20),
        follow_redirects=True,
        transport=transport,
    )


@dataclass(frozen=True, slots=True)
class DownloadUnit:
    """One package to materialize.

    :ivar url: Source URL after mirror rewriting.
    :ivar destination: Final file path under the working directory.
    """

    ref: PackageRef
    url: str
    destination: pathlib.Path
    cache_key: CacheKey
    sha256: str | None


def plan_downloads(
    *,
    working_set: WorkingSet,
    output_dir: pathlib.Path,
    mirrors: dict[str, list[str]] | None = None,
) -> list[DownloadUnit]:
    """Map each package onto its destination below ``output_dir``.

    :param working_set: Packages to download.
    :param output_dir: Pack working directory.
    :param mirrors: Optional mirror table.
    :returns: Download units in working-set order.
    """

    units: list[DownloadUnit] = []
    for ref in working_set.refs():
        destination: pathlib.Path
        sha256: str | None
        if isinstance(ref, CondaPackage) is True:
            destination = output_dir / CHANNEL_DIRECTORY_NAME / ref.record.subdir / ref.file_name
            sha256 = ref.record.sha256
        else:
            destination = output_dir / PYPI_DIRECTORY_NAME / ref.file_name
            sha256 = ref.sha256
        units.append(
            DownloadUnit(
                ref=ref,
                url=apply_mirrors(ref.url, mirrors or {}),
                destination=destination,
                cache_key=ref.cache_key,
                sha256=sha256,
            )
        )
    return units


def _local_path(url: str) -> pathlib.Path | None:
    """Return the filesystem path for ``file://`` URLs and plain paths."""

    parts = urllib.parse.urlsplit(url)
    if parts.scheme == "file":
        return pathlib.Path(urllib.request.url2pathname(parts.path))
    if len(parts.scheme) <= 1:
        return pathlib.Path(url)
    return None


def _store_in_cache(source: pathlib.Path, cached: pathlib.Path) -> None:
    """Copy ``source`` into the cache with a whole-file replace."""

    cached.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{cached.name}.", suffix=".tmp", dir=cached.parent)
    os.close(fd)
    tmp: pathlib.Path = pathlib.Path(tmp_name)
    try:
        shutil.copyfile(source, tmp)
        os.replace(tmp, cached)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


async def _in_thread(func: Callable[..., T], *args: Any) -> T:
    """Run ``func`` in a worker thread that is never abandoned.

    A thread cannot be interrupted, so on cancellation this waits for the call
    to return before propagating the cancellation.
    """

    future: asyncio.Future[T] = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        await asyncio.wait([future])
        raise


async def _fetch(unit: DownloadUnit, client: httpx.AsyncClient) -> None:
    """Fetch one unit into ``<destination>.part`` and rename it into place."""

    part: pathlib.Path = unit.destination.with_name(unit.destination.name + ".part")
    h = hashlib.sha256()
    try:
        local: pathlib.Path | None = _local_path(unit.url)
        if local is not None:
            with open(local, "rb") as src, open(part, "wb") as dst:
                while True:
                    chunk: bytes = src.read(_CHUNK_SIZE)
                    if len(chunk) == 0:
                        break
                    h.update(chunk)
                    dst.write(chunk)
        else:
            async with client.stream("GET", unit.url) as response:
                response.raise_for_status()
                with open(part, "wb") as dst:
                    async for data in response.aiter_bytes(_CHUNK_SIZE):
                        h.update(data)
                        dst.write(data)

        if unit.sha256 is not None and h.hexdigest() != unit.sha256.lower():
            raise DownloadError(
                unit.ref.display(),
                unit.url,
                f"sha256 mismatch (expected {unit.sha256}, got {h.hexdigest()})",
            )
        os.replace(part, unit.destination)
    finally:
        part.unlink(missing_ok=True)


async def _run_unit(
    unit: DownloadUnit,
    *,
    client: httpx.AsyncClient,
    cache_dir: pathlib.Path | None,
    semaphore: asyncio.Semaphore,
    observer: DownloadObserver,
) -> None:
    async with semaphore:
        unit.destination.parent.mkdir(parents=True, exist_ok=True)

        cached: pathlib.Path | None = None
        if cache_dir is not None:
            cached = cache_dir / unit.cache_key.bucket / unit.cache_key.file_name
            if cached.is_file() is True:
                try:
                    await _in_thread(shutil.copyfile, cached, unit.destination)
                except OSError as e:
                    raise DownloadError(unit.ref.display(), unit.url, f"could not copy from cache: {e}") from e
                observer.on_package_done(unit.ref, from_cache=True)
                return

        try:
            await _fetch(unit, client)
        except httpx.HTTPStatusError as e:
            raise DownloadError(
                unit.ref.display(),
                unit.url,
                f"HTTP status {e.response.status_code}",
            ) from e
        except httpx.HTTPError as e:
            raise DownloadError(unit.ref.display(), unit.url, f"{type(e).__name__}: {e}") from e
        except OSError as e:
            raise DownloadError(unit.ref.display(), unit.url, str(e)) from e

        if cached is not None:
            try:
                await _in_thread(_store_in_cache, unit.destination, cached)
            except OSError as e:
                raise DownloadError(unit.ref.display(), unit.url, f"could not populate cache: {e}") from e
        observer.on_package_done(unit.ref, from_cache=False)


async def download_packages(
    *,
    working_set: WorkingSet,
    output_dir: pathlib.Path,
    client: httpx.AsyncClient,
    cache_dir: pathlib.Path | None = None,
    config: PackConfig | None = None,
    observer: DownloadObserver | None = None,
) -> list[DownloadUnit]:
    """Download every package of ``working_set`` below ``output_dir``.

    Returns only once every unit has finished; nothing downstream runs on a
    partially materialized working set.

    :param working_set: Packages to download.
    :param output_dir: Pack working directory.
    :param client: Shared HTTP client.
    :param cache_dir: Optional package cache directory.
    :param config: Optional fetch configuration (mirrors, concurrency).
    :param observer: Optional progress observer.
    :returns: The completed download units.
    :raises DownloadError: For the first unit that failed.
    """

    if observer is None:
        observer = DownloadObserver()
    concurrency: int = DEFAULT_DOWNLOAD_CONCURRENCY
    mirrors: dict[str, list[str]] = {}
    if config is not None:
        concurrency = config.download_concurrency
        mirrors = config.mirrors

    units: list[DownloadUnit] = plan_downloads(
        working_set=working_set,
        output_dir=output_dir,
        mirrors=mirrors,
    )
    observer.on_start(len(units))
    if len(units) == 0:
        observer.on_finish()
        return units

    semaphore: asyncio.Semaphore = asyncio.Semaphore(concurrency)
    tasks: list[asyncio.Task[None]] = [
        asyncio.create_task(
            _run_unit(unit, client=client, cache_dir=cache_dir, semaphore=semaphore, observer=observer),
            name=f"download:{unit.ref.file_name}",
        )
        for unit in units
    ]

    try:
        _done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    for task in pending:
        task.cancel()
    if len(pending) > 0:
        await asyncio.gather(*pending, return_exceptions=True)

    # Report the failure of the earliest unit in plan order among those that failed.
    for task in tasks:
        if task.cancelled() is True:
            continue
        error: BaseException | None = task.exception()
        if error is not None:
            raise error

    observer.on_finish()
    return units
