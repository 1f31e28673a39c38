"""Configuration loading.

Two optional inputs shape how packages are fetched:

- a TOML config file in the rattler/pixi format, of which pixi-pack reads
  ``[mirrors]`` and ``[concurrency] downloads``;
- an authentication file in rattler's JSON format, mapping hosts (optionally
  ``*.``-prefixed) to ``BearerToken``, ``BasicHTTP`` or ``CondaToken``
  credentials.
"""

from dataclasses import dataclass, field
import json
import os
import pathlib
import tomllib
from typing import Any

from pixi_pack.errors import ConfigError

DEFAULT_DOWNLOAD_CONCURRENCY: int = 50

AUTH_FILE_ENV: str = "RATTLER_AUTH_FILE"


@dataclass(frozen=True, slots=True)
class PackConfig:
    """Fetch configuration.

    :ivar mirrors: Channel URL prefix -> mirror URL prefixes (first one is used).
    :ivar download_concurrency: Maximum number of concurrent downloads.
    """

    mirrors: dict[str, list[str]] = field(default_factory=dict)
    download_concurrency: int = DEFAULT_DOWNLOAD_CONCURRENCY


@dataclass(frozen=True, slots=True)
class Credentials:
    """Credentials for one host.

    :ivar kind: ``BearerToken``, ``BasicHTTP`` or ``CondaToken``.
    """

    kind: str
    token: str | None = None
    username: str | None = None
    password: str | None = None


def load_config(path: pathlib.Path) -> PackConfig:
    """Load a rattler-style TOML config file.

    :param path: Config file path.
    :returns: Parsed config.
    :raises ConfigError: If the file cannot be read or has an invalid shape.
    """

    try:
        data: dict[str, Any] = tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(path, str(e)) from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(path, str(e)) from e

    mirrors: dict[str, list[str]] = {}
    raw_mirrors: Any = data.get("mirrors", {})
    if isinstance(raw_mirrors, dict) is False:
        raise ConfigError(path, "[mirrors] must be a table")
    for prefix, targets in raw_mirrors.items():
        if isinstance(targets, list) is False or len(targets) == 0:
            raise ConfigError(path, f"mirrors for {prefix!r} must be a non-empty list")
        mirrors[_with_slash(str(prefix))] = [_with_slash(str(t)) for t in targets]

    concurrency: int = DEFAULT_DOWNLOAD_CONCURRENCY
    raw_concurrency: Any = data.get("concurrency", {})
    if isinstance(raw_concurrency, dict) is True and "downloads" in raw_concurrency:
        value: Any = raw_concurrency["downloads"]
        if isinstance(value, int) is False or value < 1:
            raise ConfigError(path, f"concurrency.downloads must be a positive integer, got {value!r}")
        concurrency = value

    return PackConfig(mirrors=mirrors, download_concurrency=concurrency)


def resolve_auth_file(auth_file: pathlib.Path | None) -> pathlib.Path | None:
    """Resolve the auth file to use.

    :param auth_file: Explicit auth file, if any.
    :returns: The explicit file, else the one named by ``RATTLER_AUTH_FILE``.
    """

    if auth_file is not None:
        return auth_file
    env_value: str | None = os.environ.get(AUTH_FILE_ENV)
    if env_value is not None and len(env_value) > 0:
        return pathlib.Path(env_value)
    return None


def load_auth_file(path: pathlib.Path) -> dict[str, Credentials]:
    """Load a rattler JSON authentication file.

    :param path: Auth file path.
    :returns: Host pattern -> credentials.
    :raises ConfigError: If the file is unreadable or malformed.
    """

    try:
        data: Any = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(path, str(e)) from e
    except json.JSONDecodeError as e:
        raise ConfigError(path, str(e)) from e

    if isinstance(data, dict) is False:
        raise ConfigError(path, "expected a JSON object mapping hosts to credentials")

    out: dict[str, Credentials] = {}
    for host, entry in data.items():
        if isinstance(entry, dict) is False or len(entry) != 1:
            raise ConfigError(path, f"invalid credentials for {host!r}")
        kind, value = next(iter(entry.items()))
        if kind == "BearerToken" or kind == "CondaToken":
            if isinstance(value, str) is False:
                raise ConfigError(path, f"{kind} for {host!r} must be a string")
            out[host] = Credentials(kind=kind, token=value)
        elif kind == "BasicHTTP":
            if isinstance(value, dict) is False:
                raise ConfigError(path, f"BasicHTTP for {host!r} must be an object")
            out[host] = Credentials(
                kind=kind,
                username=str(value.get("username", "")),
                password=str(value.get("password", "")),
            )
        else:
            raise ConfigError(path, f"unknown credential type {kind!r} for {host!r}")
    return out


def credentials_for_host(store: dict[str, Credentials], host: str) -> Credentials | None:
    """Find credentials for ``host``; exact entries win over ``*.`` wildcards."""

    exact: Credentials | None = store.get(host)
    if exact is not None:
        return exact
    for pattern, creds in store.items():
        if pattern.startswith("*.") is True and host.endswith(pattern[1:]) is True:
            return creds
    return None


def apply_mirrors(url: str, mirrors: dict[str, list[str]]) -> str:
    """Rewrite ``url`` onto the first mirror of the longest matching prefix."""

    best: str | None = None
    for prefix in mirrors:
        if url.startswith(prefix) is True and (best is None or len(prefix) > len(best)):
            best = prefix
    if best is None:
        return url
    return mirrors[best][0] + url[len(best) :]


def _with_slash(url: str) -> str:
    if url.endswith("/") is True:
        return url
    return url + "/"
