"""Activation scripts for an unpacked prefix."""

import enum
import pathlib

from pixi_pack.platform import is_windows


class Shell(enum.Enum):
    """Shell dialects an activation script can be generated for."""

    BASH = "bash"
    ZSH = "zsh"
    FISH = "fish"
    POWERSHELL = "powershell"
    CMD = "cmd"

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @classmethod
    def default_for(cls, platform: str) -> "Shell":
        if is_windows(platform) is True:
            return cls.POWERSHELL
        return cls.BASH


_EXTENSIONS: dict[Shell, str] = {
    Shell.BASH: "sh",
    Shell.ZSH: "zsh",
    Shell.FISH: "fish",
    Shell.POWERSHELL: "ps1",
    Shell.CMD: "bat",
}


def path_entries(prefix: pathlib.Path, *, platform: str) -> list[str]:
    """Directories of ``prefix`` that go in front of ``PATH``."""

    if is_windows(platform) is True:
        return [
            str(prefix),
            str(prefix / "Library" / "mingw-w64" / "bin"),
            str(prefix / "Library" / "usr" / "bin"),
            str(prefix / "Library" / "bin"),
            str(prefix / "Scripts"),
            str(prefix / "bin"),
        ]
    return [str(prefix / "bin")]


def find_activate_scripts(shell: Shell, prefix: pathlib.Path) -> list[pathlib.Path]:
    """List ``etc/conda/activate.d`` scripts of ``prefix`` matching ``shell``, sorted by name."""

    activate_d: pathlib.Path = prefix / "etc" / "conda" / "activate.d"
    if activate_d.is_dir() is False:
        return []
    return sorted(p for p in activate_d.iterdir() if p.is_file() is True and p.suffix == f".{shell.extension}")


def activation_script(
    shell: Shell,
    prefix: pathlib.Path,
    *,
    platform: str,
    activate_scripts: list[pathlib.Path] | None = None,
) -> str:
    """Render the activation script for ``prefix``.

    :param shell: Shell dialect.
    :param prefix: Environment prefix.
    :param platform: Platform of the prefix (selects ``PATH`` layout and separator).
    :param activate_scripts: ``activate.d`` scripts to source after the variables are set.
    :returns: Script text.
    """

    entries: list[str] = path_entries(prefix, platform=platform)
    sep: str = ";" if is_windows(platform) is True else ":"
    scripts: list[pathlib.Path] = activate_scripts or []
    lines: list[str]

    if shell == Shell.BASH or shell == Shell.ZSH:
        lines = [
            f'export PATH="{sep.join(entries)}{sep}${{PATH}}"',
            f'export CONDA_PREFIX="{prefix}"',
        ]
        lines.extend(f'. "{s}"' for s in scripts)
        return "\n".join(lines) + "\n"

    if shell == Shell.FISH:
        quoted: str = " ".join('"' + e + '"' for e in entries)
        lines = [
            f"set -gx PATH {quoted} $PATH",
            f'set -gx CONDA_PREFIX "{prefix}"',
        ]
        lines.extend(f'source "{s}"' for s in scripts)
        return "\n".join(lines) + "\n"

    if shell == Shell.POWERSHELL:
        lines = [
            f'$Env:PATH = "{sep.join(entries)}{sep}" + $Env:PATH',
            f'$Env:CONDA_PREFIX = "{prefix}"',
        ]
        lines.extend(f'. "{s}"' for s in scripts)
        return "\n".join(lines) + "\n"

    if shell == Shell.CMD:
        lines = [
            f'@SET "PATH={sep.join(entries)}{sep}%PATH%"',
            f'@SET "CONDA_PREFIX={prefix}"',
        ]
        lines.extend(f'@CALL "{s}"' for s in scripts)
        return "\r\n".join(lines) + "\r\n"

    raise AssertionError(f"Unhandled shell: {shell}")
