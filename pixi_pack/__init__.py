"""pixi-pack.

Packs a locked pixi environment into a single portable artifact and unpacks it
again on a matching host without network access.
"""

__all__: list[str] = [
    "__version__",
    "CHANNEL_DIRECTORY_NAME",
    "PYPI_DIRECTORY_NAME",
    "PIXI_PACK_METADATA_PATH",
    "ENVIRONMENT_FILE_NAME",
    "DEFAULT_PIXI_PACK_VERSION",
]

__version__: str = "0.1.0"

CHANNEL_DIRECTORY_NAME: str = "channel"
PYPI_DIRECTORY_NAME: str = "pypi"
PIXI_PACK_METADATA_PATH: str = "pixi-pack.json"
ENVIRONMENT_FILE_NAME: str = "environment.yml"

# Pack format version understood by this implementation.
DEFAULT_PIXI_PACK_VERSION: str = "1"
