"""``dbgsync.toml`` lookup.

Each command reads defaults from its own table (``[upload]``, ``[extract]``,
``[source]``); values given on the command line win. Without an explicit
path the nearest ``dbgsync.toml`` at or above the working directory is used.
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

from dbgsync.invariants import never

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "dbgsync.toml"
COMMAND_TABLES = frozenset({"upload", "extract", "source"})

ConfigTable = dict[str, Any]


def find_config(start: Path | None = None) -> Path | None:
    directory = (start if start is not None else Path.cwd()).resolve()
    for candidate in (directory, *directory.parents):
        path = candidate / CONFIG_FILE_NAME
        if path.is_file():
            return path
    return None


def read_config(path: Path) -> ConfigTable:
    """Parse ``path``; a missing or unreadable file contributes nothing."""
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError) as exc:
        logger.warning("ignoring config %s: %s", path, exc)
        return {}


def command_defaults(
    command: str,
    *,
    config_path: Path | None = None,
    start: Path | None = None,
) -> ConfigTable:
    if command not in COMMAND_TABLES:
        never("no config table for command", command=command)
    path = config_path if config_path is not None else find_config(start)
    if path is None:
        return {}
    table = read_config(path).get(command, {})
    if not isinstance(table, dict):
        logger.warning("ignoring [%s] in %s: not a table", command, path)
        return {}
    return dict(table)


def merge_payload(payload: ConfigTable, defaults: ConfigTable) -> ConfigTable:
    """Overlay the explicitly given (non-``None``) values of ``payload``."""
    given = {key: value for key, value in payload.items() if value is not None}
    return {**defaults, **given}
