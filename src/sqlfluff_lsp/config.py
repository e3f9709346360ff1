"""
Server configuration and SQL dialect resolution.

The dialect passed to sqlfluff is resolved, in decreasing precedence, from:

1. the nearest sqlfluff project configuration file, walking up from the
   document's directory to the workspace root;
2. the client's ``initializationOptions.dialect``;
3. the ``--dialect`` command-line flag.

When none of them names a dialect, linting and formatting are refused with a
diagnostic instead of letting sqlfluff fail on every run.
"""

from __future__ import annotations

import configparser
import logging
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse

logger = logging.getLogger("sqlfluff-lsp.config")

DEFAULT_DEBOUNCE = 0.3
DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_WORKERS = 4

OUTPUT_FORMATS = ("json", "github-annotation", "github-annotation-native")

# Nearest file wins; within a directory the first file naming a dialect wins.
INI_CONFIG_FILES = (".sqlfluff", "setup.cfg", "tox.ini")
TOML_CONFIG_FILES = ("pyproject.toml",)

# Keys accepted in the client's initializationOptions.
_OPTION_FIELDS = {
    "dialect": "dialect",
    "templater": "templater",
    "sqlfluffPath": "sqlfluff_path",
    "configPath": "config_path",
}


@dataclass(frozen=True)
class ServerConfig:
    """
    Process-wide settings of the language server.

    Attributes:
        dialect: Default SQL dialect when no project file names one
        templater: sqlfluff templater (``jinja``, ``raw``, ...)
        sqlfluff_path: Path to the sqlfluff executable, ``None`` for PATH lookup
        config_path: Extra sqlfluff config file passed with ``--config``
        debounce: Quiescence window before a change is linted, in seconds
        timeout: Maximum duration of a single sqlfluff run, in seconds
        max_workers: Number of sqlfluff processes allowed to run at once
        output_format: Format requested from ``sqlfluff lint``
    """

    dialect: Optional[str] = None
    templater: Optional[str] = None
    sqlfluff_path: Optional[str] = None
    config_path: Optional[str] = None
    debounce: float = DEFAULT_DEBOUNCE
    timeout: float = DEFAULT_TIMEOUT
    max_workers: int = DEFAULT_MAX_WORKERS
    output_format: str = "json"

    def with_options(self, options: Any) -> ServerConfig:
        """
        Return a copy updated with the client's initialization options.

        Unknown keys and non-string values are ignored.

        Args:
            options: The ``initializationOptions`` value sent by the client

        Returns:
            The updated configuration
        """
        if not isinstance(options, dict):
            return self

        updates: dict[str, str] = {}
        for key, attr in _OPTION_FIELDS.items():
            value = options.get(key)
            if isinstance(value, str) and value:
                updates[attr] = value
            elif value is not None:
                logger.warning(f"Ignoring initialization option {key}={value!r}")

        return replace(self, **updates) if updates else self


def uri_to_path(uri: str) -> Optional[Path]:
    """Convert a ``file://`` URI to a path, or ``None`` for other schemes."""
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        return None
    return Path(unquote(parsed.path))


def read_config_dialect(path: Path) -> Optional[str]:
    """
    Read the dialect named by a single sqlfluff configuration file.

    Args:
        path: A ``.sqlfluff``, ``setup.cfg``, ``tox.ini`` or ``pyproject.toml``

    Returns:
        The dialect, or ``None`` if the file does not set one or is unreadable
    """
    try:
        if path.name in TOML_CONFIG_FILES:
            with path.open("rb") as handle:
                data = tomllib.load(handle)
            dialect = data.get("tool", {}).get("sqlfluff", {}).get("core", {}).get("dialect")
        else:
            parser = configparser.ConfigParser(interpolation=None)
            parser.read(path, encoding="utf-8")
            dialect = parser.get("sqlfluff", "dialect", fallback=None)
    except (OSError, tomllib.TOMLDecodeError, configparser.Error) as e:
        logger.warning(f"Could not read sqlfluff config {path}: {e}")
        return None

    if isinstance(dialect, str) and dialect.strip():
        return dialect.strip()
    return None


def find_project_dialect(start: Path, root: Optional[Path] = None) -> Optional[str]:
    """
    Find the dialect named by the nearest project configuration file.

    The search walks from ``start`` up to ``root`` (inclusive). Without a
    root, or when ``start`` lies outside it, the search stops at the
    filesystem root.

    Args:
        start: Directory to start from
        root: Workspace root bounding the search

    Returns:
        The dialect, or ``None`` if no configuration file names one
    """
    directory = start
    while True:
        for name in INI_CONFIG_FILES + TOML_CONFIG_FILES:
            candidate = directory / name
            try:
                found = candidate.is_file()
            except OSError as e:
                logger.warning(f"Skipping sqlfluff config {candidate}: {e}")
                continue
            if found:
                dialect = read_config_dialect(candidate)
                if dialect:
                    logger.debug(f"Dialect {dialect!r} from {candidate}")
                    return dialect

        if root is not None and directory == root:
            return None
        if directory.parent == directory:
            return None
        directory = directory.parent


def resolve_dialect(
    default: Optional[str],
    document_uri: Optional[str] = None,
    workspace_root: Optional[Path] = None,
) -> Optional[str]:
    """
    Resolve the dialect for a document (or for the workspace when no URI).

    Performs file I/O; callers on the event loop run it in a thread.

    Args:
        default: Dialect from the client options or the --dialect flag
        document_uri: Document whose directory starts the search
        workspace_root: Workspace root bounding the search

    Returns:
        The dialect to pass to sqlfluff, or ``None`` if unresolvable
    """
    start: Optional[Path] = None
    if document_uri is not None:
        path = uri_to_path(document_uri)
        if path is not None:
            start = path.parent
    if start is None:
        start = workspace_root

    if start is not None:
        bound = None
        if workspace_root is not None and start.is_relative_to(workspace_root):
            bound = workspace_root
        dialect = find_project_dialect(start, bound)
        if dialect:
            return dialect

    return default
