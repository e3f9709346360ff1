"""
Invocation of the external sqlfluff process.

The server depends only on the ``AnalyzerInvoker`` protocol: give it the
document text and a dialect, get back the raw output of one run or an
``AnalyzerError``. ``SqlfluffInvoker`` is the production implementation;
tests plug in fakes through the same protocol.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from sqlfluff_lsp.config import DEFAULT_TIMEOUT, ServerConfig, uri_to_path
from sqlfluff_lsp.errors import AnalyzerError, AnalyzerTimeout, BinaryNotFound, NonZeroExit

logger = logging.getLogger("sqlfluff-lsp.analyzer")

DEFAULT_EXECUTABLE = "sqlfluff"


class AnalyzerMode(Enum):
    """What to ask sqlfluff for; the value is the sqlfluff subcommand."""

    LINT = "lint"
    FORMAT = "fix"


@dataclass(frozen=True, slots=True)
class RawOutput:
    """Captured result of one analyzer run."""

    stdout: str
    stderr: str = ""
    returncode: int = 0
    # Lint format requested with --format, None for fix runs
    output_format: Optional[str] = None


class AnalyzerInvoker(Protocol):
    """Interface of the component that runs the external analyzer."""

    async def run(
        self,
        mode: AnalyzerMode,
        text: str,
        *,
        dialect: Optional[str],
        filename: Optional[str] = None,
        config_path: Optional[str] = None,
    ) -> RawOutput:
        """
        Analyze ``text`` and return the raw output.

        Raises:
            AnalyzerError: If the analyzer could not produce output
            asyncio.CancelledError: If the caller was cancelled; the process
                has been killed by then
        """
        ...


class SqlfluffInvoker:
    """
    Runs ``sqlfluff lint`` or ``sqlfluff fix`` with the document on stdin.

    Return codes 0 and 1 are successful runs (1 means violations remain);
    anything else is reported as ``NonZeroExit``.
    """

    ACCEPTED_RETURN_CODES = frozenset({0, 1})

    def __init__(
        self,
        executable: Optional[str] = None,
        *,
        templater: Optional[str] = None,
        output_format: str = "json",
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.executable = executable or DEFAULT_EXECUTABLE
        self.templater = templater
        self.output_format = output_format
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: ServerConfig) -> SqlfluffInvoker:
        """Create an invoker from the server configuration."""
        return cls(
            config.sqlfluff_path,
            templater=config.templater,
            output_format=config.output_format,
            timeout=config.timeout,
        )

    def resolve_executable(self) -> str:
        """
        Locate the sqlfluff executable.

        Raises:
            BinaryNotFound: If it is neither a path to an executable nor on PATH
        """
        resolved = shutil.which(self.executable)
        if resolved is None:
            raise BinaryNotFound(self.executable)
        return resolved

    def build_command(
        self,
        mode: AnalyzerMode,
        *,
        dialect: Optional[str],
        filename: Optional[str] = None,
        config_path: Optional[str] = None,
        executable: Optional[str] = None,
    ) -> list[str]:
        """Assemble the sqlfluff command line for one run."""
        command = [executable or self.executable, mode.value]

        if dialect:
            command.append(f"--dialect={dialect}")
        if self.templater:
            command.append(f"--templater={self.templater}")
        if config_path:
            command.append(f"--config={config_path}")
        if filename:
            command.append(f"--stdin-filename={filename}")

        command.extend(["--disable-progress-bar", "--nocolor"])

        if mode is AnalyzerMode.LINT:
            command.extend([f"--format={self.output_format}", "--nofail"])
        else:
            command.append("--quiet")

        command.append("-")
        return command

    async def run(
        self,
        mode: AnalyzerMode,
        text: str,
        *,
        dialect: Optional[str],
        filename: Optional[str] = None,
        config_path: Optional[str] = None,
    ) -> RawOutput:
        """
        Run sqlfluff once and capture its output.

        Args:
            mode: Lint or format
            text: Document text, sent on stdin
            dialect: SQL dialect, omitted from the command line when ``None``
            filename: Document URI or path, lets sqlfluff find nested config
            config_path: Extra sqlfluff config file

        Returns:
            The captured output

        Raises:
            BinaryNotFound: If sqlfluff cannot be started
            NonZeroExit: If sqlfluff failed
            AnalyzerTimeout: If sqlfluff ran longer than ``timeout``
        """
        if filename is not None and "://" in filename:
            path = uri_to_path(filename)
            filename = str(path) if path is not None else None

        command = self.build_command(
            mode,
            dialect=dialect,
            filename=filename,
            config_path=config_path,
            executable=self.resolve_executable(),
        )
        logger.debug(f"Running {' '.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise BinaryNotFound(command[0]) from e
        except OSError as e:
            raise AnalyzerError(f"Could not start sqlfluff: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(text.encode("utf-8")),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            await _terminate(process)
            logger.error(f"sqlfluff {mode.value} timed out after {self.timeout:g}s")
            raise AnalyzerTimeout(self.timeout) from None
        except asyncio.CancelledError:
            await _terminate(process)
            logger.debug(f"sqlfluff {mode.value} cancelled")
            raise

        output = RawOutput(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            returncode=process.returncode if process.returncode is not None else 0,
            output_format=self.output_format if mode is AnalyzerMode.LINT else None,
        )

        if output.returncode not in self.ACCEPTED_RETURN_CODES:
            raise NonZeroExit(output.returncode, output.stderr)

        return output


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Kill a process that may already have exited and reap it."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()
