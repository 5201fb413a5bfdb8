"""Async subprocess runner shared by the CLI-backed providers."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping

import structlog

from deploykit.domain.errors import ProviderError


logger = structlog.get_logger(__name__)

_DENIED_MARKERS = ("AccessDenied", "UnauthorizedOperation", "Forbidden", "forbidden")


class CommandResult:
    """Exit status and captured output of one command."""

    def __init__(self, argv: list[str], returncode: int, stdout: str, stderr: str) -> None:
        self.argv = argv
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def permission_denied(self) -> bool:
        return any(marker in self.stderr for marker in _DENIED_MARKERS)

    def raise_for_status(self) -> CommandResult:
        if not self.ok:
            raise ProviderError(
                f"{' '.join(self.argv[:3])} exited {self.returncode}: {self.stderr.strip()[:500]}",
                permission_denied=self.permission_denied,
            )
        return self


class CommandRunner:
    """Runs external commands with asyncio, never through a shell."""

    def __init__(self, env: Mapping[str, str] | None = None, timeout: float = 120.0) -> None:
        self._env = {**os.environ, **env} if env else None
        self._timeout = timeout

    async def run(self, argv: list[str], *, stdin: str | None = None) -> CommandResult:
        logger.debug("command_started", command=argv[:3])
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
            )
        except FileNotFoundError as e:
            raise ProviderError(f"{argv[0]} is not installed or not on PATH") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(stdin.encode("utf-8") if stdin is not None else None),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ProviderError(f"{' '.join(argv[:3])} timed out after {self._timeout}s") from e
        except asyncio.CancelledError:
            process.kill()
            raise

        result = CommandResult(
            argv,
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
        logger.debug("command_finished", command=argv[:3], returncode=result.returncode)
        return result
