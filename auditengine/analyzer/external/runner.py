"""Sandboxed tool process execution and scoped temporary workspaces."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

_OUTPUT_LIMIT = 8 * 1024 * 1024


@dataclass
class ToolOutput:
    """Captured result of one tool invocation."""
    returncode: int
    stdout: str
    stderr: str
    duration_ms: float


def safe_relative_path(file_name: str) -> Path | None:
    """Submitted file name as a relative path that cannot escape the workspace."""
    parts = [
        p for p in PurePosixPath(file_name.replace("\\", "/")).parts
        if p not in ("", ".", "..", "/") and ":" not in p
    ]
    return Path(*parts) if parts else None


def _materialize(root: Path, files: dict[str, str]) -> None:
    for name, content in files.items():
        rel = safe_relative_path(name)
        if rel is None:
            continue
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


@asynccontextmanager
async def scoped_workspace(files: dict[str, str], prefix: str = "auditengine_") -> AsyncIterator[Path]:
    """Materialize `files` into a temporary directory removed on every exit path.

    Cleanup runs on success, on tool or parse errors raised inside the block,
    and on task cancellation. Files are written off the event loop.
    """
    root = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        await asyncio.to_thread(_materialize, root, files)
        yield root
    finally:
        shutil.rmtree(root, ignore_errors=True)


class ToolRunner:
    """Runs external binaries with a bounded timeout.

    A tool that is missing, times out or cannot be started yields None;
    callers treat that as "no findings from this tool".
    """

    def __init__(self) -> None:
        self._available: dict[str, bool] = {}

    def is_available(self, binary: str) -> bool:
        if binary not in self._available:
            self._available[binary] = shutil.which(binary) is not None
        return self._available[binary]

    async def run(
        self,
        cmd: list[str],
        cwd: Path,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> ToolOutput | None:
        if not self.is_available(cmd[0]):
            logger.info("%s not installed, skipping", cmd[0], extra={"tool": cmd[0]})
            return None

        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "NO_COLOR": "1", **(env or {})},
            )
        except OSError as exc:
            logger.warning("Failed to start %s: %s", cmd[0], exc, extra={"tool": cmd[0]})
            return None

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %.0fs", cmd[0], timeout, extra={"tool": cmd[0]})
            await self._kill(process)
            return None
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        logger.debug(
            "%s exited %s", " ".join(cmd), process.returncode,
            extra={"tool": cmd[0], "duration_ms": duration_ms},
        )
        return ToolOutput(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout[:_OUTPUT_LIMIT].decode("utf-8", errors="replace"),
            stderr=stderr[:_OUTPUT_LIMIT].decode("utf-8", errors="replace"),
            duration_ms=duration_ms,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning("Process %s did not exit after kill", process.pid)
