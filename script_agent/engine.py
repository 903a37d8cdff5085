"""Script engines: the capability that actually runs script content.

The execution manager only talks to the ``ScriptEngine`` interface. The
shipped implementation runs Python source in a child interpreter so that a
misbehaving script can always be killed, whatever it is doing.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Callable, List, Optional


logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]

_MARKER = "__script_agent__"
_LINE_LIMIT = 1024 * 1024

# Runs inside the child interpreter. The script source arrives on stdin and is
# executed with ``send_log`` in its globals; an uncaught exception is reported
# back as a structured line instead of escaping.
_BOOTSTRAP = r"""
import json, sys, traceback

_out = sys.stdout

def _emit(kind, content):
    _out.write(json.dumps({"%(marker)s": kind, "content": content}) + "\n")
    _out.flush()

def send_log(*parts):
    _emit("log", " ".join(str(p) for p in parts))

source = sys.stdin.read()
scope = {"__name__": "__script__", "send_log": send_log}
try:
    exec(compile(source, "<script>", "exec"), scope)
except SystemExit:
    raise
except BaseException as e:
    _emit("error", "%%s: %%s" %% (type(e).__name__, e))
    traceback.print_exc()
    sys.exit(1)
""" % {"marker": _MARKER}


@dataclass(frozen=True)
class ScriptExit:
    """How an execution context ended."""
    ok: bool
    error: Optional[str] = None
    returncode: Optional[int] = None
    forced: bool = False


class ScriptHandle(abc.ABC):
    """A running execution context."""

    script_id: str

    @abc.abstractmethod
    async def wait(self) -> ScriptExit:
        """Wait for the context to end, however that happens."""


class ScriptEngine(abc.ABC):
    """Runs script content with an injected log callback and can force-stop it."""

    @abc.abstractmethod
    async def run(self, script_id: str, content: str, log: LogCallback) -> ScriptHandle:
        """Start ``content`` and return immediately with a handle."""

    @abc.abstractmethod
    async def force_stop(self, handle: ScriptHandle) -> None:
        """Preemptively terminate the context, in bounded time."""


class SubprocessHandle(ScriptHandle):
    """A script running in a child interpreter."""

    def __init__(self, script_id: str, process: asyncio.subprocess.Process, log: LogCallback) -> None:
        self.script_id = script_id
        self.process = process
        self._log = log
        self._error: Optional[str] = None
        self._forced = False
        self._pumps: List[asyncio.Task] = [
            asyncio.create_task(self._pump_stdout()),
            asyncio.create_task(self._pump_stderr()),
        ]

    @property
    def pid(self) -> int:
        return self.process.pid

    def kill(self) -> None:
        self._forced = True
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    async def wait(self) -> ScriptExit:
        returncode = await self.process.wait()
        await asyncio.gather(*self._pumps, return_exceptions=True)

        if self._forced:
            return ScriptExit(ok=False, returncode=returncode, forced=True)
        if self._error is not None:
            return ScriptExit(ok=False, error=self._error, returncode=returncode)
        if returncode != 0:
            return ScriptExit(ok=False, error=f"exited with code {returncode}", returncode=returncode)
        return ScriptExit(ok=True, returncode=returncode)

    async def _pump_stdout(self) -> None:
        assert self.process.stdout is not None
        async for raw in self.process.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            kind, content = _parse_line(line)
            if kind == "error":
                self._error = content
            else:
                self._safe_log(content)

    async def _pump_stderr(self) -> None:
        assert self.process.stderr is not None
        async for raw in self.process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line:
                logger.debug("[%s stderr] %s", self.script_id, line)

    def _safe_log(self, content: str) -> None:
        try:
            self._log(content)
        except Exception:
            logger.exception("Log callback failed for script %s", self.script_id)


def _parse_line(line: str) -> tuple:
    if line.startswith("{") and _MARKER in line:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return "log", line
        if isinstance(data, dict) and _MARKER in data:
            return data[_MARKER], str(data.get("content", ""))
    return "log", line


class SubprocessScriptEngine(ScriptEngine):
    """Runs Python script content in an isolated child interpreter."""

    def __init__(
        self,
        python: str = "",
        stop_timeout: float = 5.0,
        cwd: Optional[str] = None,
    ) -> None:
        self.python = python or sys.executable
        self.stop_timeout = stop_timeout
        self.cwd = cwd

    async def run(self, script_id: str, content: str, log: LogCallback) -> SubprocessHandle:
        env = dict(os.environ)
        env["SCRIPT_ID"] = script_id
        env["PYTHONUNBUFFERED"] = "1"

        process = await asyncio.create_subprocess_exec(
            self.python, "-I", "-c", _BOOTSTRAP,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=env,
            limit=_LINE_LIMIT,
        )
        assert process.stdin is not None
        process.stdin.write(content.encode("utf-8"))
        try:
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Script %s exited before reading its source", script_id)
        finally:
            process.stdin.close()

        logger.debug("Script %s running as pid %d", script_id, process.pid)
        return SubprocessHandle(script_id, process, log)

    async def force_stop(self, handle: ScriptHandle) -> None:
        if not isinstance(handle, SubprocessHandle):
            raise TypeError(f"Not a subprocess handle: {handle!r}")
        handle.kill()
        try:
            await asyncio.wait_for(handle.process.wait(), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Script %s (pid %d) did not exit within %.1fs of SIGKILL",
                handle.script_id, handle.pid, self.stop_timeout,
            )
