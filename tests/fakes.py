"""In-memory stand-in for a PowerShell host process.

``FakeProcess`` decodes the framed stdin line exactly as PowerShell would see
it, hands the inner command to a responder, and emits a correctly framed
reply. Pool, registry and invoker tests therefore exercise the real framing
code without an interpreter installed.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from vcmigrate.core.models import ProcessHealth
from vcmigrate.services.process_handle import (
    InvocationTimeoutError,
    ProcessDiedError,
)
from vcmigrate.services.script_builder import FRAME_PREFIX, SESSION_BOOTSTRAP

_PAYLOAD_RE = re.compile(r"FromBase64String\('([A-Za-z0-9+/=]+)'\)")
_BEGIN_RE = re.compile(re.escape(FRAME_PREFIX) + r":BEGIN:([0-9a-f]+)")
_COMMAND_START = "    & {"
_COMMAND_END = "    } 2>&1 | ForEach-Object {"

_pids = itertools.count(40000)


@dataclass
class FakeReply:
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)
    exit_code: int = 0
    delay: float = 0.0


Responder = Callable[[str], Optional[FakeReply]]


def default_responder(command: str) -> FakeReply:
    if command == SESSION_BOOTSTRAP:
        return FakeReply(stdout=["READY:1"])
    return FakeReply()


def decode_command(payload: str) -> tuple:
    """Return ``(token, command)`` from a framed stdin line."""

    match = _PAYLOAD_RE.search(payload)
    assert match, f"not a framed payload: {payload!r}"
    script = base64.b64decode(match.group(1)).decode("utf-8")
    token = _BEGIN_RE.search(script).group(1)

    lines = script.split("\n")
    start = lines.index(_COMMAND_START) + 1
    end = lines.index(_COMMAND_END)
    command = "\n".join(line[8:] for line in lines[start:end])
    return token, command


class FakeProcess:
    def __init__(self, owner_session_id: str, responder: Optional[Responder] = None) -> None:
        self.pid = next(_pids)
        self.owner_session_id = owner_session_id
        self.start_time = time.time()
        self.responder = responder or default_responder
        self.commands: List[str] = []
        self.kill_count = 0
        self.terminated = False
        self._alive = True
        self._killed = False
        self._queues: Dict[str, asyncio.Queue] = {
            "stdout": asyncio.Queue(),
            "stderr": asyncio.Queue(),
        }
        self._tasks: List[asyncio.Task] = []

    def is_alive(self) -> bool:
        return self._alive

    @property
    def user_commands(self) -> List[str]:
        return [command for command in self.commands if command != SESSION_BOOTSTRAP]

    async def write_command(self, payload: str) -> None:
        if not self._alive:
            raise ProcessDiedError(f"fake process {self.pid} is not running")
        token, command = decode_command(payload)
        self.commands.append(command)
        reply = self.responder(command) or FakeReply()
        self._tasks.append(asyncio.ensure_future(self._emit(token, reply)))

    async def _emit(self, token: str, reply: FakeReply) -> None:
        if reply.delay:
            await asyncio.sleep(reply.delay)
        if not self._alive:
            return
        begin = f"{FRAME_PREFIX}:BEGIN:{token}"
        end = f"{FRAME_PREFIX}:END:{token}"
        for line in [begin, *reply.stdout, f"{end}:{reply.exit_code}"]:
            self._queues["stdout"].put_nowait(line)
        for line in [begin, *reply.stderr, end]:
            self._queues["stderr"].put_nowait(line)

    async def read_until_sentinel(self, sentinel, timeout=None, *, stream="stdout", on_line=None):
        queue = self._queues[stream]
        lines: List[str] = []
        while True:
            try:
                line = await asyncio.wait_for(queue.get(), timeout)
            except asyncio.TimeoutError as exc:
                raise InvocationTimeoutError("fake timeout") from exc
            if line is None:
                queue.put_nowait(None)
                raise ProcessDiedError(f"fake process {self.pid} closed {stream}")
            if line.startswith(sentinel):
                return lines, line
            lines.append(line)
            if on_line is not None:
                on_line(line)

    def _close_streams(self) -> None:
        self._alive = False
        for task in self._tasks:
            task.cancel()
        for queue in self._queues.values():
            queue.put_nowait(None)

    def die(self) -> None:
        """Simulate the interpreter crashing on its own."""

        self._close_streams()

    def kill(self, include_descendants: bool = True) -> bool:
        if self._killed or not self._alive:
            self._killed = True
            return False
        self._killed = True
        self.kill_count += 1
        self._close_streams()
        return True

    async def terminate(self, graceful_timeout: float = 5.0) -> bool:
        self.terminated = True
        return self.kill()

    def health(self) -> ProcessHealth:
        return ProcessHealth(pid=self.pid, alive=self._alive, runtime_seconds=0.0)


class FakeProcessFactory:
    """Process factory for ``SessionPool`` that records every spawn."""

    def __init__(self, responder: Optional[Responder] = None, spawn_delay: float = 0.0) -> None:
        self.responder = responder
        self.spawn_delay = spawn_delay
        self.created: List[FakeProcess] = []

    async def __call__(self, session_id: str) -> FakeProcess:
        await asyncio.sleep(self.spawn_delay)
        process = FakeProcess(session_id, self._respond)
        self.created.append(process)
        return process

    def _respond(self, command: str) -> Optional[FakeReply]:
        if command == SESSION_BOOTSTRAP:
            return default_responder(command)
        if self.responder is None:
            return FakeReply()
        return self.responder(command)
