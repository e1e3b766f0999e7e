"""Shared fixtures: a scripted in-memory sandbox capability."""

from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple

import pytest

from preview.capability import SERVER_READY, EventEmitter, ProcessHandle, SandboxCapability
from preview.models import VirtualFileTree

READY_URL = "https://preview-5173.sandbox.test"


class FakeProcess:
    """A spawned process whose output and exit are driven by the test."""

    def __init__(self, command_line: str) -> None:
        self.command_line = command_line
        self.queue: asyncio.Queue = asyncio.Queue()
        self.exit: asyncio.Future = asyncio.get_running_loop().create_future()

    async def _iter(self):
        while True:
            chunk = await self.queue.get()
            if chunk is None:
                return
            yield chunk

    def push(self, chunk: str) -> None:
        self.queue.put_nowait(chunk)

    def end_output(self) -> None:
        self.queue.put_nowait(None)

    def handle(self) -> ProcessHandle:
        return ProcessHandle(self.command_line, self._iter(), self.exit)


class FakeCapability(SandboxCapability):
    """
    Scripted sandbox.

    install_exit_code=None means `npm install` never exits;
    ready=None means the server-ready event never fires.
    """

    def __init__(
        self,
        install_chunks: Tuple[str, ...] = ("added 4 packages\n",),
        install_exit_code: Optional[int] = 0,
        server_chunks: Tuple[str, ...] = ("VITE v5.0.12 ready\n",),
        ready: Optional[Tuple[int, str]] = (5173, READY_URL),
    ) -> None:
        self.install_chunks = install_chunks
        self.install_exit_code = install_exit_code
        self.server_chunks = server_chunks
        self.ready = ready

        self.mounts: List[VirtualFileTree] = []
        self.processes: List[FakeProcess] = []
        self.timeline: List[Tuple[str, object]] = []
        self.kill_calls: List[str] = []
        self.closed = False

        self.mount_error: Optional[BaseException] = None
        self.spawn_error: Optional[BaseException] = None
        self.kill_error: Optional[BaseException] = None
        self.exit_error: Optional[BaseException] = None

        self.events = EventEmitter()
        self._tasks: List[asyncio.Task] = []

    @property
    def commands(self) -> List[str]:
        return [p.command_line for p in self.processes]

    @property
    def server(self) -> FakeProcess:
        return self.processes[1]

    async def mount(self, tree: VirtualFileTree) -> None:
        if self.mount_error is not None:
            raise self.mount_error
        self.mounts.append(dict(tree))

    async def spawn(self, command: str, args=None) -> ProcessHandle:
        if self.spawn_error is not None:
            raise self.spawn_error

        process = FakeProcess(" ".join([command] + list(args or [])))
        self.processes.append(process)
        self.timeline.append(("spawn", process.command_line))

        if args == ["install"]:
            self._tasks.append(asyncio.ensure_future(self._run_install(process)))
        else:
            self._tasks.append(asyncio.ensure_future(self._run_server(process)))
        return process.handle()

    async def _run_install(self, process: FakeProcess) -> None:
        for chunk in self.install_chunks:
            process.push(chunk)
            await asyncio.sleep(0)
        if self.exit_error is not None:
            process.exit.set_exception(self.exit_error)
            return
        if self.install_exit_code is None:
            return
        process.end_output()
        await asyncio.sleep(0)
        self.timeline.append(("exit", self.install_exit_code))
        process.exit.set_result(self.install_exit_code)

    async def _run_server(self, process: FakeProcess) -> None:
        for chunk in self.server_chunks:
            process.push(chunk)
            await asyncio.sleep(0)
        if self.ready is not None:
            await asyncio.sleep(0.01)
            self.events.emit(SERVER_READY, *self.ready)

    def on(self, event, listener):
        return self.events.on(event, listener)

    async def kill(self, target: str) -> None:
        self.kill_calls.append(target)
        if self.kill_error is not None:
            raise self.kill_error

    async def close(self) -> None:
        self.closed = True
        for task in self._tasks:
            task.cancel()


@pytest.fixture
def capability() -> FakeCapability:
    return FakeCapability()


async def wait_for(predicate, timeout: float = 1.0) -> None:
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
