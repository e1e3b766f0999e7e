"""
Local Sandbox Capability

Process-based sandbox for local development. Each sandbox is a directory
under SANDBOX_BASE_DIR; commands run as local subprocesses in it, and the
dev server's "Local: <url>" banner plus an HTTP probe stand in for the
hosted sandbox's server-ready event.
"""

from __future__ import annotations
import os
import re
import codecs
import signal
import shutil
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from config import PACKAGE_MANAGER, READY_PROBE_INTERVAL_S, SANDBOX_BASE_DIR

from .capability import SERVER_READY, EventEmitter, Listener, ProcessHandle, SandboxCapability
from .errors import BootError, MountError, SpawnError
from .models import VirtualFileTree

logger = logging.getLogger(__name__)


# ============================================
# Constants
# ============================================

READ_CHUNK_SIZE = 4096
STOP_GRACE_S = 5.0
READY_PROBE_ATTEMPTS = 60
BANNER_SCAN_WINDOW = 2048

# npm and friends run under node, so they match the "node" target the
# same way `pkill -f node` would match them
NODE_COMMANDS = {"node", "npm", "npx", "pnpm", "yarn", "vite"}

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
READY_BANNER = re.compile(r"Local:\s+(https?://[^\s]+)")


def parse_ready_url(text: str) -> Optional[Tuple[int, str]]:
    """Find the dev server's local URL in its output"""
    match = READY_BANNER.search(ANSI_ESCAPE.sub("", text))
    if not match:
        return None

    url = match.group(1)
    parsed = urlparse(url)
    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    return port, url


async def wait_for_server(url: str, attempts: int = READY_PROBE_ATTEMPTS,
                          interval: float = READY_PROBE_INTERVAL_S) -> bool:
    """Wait for a server to answer with a non-5xx status"""
    async with httpx.AsyncClient() as client:
        for _ in range(attempts):
            try:
                response = await client.get(url, timeout=2.0)
                if response.status_code < 500:
                    return True
            except httpx.HTTPError:
                pass
            await asyncio.sleep(interval)
    return False


# ============================================
# Sandbox Process Wrapper
# ============================================

@dataclass
class SandboxProcess:
    """Wrapper for a running sandbox process"""
    command: str
    args: List[str]
    process: asyncio.subprocess.Process
    output: asyncio.Queue = field(default_factory=asyncio.Queue)
    ready_url: Optional[str] = None
    _scan_tail: str = ""
    _pump_task: Optional[asyncio.Task] = None
    _probe_tasks: List[asyncio.Task] = field(default_factory=list)

    @property
    def command_line(self) -> str:
        return " ".join([self.command] + self.args)

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None

    def matches(self, target: str) -> bool:
        if target in self.command_line:
            return True
        return target == "node" and os.path.basename(self.command) in NODE_COMMANDS

    async def iter_output(self):
        """Drain the output queue until the end-of-stream marker"""
        while True:
            chunk = await self.output.get()
            if chunk is None:
                break
            yield chunk

    def scan_for_banner(self, chunk: str) -> Optional[Tuple[int, str]]:
        """Look for the ready banner, also when it is split across chunks"""
        if self.ready_url:
            return None
        self._scan_tail = (self._scan_tail + chunk)[-BANNER_SCAN_WINDOW:]
        found = parse_ready_url(self._scan_tail)
        if found:
            self.ready_url = found[1]
        return found

    async def stop(self):
        """Stop the process and its children"""
        if self.is_running:
            try:
                self._signal(signal.SIGTERM)
                await asyncio.wait_for(self.process.wait(), timeout=STOP_GRACE_S)
            except asyncio.TimeoutError:
                self._signal(signal.SIGKILL)
            except ProcessLookupError:
                pass

        for task in self._probe_tasks:
            if not task.done():
                task.cancel()
        self._probe_tasks = []

        # The pump finishes on its own once stdout closes
        if self._pump_task and not self._pump_task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._pump_task), timeout=STOP_GRACE_S)
            except asyncio.TimeoutError:
                self._pump_task.cancel()

    def _signal(self, sig: int):
        if hasattr(os, "killpg"):
            try:
                os.killpg(self.process.pid, sig)
                return
            except ProcessLookupError:
                return
            except PermissionError:
                pass
        self.process.send_signal(sig)


# ============================================
# Local Sandbox Capability
# ============================================

class LocalSandboxCapability(SandboxCapability):
    """Runs the sandbox as local subprocesses inside a work directory"""

    def __init__(
        self,
        work_dir: Path,
        sandbox_id: Optional[str] = None,
        probe_ready: bool = True,
        probe_interval: float = READY_PROBE_INTERVAL_S,
        probe_attempts: int = READY_PROBE_ATTEMPTS,
    ):
        self.sandbox_id = sandbox_id or work_dir.name
        self.work_dir = work_dir
        self.probe_ready = probe_ready
        self.probe_interval = probe_interval
        self.probe_attempts = probe_attempts
        self.processes: List[SandboxProcess] = []
        self._events = EventEmitter()

    @classmethod
    async def boot(
        cls,
        sandbox_id: Optional[str] = None,
        base_dir: Optional[str] = None,
        package_manager: str = PACKAGE_MANAGER,
        **kwargs,
    ) -> "LocalSandboxCapability":
        """Create an empty sandbox directory, raises BootError"""
        sandbox_id = sandbox_id or f"sandbox-{uuid.uuid4().hex[:12]}"

        if package_manager and shutil.which(package_manager) is None:
            raise BootError(f"'{package_manager}' was not found on PATH")

        work_dir = Path(base_dir or SANDBOX_BASE_DIR) / sandbox_id
        try:
            if work_dir.exists():
                shutil.rmtree(work_dir)
            work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BootError(f"Failed to create sandbox directory: {e}") from e

        logger.info(f"[LocalSandbox] Booted {sandbox_id} at {work_dir}")
        return cls(work_dir, sandbox_id=sandbox_id, **kwargs)

    # ============================================
    # Files
    # ============================================

    def _resolve(self, path: str) -> Path:
        root = self.work_dir.resolve()
        target = (root / path.lstrip("/")).resolve()
        if target == root or root not in target.parents:
            raise MountError(f"Path escapes sandbox: {path}")
        return target

    async def mount(self, tree: VirtualFileTree) -> None:
        for path, content in tree.items():
            file_path = self._resolve(path)
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                file_path.write_text(content, encoding="utf-8")
            except OSError as e:
                raise MountError(f"Failed to write {path}: {e}") from e
            logger.debug(f"[LocalSandbox] Mounted {path}")

    # ============================================
    # Processes
    # ============================================

    async def spawn(self, command: str, args: Optional[List[str]] = None) -> ProcessHandle:
        args = list(args or [])
        logger.info(f"[LocalSandbox] Spawning: {' '.join([command] + args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=str(self.work_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env={**os.environ, "NODE_ENV": "development"},
                start_new_session=hasattr(os, "killpg"),
            )
        except OSError as e:
            raise SpawnError(f"Failed to spawn {command}: {e}") from e

        sandbox_process = SandboxProcess(command=command, args=args, process=process)
        exit_future: asyncio.Future = asyncio.get_running_loop().create_future()

        sandbox_process._pump_task = asyncio.ensure_future(self._pump(sandbox_process, exit_future))
        self.processes.append(sandbox_process)

        return ProcessHandle(
            command=sandbox_process.command_line,
            output=sandbox_process.iter_output(),
            exit=exit_future,
        )

    async def _pump(self, sandbox_process: SandboxProcess, exit_future: asyncio.Future):
        """Copy stdout into the output queue, then resolve the exit future"""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stream = sandbox_process.process.stdout

        try:
            while True:
                data = await stream.read(READ_CHUNK_SIZE)
                if not data:
                    break
                chunk = decoder.decode(data)
                if not chunk:
                    continue
                sandbox_process.output.put_nowait(chunk)

                found = sandbox_process.scan_for_banner(chunk)
                if found:
                    sandbox_process._probe_tasks.append(
                        asyncio.ensure_future(self._announce_ready(sandbox_process, *found))
                    )

            tail = decoder.decode(b"", final=True)
            if tail:
                sandbox_process.output.put_nowait(tail)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[LocalSandbox] Error reading output of {sandbox_process.command_line}: {e}")
        finally:
            sandbox_process.output.put_nowait(None)

        code = await sandbox_process.process.wait()
        logger.info(f"[LocalSandbox] {sandbox_process.command_line} exited with code {code}")
        if not exit_future.done():
            exit_future.set_result(code)

    async def _announce_ready(self, sandbox_process: SandboxProcess, port: int, url: str):
        if self.probe_ready:
            logger.info(f"[LocalSandbox] Probing {url}...")
            reachable = await wait_for_server(url, self.probe_attempts, self.probe_interval)
            if not reachable:
                logger.warning(f"[LocalSandbox] {url} never answered")
                return

        if sandbox_process.is_running:
            logger.info(f"[LocalSandbox] Server ready on port {port}: {url}")
            self._events.emit(SERVER_READY, port, url)

    # ============================================
    # Events and Teardown
    # ============================================

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        return self._events.on(event, listener)

    async def kill(self, target: str) -> None:
        matching = [p for p in self.processes if p.is_running and p.matches(target)]
        if not matching:
            logger.debug(f"[LocalSandbox] No running processes match {target!r}")
            return

        for sandbox_process in matching:
            logger.info(f"[LocalSandbox] Stopping {sandbox_process.command_line}")
            await sandbox_process.stop()

        self.processes = [p for p in self.processes if p.is_running]

    async def close(self) -> None:
        logger.info(f"[LocalSandbox] Cleaning up sandbox: {self.sandbox_id}")
        for sandbox_process in list(self.processes):
            await sandbox_process.stop()
        self.processes.clear()

        try:
            if self.work_dir.exists():
                shutil.rmtree(self.work_dir)
        except OSError as e:
            logger.warning(f"Failed to remove sandbox directory: {e}")
