"""
Sandbox Capability

The boundary between the provisioning orchestrator and whatever actually runs
the code. A capability accepts virtual-file mounts, spawns commands with
streamed output, and announces when a spawned server is reachable.
"""

from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from .errors import BootError
from .models import VirtualFileTree

logger = logging.getLogger(__name__)

SERVER_READY = "server-ready"

Listener = Callable[..., None]


# ============================================
# Process Handle
# ============================================

class ProcessHandle:
    """A running process inside the sandbox

    output: lazy stream of text chunks, single consumer, not restartable.
    exit: future resolved exactly once with the exit code.
    """

    def __init__(self, command: str, output: AsyncIterator[str], exit: "asyncio.Future[int]"):
        self.command = command
        self.output = output
        self.exit = exit

    def __repr__(self) -> str:
        return f"ProcessHandle({self.command!r})"


# ============================================
# Event Channel
# ============================================

class EventEmitter:
    """Minimal synchronous event channel"""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Register a listener, returns a callable that removes it"""
        self._listeners.setdefault(event, []).append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: str, listener: Listener):
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, *args) -> int:
        """Call every listener registered for event, returns how many were called"""
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                listener(*args)
            except Exception as e:
                logger.error(f"Listener error for {event}: {e}")
        return len(listeners)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))


# ============================================
# Capability Interface
# ============================================

class SandboxCapability(ABC):
    """An already-booted sandbox"""

    @abstractmethod
    async def mount(self, tree: VirtualFileTree) -> None:
        """Write a tree of files into the sandbox, raises MountError"""

    @abstractmethod
    async def spawn(self, command: str, args: Optional[List[str]] = None) -> ProcessHandle:
        """Start a command, raises SpawnError"""

    @abstractmethod
    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Subscribe to sandbox events ("server-ready" -> listener(port, url))"""

    @abstractmethod
    async def kill(self, target: str) -> None:
        """Best-effort termination of processes matching target"""

    async def close(self) -> None:
        """Release everything the sandbox holds"""


# ============================================
# One-time Acquisition
# ============================================

CapabilityFactory = Callable[[], Awaitable[SandboxCapability]]


class CapabilityProvider:
    """
    Boots a sandbox once and hands out the same handle afterwards.

    Concurrent and repeated boot() calls share a single attempt; a failed
    attempt keeps failing with the same BootError until reset().
    """

    def __init__(self, factory: CapabilityFactory):
        self._factory = factory
        self._boot_task: Optional[asyncio.Task] = None

    async def boot(self) -> SandboxCapability:
        if self._boot_task is None:
            self._boot_task = asyncio.ensure_future(self._boot())
        return await asyncio.shield(self._boot_task)

    async def _boot(self) -> SandboxCapability:
        logger.info("Starting sandbox boot...")
        try:
            capability = await self._factory()
        except BootError as e:
            logger.error(f"Sandbox boot error: {e}")
            raise
        except Exception as e:
            logger.error(f"Sandbox boot error: {e}")
            raise BootError(str(e) or "Failed to initialize sandbox") from e
        logger.info("Sandbox booted successfully")
        return capability

    @property
    def capability(self) -> Optional[SandboxCapability]:
        """The booted handle, or None if boot hasn't succeeded (yet)"""
        task = self._boot_task
        if task is None or not task.done() or task.cancelled() or task.exception():
            return None
        return task.result()

    async def reset(self):
        """Forget the current handle, closing it if it booted"""
        capability = self.capability
        task, self._boot_task = self._boot_task, None
        if task is not None and not task.done():
            task.cancel()
        if capability is not None:
            await capability.close()
