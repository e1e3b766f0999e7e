"""
Preview Lifecycle

Decides when provisioning runs start and when they are torn down. One
PreviewSession backs one consuming view: a non-empty file set plus a booted
sandbox starts a run, a file-set change or a restart replaces it, and
disposal stops it and asks the sandbox to kill what it spawned.
"""

from __future__ import annotations
import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Set

from config import REQUIRE_SECURE_CONTEXT

from .capability import CapabilityProvider, SandboxCapability
from .errors import BootError, EnvironmentUnsupported, ProvisioningError
from .local_sandbox import LocalSandboxCapability
from .models import (
    ProvisioningState,
    ProvisioningStatus,
    StatusCallback,
    StatusSink,
    StatusUpdate,
    VirtualFileTree,
)
from .orchestrator import ProvisioningOrchestrator
from .templates import TERMINATION_TARGET

logger = logging.getLogger(__name__)

SECURE_SCHEMES = {"https", "wss"}
LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}

SessionCapabilityFactory = Callable[[str], Awaitable[SandboxCapability]]
OrchestratorFactory = Callable[[StatusSink], ProvisioningOrchestrator]


def is_secure_context(scheme: str, host: Optional[str]) -> bool:
    """https/wss, or plain http on localhost"""
    return (scheme or "").lower() in SECURE_SCHEMES or (host or "").lower() in LOCAL_HOSTS


def _log_termination_result(task: asyncio.Future):
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning(f"[Lifecycle] Termination request failed: {error}")


# ============================================
# Preview Session
# ============================================

class PreviewSession:
    """Lifecycle controller for one consuming view"""

    def __init__(
        self,
        session_id: Optional[str] = None,
        provider: Optional[CapabilityProvider] = None,
        orchestrator_factory: Optional[OrchestratorFactory] = None,
        require_secure_context: bool = REQUIRE_SECURE_CONTEXT,
    ):
        self.session_id = session_id or f"preview-{uuid.uuid4().hex[:12]}"
        self.provider = provider or CapabilityProvider(
            lambda: LocalSandboxCapability.boot(self.session_id)
        )
        self.orchestrator_factory = orchestrator_factory or (lambda sink: ProvisioningOrchestrator(sink=sink))
        self.require_secure_context = require_secure_context

        self.files: VirtualFileTree = {}
        self.orchestrator: Optional[ProvisioningOrchestrator] = None
        self.sink: Optional[StatusSink] = None
        self._run_task: Optional[asyncio.Task] = None
        self._run_capability: Optional[SandboxCapability] = None
        self._environment_error: Optional[EnvironmentUnsupported] = None
        self._standalone_state = ProvisioningState()
        self._subscribers: List[StatusCallback] = []
        self._termination_tasks: Set[asyncio.Future] = set()
        # Bumped by every trigger; a start whose generation is stale gives up
        self._generation = 0
        self._run_lock = asyncio.Lock()

    # ============================================
    # State
    # ============================================

    @property
    def state(self) -> ProvisioningState:
        if self.orchestrator is not None:
            return self.orchestrator.state
        return self._standalone_state

    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Receive status updates from this and every later run"""
        self._subscribers.append(callback)
        if self.sink is not None:
            self.sink.subscribe(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
            if self.sink is not None:
                self.sink.unsubscribe(callback)

        return unsubscribe

    def _new_sink(self) -> StatusSink:
        sink = StatusSink()
        for callback in self._subscribers:
            sink.subscribe(callback)
        self.sink = sink
        return sink

    # ============================================
    # Triggers
    # ============================================

    async def check_environment(self, scheme: str, host: Optional[str]) -> bool:
        """Reject insecure origins; an active run is torn down first"""
        if not self.require_secure_context or is_secure_context(scheme, host):
            return True

        logger.warning(f"[Lifecycle] Insecure context {scheme}://{host}, preview unavailable")
        self._environment_error = EnvironmentUnsupported(
            "Sandbox requires HTTPS. Please access this site using HTTPS."
        )
        await self.dispose()
        self._fail_without_run(self._environment_error)
        return False

    async def submit_files(self, files: VirtualFileTree) -> ProvisioningState:
        """Record the file set and (re)start provisioning if it is non-empty"""
        self.files = dict(files)
        logger.info(f"[Lifecycle] {self.session_id}: received {len(self.files)} files")

        if self._environment_error is not None:
            return self.state
        if not self.files:
            return self.state

        await self._start_run()
        return self.state

    async def restart(self) -> ProvisioningState:
        """User-initiated retry: a brand-new run with the current files"""
        if self._environment_error is not None or not self.files:
            return self.state

        logger.info(f"[Lifecycle] {self.session_id}: restart requested")
        await self._start_run()
        return self.state

    async def _start_run(self):
        self._generation += 1
        generation = self._generation

        async with self._run_lock:
            if generation != self._generation:
                return
            await self._stop_run()

            try:
                capability = await self.provider.boot()
            except BootError as e:
                if generation == self._generation:
                    self._fail_without_run(e)
                return

            # A newer trigger arrived while booting
            if generation != self._generation:
                logger.info(f"[Lifecycle] {self.session_id}: start superseded")
                return

            sink = self._new_sink()
            orchestrator = self.orchestrator_factory(sink)
            self.orchestrator = orchestrator
            self._run_capability = capability

            logger.info(f"[Lifecycle] {self.session_id}: starting preview with {len(self.files)} files")
            self._run_task = asyncio.ensure_future(orchestrator.run(capability, bool(self.files)))

    def _fail_without_run(self, error: ProvisioningError):
        self.orchestrator = None
        self._standalone_state = ProvisioningState(
            status=ProvisioningStatus.FAILED,
            error=error.message,
            failure_kind=error.kind,
        )
        self._new_sink().publish(StatusUpdate(type="state", state=self._standalone_state.model_copy()))

    # ============================================
    # Teardown
    # ============================================

    async def wait(self):
        """Wait for the current run to reach Ready or Failed"""
        if self._run_task is not None:
            await asyncio.shield(self._run_task)

    async def dispose(self):
        """Stop the current run and ask the sandbox to kill its processes

        The kill request is fire-and-forget: it is never awaited, and its
        failure is only logged. Calling dispose twice signals once. A start
        still booting when dispose is called is abandoned.
        """
        self._generation += 1
        await self._stop_run()

    async def _stop_run(self):
        task, self._run_task = self._run_task, None
        capability, self._run_capability = self._run_capability, None

        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if self.orchestrator is not None:
            await self.orchestrator.close()

        if capability is not None:
            logger.info(f"[Lifecycle] {self.session_id}: stopping sandbox processes")
            self._signal_termination(capability)

    def _signal_termination(self, capability: SandboxCapability):
        try:
            pending = asyncio.ensure_future(capability.kill(TERMINATION_TARGET))
        except Exception as e:
            logger.warning(f"[Lifecycle] Termination request failed: {e}")
            return

        self._termination_tasks.add(pending)
        pending.add_done_callback(self._termination_tasks.discard)
        pending.add_done_callback(_log_termination_result)

    async def close(self):
        """Dispose and release the sandbox itself"""
        await self.dispose()
        await self.provider.reset()


# ============================================
# Session Registry
# ============================================

class SessionRegistry:
    """All live preview sessions, keyed by session id"""

    def __init__(self, capability_factory: Optional[SessionCapabilityFactory] = None,
                 require_secure_context: bool = REQUIRE_SECURE_CONTEXT):
        self.capability_factory = capability_factory or LocalSandboxCapability.boot
        self.require_secure_context = require_secure_context
        self.sessions: Dict[str, PreviewSession] = {}

    def create(self, session_id: Optional[str] = None) -> PreviewSession:
        """Get or create a session"""
        if session_id and session_id in self.sessions:
            return self.sessions[session_id]

        session_id = session_id or f"preview-{uuid.uuid4().hex[:12]}"
        factory = self.capability_factory
        session = PreviewSession(
            session_id=session_id,
            provider=CapabilityProvider(lambda: factory(session_id)),
            require_secure_context=self.require_secure_context,
        )
        self.sessions[session_id] = session
        logger.info(f"Created preview session: {session_id}")
        return session

    def get(self, session_id: str) -> Optional[PreviewSession]:
        return self.sessions.get(session_id)

    async def dispose(self, session_id: str) -> bool:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def dispose_all(self):
        for session_id in list(self.sessions):
            await self.dispose(session_id)


session_registry = SessionRegistry()


def get_session_registry() -> SessionRegistry:
    return session_registry
