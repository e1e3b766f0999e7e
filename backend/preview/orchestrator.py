"""
Provisioning Orchestrator

Drives one provisioning run against a booted sandbox:

1. Setup: mount the fixed package.json and vite config
2. Install: `npm install`, raced against the install timeout
3. Start server: `npm run dev`, output streamed for as long as it runs
4. Await ready: wait for the server-ready event, raced against the
   readiness timeout

Every failure is classified and turned into a terminal Failed state here;
nothing escapes run() except cancellation.
"""

from __future__ import annotations
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from config import INSTALL_DRAIN_GRACE_MS, INSTALL_TIMEOUT_MS, READY_TIMEOUT_MS

from .capability import SERVER_READY, ProcessHandle, SandboxCapability
from .errors import (
    CapabilityError,
    InstallFailed,
    InstallTimeout,
    MountError,
    ProvisioningError,
    ReadinessTimeout,
    SpawnError,
    UnknownFailure,
)
from .log_aggregator import LogAggregator
from .models import (
    PhaseCapabilityError,
    PhaseProcessFailed,
    PhaseResult,
    PhaseSuccess,
    PhaseTimedOut,
    ProvisioningState,
    ProvisioningStatus,
    StatusLog,
    StatusSink,
    StatusUpdate,
    VirtualFileTree,
)
from .templates import DEV_SERVER_COMMAND, INSTALL_COMMAND, PACKAGE_JSON, VITE_CONFIG
from .timeout_guard import RaceOutcome, TimeoutGuard

logger = logging.getLogger(__name__)


class ProvisioningOrchestrator:
    """
    One provisioning run.

    An orchestrator is single-use: the lifecycle controller creates a fresh
    one (with a fresh sink and an empty log) for every run.
    """

    def __init__(
        self,
        sink: Optional[StatusSink] = None,
        install_timeout_ms: int = INSTALL_TIMEOUT_MS,
        ready_timeout_ms: int = READY_TIMEOUT_MS,
        install_drain_grace_ms: int = INSTALL_DRAIN_GRACE_MS,
        manifest: Optional[VirtualFileTree] = None,
        dev_server_config: Optional[VirtualFileTree] = None,
    ):
        self.sink = sink or StatusSink()
        self.install_timeout_ms = install_timeout_ms
        self.ready_timeout_ms = ready_timeout_ms
        self.install_drain_grace_ms = install_drain_grace_ms
        self.manifest = manifest if manifest is not None else PACKAGE_JSON
        self.dev_server_config = dev_server_config if dev_server_config is not None else VITE_CONFIG

        self.state = ProvisioningState()
        self.log = StatusLog()
        self.phase_results: Dict[str, PhaseResult] = {}
        self.install_log: Optional[LogAggregator] = None
        self.server_log: Optional[LogAggregator] = None
        self.server_process: Optional[ProcessHandle] = None
        self._started = False

    # ============================================
    # Run
    # ============================================

    async def run(self, capability: SandboxCapability, file_set_non_empty: bool) -> None:
        """Provision the sandbox; progress and the outcome go to the sink"""
        if self._started:
            raise RuntimeError("ProvisioningOrchestrator.run() may only be called once")

        if not file_set_non_empty:
            logger.info("[Orchestrator] No files to preview, staying idle")
            return

        self._started = True
        logger.info(f"[Orchestrator] ========== RUN {self.state.run_id} ==========")

        try:
            await self._setup(capability)
            await self._install(capability)
            await self._start_server(capability)
            await self._await_ready(capability)
        except ProvisioningError as e:
            self._fail(e)
        except Exception as e:
            logger.error(f"[Orchestrator] Preview error: {e}", exc_info=True)
            self._fail(UnknownFailure(str(e) or "An unknown error occurred"))

    async def close(self):
        """Stop streaming output; the processes themselves are left alone"""
        for aggregator in (self.install_log, self.server_log):
            if aggregator is not None:
                await aggregator.stop()

    # ============================================
    # Phases
    # ============================================

    async def _setup(self, capability: SandboxCapability):
        self._transition(ProvisioningStatus.SETTING_UP, "Setting up environment...")

        self._status_line("Creating package.json...")
        await self._mount(capability, self.manifest)

        self._status_line("Creating vite config...")
        await self._mount(capability, self.dev_server_config)

        self.phase_results["setup"] = PhaseSuccess()

    async def _install(self, capability: SandboxCapability):
        self._transition(
            ProvisioningStatus.INSTALLING,
            "Installing dependencies...\nThis might take a few minutes...",
        )

        command, args = INSTALL_COMMAND
        process = await self._spawn(capability, command, args)

        self.install_log = LogAggregator("install", self._log_forwarder())
        self.install_log.attach(process.output)

        guard = TimeoutGuard(self.install_timeout_ms, "npm install")
        try:
            outcome = await guard.race(process.exit)
        except Exception:
            await self.install_log.stop()
            raise

        if outcome.timed_out:
            # Abandon the exit code wait; the process is not waited on
            await self.install_log.stop()
        else:
            # Chunks arriving after the grace period are dropped so they
            # cannot interleave with dev server output
            await self._drain(self.install_log)

        result = self._install_result(outcome)
        self.phase_results["install"] = result

        if isinstance(result, PhaseTimedOut):
            raise InstallTimeout(result.bound_ms)
        if isinstance(result, PhaseProcessFailed):
            raise InstallFailed(result.exit_code, result.output)

        logger.info("[Orchestrator] npm install completed")

    def _install_result(self, outcome: RaceOutcome) -> PhaseResult:
        if outcome.timed_out:
            return PhaseTimedOut(self.install_timeout_ms)
        if outcome.value != 0:
            return PhaseProcessFailed(outcome.value, self.install_log.buffer)
        return PhaseSuccess()

    async def _start_server(self, capability: SandboxCapability):
        self._transition(ProvisioningStatus.STARTING_SERVER, "Starting development server...")

        command, args = DEV_SERVER_COMMAND
        self.server_process = await self._spawn(capability, command, args)

        # A server, not a batch job: its exit code is never awaited
        self.server_log = LogAggregator("dev-server", self._log_forwarder())
        self.server_log.attach(self.server_process.output)

    async def _await_ready(self, capability: SandboxCapability):
        self._transition(ProvisioningStatus.AWAITING_READY, "Waiting for development server...")

        ready = asyncio.get_running_loop().create_future()

        def on_ready(port: int, url: str):
            if not ready.done():
                ready.set_result((port, url))

        unsubscribe = capability.on(SERVER_READY, on_ready)
        guard = TimeoutGuard(self.ready_timeout_ms, "dev server readiness")
        try:
            outcome = await guard.race(ready)
        finally:
            unsubscribe()

        if outcome.timed_out:
            self.phase_results["ready"] = PhaseTimedOut(self.ready_timeout_ms)
            raise ReadinessTimeout(self.ready_timeout_ms)

        port, url = outcome.value
        self.phase_results["ready"] = PhaseSuccess()
        logger.info(f"[Orchestrator] Server ready on port {port}: {url}")
        self._transition(ProvisioningStatus.READY, "Server ready!", url=url, port=port)

    # ============================================
    # Capability Calls
    # ============================================

    async def _mount(self, capability: SandboxCapability, tree: VirtualFileTree):
        try:
            await capability.mount(tree)
        except CapabilityError as e:
            self.phase_results["setup"] = PhaseCapabilityError(e.message)
            raise
        except Exception as e:
            self.phase_results["setup"] = PhaseCapabilityError(str(e))
            raise MountError(str(e) or f"Failed to mount {', '.join(tree)}") from e

    async def _spawn(self, capability: SandboxCapability, command: str, args: List[str]) -> ProcessHandle:
        logger.info(f"[Orchestrator] Spawning: {' '.join([command] + list(args))}")
        try:
            return await capability.spawn(command, list(args))
        except CapabilityError:
            raise
        except Exception as e:
            raise SpawnError(str(e) or f"Failed to spawn {command}") from e

    async def _drain(self, aggregator: LogAggregator):
        """Give buffered output a moment to arrive, then stop pumping"""
        task = aggregator.task
        if task is None:
            return
        await asyncio.wait({task}, timeout=self.install_drain_grace_ms / 1000)
        await aggregator.stop()

    # ============================================
    # State and Status Log
    # ============================================

    def _log_forwarder(self) -> Callable[[str], None]:
        """Chunk callback appending each new chunk to the status log"""
        seen = 0

        def on_chunk(cumulative: str):
            nonlocal seen
            delta = cumulative[seen:]
            seen = len(cumulative)
            self._append("log", self.log.append(delta))

        return on_chunk

    def _status_line(self, message: str):
        self._append("log", self.log.append_line(message))

    def _append(self, update_type: str, delta: str):
        self.state.log = self.log.text
        self.state.updated_at = datetime.now()
        self.sink.publish(StatusUpdate(type=update_type, state=self.state.model_copy(), delta=delta))

    def _transition(self, status: ProvisioningStatus, message: Optional[str] = None, **fields):
        logger.info(f"[Orchestrator] {self.state.status.value} -> {status.value}")
        self.state.status = status
        for name, value in fields.items():
            setattr(self.state, name, value)

        delta = self.log.append_line(message) if message else ""
        self._append("state", delta)

    def _fail(self, error: ProvisioningError):
        logger.error(f"[Orchestrator] Run failed ({error.kind.value}): {error.message}")

        fields = {"error": error.message, "failure_kind": error.kind}
        if isinstance(error, InstallFailed):
            fields["exit_code"] = error.exit_code
            fields["output"] = error.output

        self._transition(ProvisioningStatus.FAILED, **fields)
