"""
Preview Module

Provisions a throwaway development sandbox for a set of project files:
mounts a fixed package.json and vite config, runs `npm install`, starts
the dev server and reports its URL, streaming progress the whole way.

Architecture:
- orchestrator: the mount -> install -> run -> await-ready sequence
- timeout_guard / log_aggregator: per-phase deadline and output buffering
- capability: the sandbox boundary; local_sandbox runs it as subprocesses
- lifecycle: when runs start, restart and get torn down
- routes: REST + WebSocket status surface
"""

from .capability import CapabilityProvider, ProcessHandle, SandboxCapability
from .lifecycle import PreviewSession, SessionRegistry, session_registry
from .local_sandbox import LocalSandboxCapability
from .orchestrator import ProvisioningOrchestrator
from .routes import preview_router, preview_ws_router

__all__ = [
    "CapabilityProvider",
    "ProcessHandle",
    "SandboxCapability",
    "PreviewSession",
    "SessionRegistry",
    "session_registry",
    "LocalSandboxCapability",
    "ProvisioningOrchestrator",
    "preview_router",
    "preview_ws_router",
]
