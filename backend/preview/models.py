"""
Preview Data Models

State, phase results and status-channel types for sandbox provisioning.
"""

from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# Path -> text content
VirtualFileTree = Dict[str, str]


# ============================================
# Enums
# ============================================

class ProvisioningStatus(str, Enum):
    """Discrete provisioning state exposed to the presentation layer"""
    IDLE = "idle"
    SETTING_UP = "setting_up"
    INSTALLING = "installing"
    STARTING_SERVER = "starting_server"
    AWAITING_READY = "awaiting_ready"
    READY = "ready"
    FAILED = "failed"


class FailureKind(str, Enum):
    """Classification of a terminal failure"""
    ENVIRONMENT_UNSUPPORTED = "environment_unsupported"
    CAPABILITY_ERROR = "capability_error"
    INSTALL_TIMEOUT = "install_timeout"
    INSTALL_FAILED = "install_failed"
    READINESS_TIMEOUT = "readiness_timeout"
    UNKNOWN_FAILURE = "unknown_failure"


# ============================================
# Provisioning State
# ============================================

class ProvisioningState(BaseModel):
    """State of one provisioning run"""
    run_id: str = Field(default_factory=lambda: f"run-{uuid.uuid4().hex[:8]}")
    status: ProvisioningStatus = ProvisioningStatus.IDLE
    log: str = ""
    url: Optional[str] = None
    port: Optional[int] = None
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    exit_code: Optional[int] = None
    output: Optional[str] = None  # aggregated output of the failed process
    updated_at: datetime = Field(default_factory=datetime.now)


# ============================================
# Phase Results
# ============================================

@dataclass(frozen=True)
class PhaseSuccess:
    exit_code: int = 0


@dataclass(frozen=True)
class PhaseTimedOut:
    bound_ms: int


@dataclass(frozen=True)
class PhaseProcessFailed:
    exit_code: int
    output: str


@dataclass(frozen=True)
class PhaseCapabilityError:
    message: str


PhaseResult = Union[PhaseSuccess, PhaseTimedOut, PhaseProcessFailed, PhaseCapabilityError]


# ============================================
# Status Channel
# ============================================

class StatusUpdate(BaseModel):
    """One ordered update published to a status sink"""
    type: Literal["state", "log"]
    sequence: int = 0
    state: ProvisioningState
    delta: str = ""  # text appended to the log by this update


StatusCallback = Callable[[StatusUpdate], Any]


class StatusSink:
    """
    Append-only, order-preserving channel from one run to its consumers.

    Subscribers are called synchronously in publish order. A subscriber that
    raises is logged and skipped so one bad consumer can't stall the run.
    """

    def __init__(self):
        self.updates: List[StatusUpdate] = []
        self._subscribers: List[StatusCallback] = []
        self._sequence = 0

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register a subscriber, returns a callable that removes it"""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: StatusCallback):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, update: StatusUpdate) -> StatusUpdate:
        self._sequence += 1
        update.sequence = self._sequence
        self.updates.append(update)

        for callback in list(self._subscribers):
            try:
                callback(update)
            except Exception as e:
                logger.error(f"Status subscriber error: {e}")

        return update


class StatusLog:
    """Run-wide status log; grows for the whole run, a new run starts a new log"""

    def __init__(self):
        self._text = ""

    def append(self, text: str) -> str:
        self._text += text
        return text

    def append_line(self, line: str) -> str:
        """Append a status message on its own line"""
        current = self.text
        prefix = "\n" if current and not current.endswith("\n") else ""
        return self.append(f"{prefix}{line}\n")

    @property
    def text(self) -> str:
        return self._text
