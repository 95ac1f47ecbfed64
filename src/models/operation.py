"""
Operation model for the camera scheduler.

An Operation is one request for the camera: bring the preview up, take a
single still, or run a time-lapse session. The orchestrator owns its state;
callers observe it through the callbacks.
"""
import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from src.config.constants import OperationPriorities
from src.utils.callbacks import invoke_callback
from src.utils.logging_config import new_correlation_id

Callback = Callable[..., Union[None, Awaitable[None]]]

_sequence = itertools.count()


class OperationKind(str, Enum):
    """Closed set of camera workloads."""
    STREAM = "stream"
    CAPTURE = "capture"
    TIMELAPSE = "timelapse"


class OperationState(str, Enum):
    """Operation lifecycle states."""
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


DEFAULT_PRIORITIES: Dict[OperationKind, int] = {
    OperationKind.CAPTURE: OperationPriorities.USER_CAPTURE,
    OperationKind.TIMELAPSE: OperationPriorities.TIMELAPSE,
    OperationKind.STREAM: OperationPriorities.STREAM,
}


@dataclass
class Operation:
    """A scheduling unit.

    ``config`` is the camera configuration snapshot taken when the request was
    made. ``progress`` holds what is needed to resume after pre-emption:
    ``was_active``/``stream_settings`` for a stream and
    ``image_count``/``started_at`` for a time-lapse.
    """

    kind: OperationKind
    config: Any
    priority: Optional[int] = None
    on_notification: Optional[Callback] = None
    on_image_captured: Optional[Callback] = None
    on_error: Optional[Callback] = None
    state: OperationState = OperationState.QUEUED
    progress: Dict[str, Any] = field(default_factory=dict)
    correlation_id: str = field(default_factory=new_correlation_id)
    created_at: float = field(default_factory=time.monotonic)
    created_wall: datetime = field(default_factory=datetime.now)
    sequence: int = field(default_factory=lambda: next(_sequence))
    started: bool = False
    error: Optional[BaseException] = None

    def __post_init__(self):
        self.kind = OperationKind(self.kind)
        if self.priority is None:
            self.priority = DEFAULT_PRIORITIES[self.kind]

    @property
    def sort_key(self):
        """Heap key: priority descending, then creation order."""
        return (-self.priority, self.created_at, self.sequence)

    async def notify(self, event: str, message: Optional[str] = None) -> None:
        await invoke_callback(self.on_notification, event, message,
                              correlation_id=self.correlation_id)

    async def image_captured(self, data: Dict[str, Any]) -> None:
        await invoke_callback(self.on_image_captured, data,
                              correlation_id=self.correlation_id)

    async def report_error(self, error: BaseException) -> None:
        self.error = error
        await invoke_callback(self.on_error, error, correlation_id=self.correlation_id)

    def summary(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "priority": self.priority,
            "state": self.state.value,
            "correlation_id": self.correlation_id,
            "created_at": self.created_wall.isoformat(),
        }
