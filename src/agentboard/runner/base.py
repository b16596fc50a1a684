from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentboard.runner.events import ExecutionReport
    from agentboard.workspace import ExecutionInstance

ProgressCallback = Callable[[str], None]


class AgentExecutionError(RuntimeError):
    """Raised when an agent run ends without a report."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.retriable = retriable


class AgentProcessError(AgentExecutionError):
    """Raised when the agent process cannot be spawned or driven."""


class AgentCancelledError(AgentExecutionError):
    """Raised when a run was terminated through the cancellation registry."""


@dataclass(slots=True)
class AgentTask:
    execution_id: str
    title: str
    requirements: str


@dataclass(slots=True)
class ChangeRequest:
    execution_id: str
    title: str
    change_request: str
    prior_requirements: str
    prior_summary: str = ""


class AgentRunner(ABC):
    @abstractmethod
    async def run(
        self,
        instance: ExecutionInstance,
        work_dir: Path,
        task: AgentTask,
        on_progress: ProgressCallback,
    ) -> ExecutionReport:
        """Implement ``task`` inside ``work_dir`` and return the final report."""

    @abstractmethod
    async def run_follow_up(
        self,
        instance: ExecutionInstance,
        work_dir: Path,
        request: ChangeRequest,
        on_progress: ProgressCallback,
    ) -> ExecutionReport:
        """Apply a change request on top of a previous run."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Return whether the agent CLI can be launched at all."""
