from agentboard.runner.base import (
    AgentCancelledError,
    AgentExecutionError,
    AgentProcessError,
    AgentRunner,
    AgentTask,
    ChangeRequest,
)
from agentboard.runner.claude import ClaudeCodeRunner, probe_agent_cli
from agentboard.runner.events import ExecutionReport, StreamEventParser, TokenUsage
from agentboard.runner.registry import CancellationRegistry

__all__ = [
    "AgentCancelledError",
    "AgentExecutionError",
    "AgentProcessError",
    "AgentRunner",
    "AgentTask",
    "CancellationRegistry",
    "ChangeRequest",
    "ClaudeCodeRunner",
    "ExecutionReport",
    "StreamEventParser",
    "TokenUsage",
    "probe_agent_cli",
]
