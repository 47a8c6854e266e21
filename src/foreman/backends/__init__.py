from foreman.backends.base import (
    AgentBackend,
    AgentExecutionError,
    AgentProcessError,
    PermanentAgentFailure,
    ShutdownRequested,
    TransientAgentFailure,
)
from foreman.backends.claude import ClaudeCodeBackend
from foreman.backends.classifier import classify_attempt
from foreman.backends.codex import CodexBackend
from foreman.backends.command import CommandBackend
from foreman.backends.resilient import AgentRun, ResilientInvoker, RetryPolicy

__all__ = [
    "AgentBackend",
    "AgentExecutionError",
    "AgentProcessError",
    "AgentRun",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CommandBackend",
    "PermanentAgentFailure",
    "ResilientInvoker",
    "RetryPolicy",
    "ShutdownRequested",
    "TransientAgentFailure",
    "classify_attempt",
]
