"""Agent execution — PTY bridge, remote server client, and executors."""

from ralph.agent.adapters import ADAPTER_NAMES, PTY_ADAPTERS, SERVER_ADAPTER
from ralph.agent.base import AgentExecutor, AgentRequest, AgentSession
from ralph.agent.executors import PtyExecutor, RemoteExecutor, create_executor
from ralph.agent.pty_bridge import AgentSpawnError, ExitInfo, ProcessBridge, ProcessHandle
from ralph.agent.remote import (
    ConnectionFailedError,
    InvalidProtocolError,
    InvalidURLError,
    ServerURLError,
    check_server_health,
    connect_to_external_server,
    validate_and_normalize_server_url,
)

__all__ = [
    "ADAPTER_NAMES",
    "PTY_ADAPTERS",
    "SERVER_ADAPTER",
    "AgentExecutor",
    "AgentRequest",
    "AgentSession",
    "AgentSpawnError",
    "ConnectionFailedError",
    "ExitInfo",
    "InvalidProtocolError",
    "InvalidURLError",
    "ProcessBridge",
    "ProcessHandle",
    "PtyExecutor",
    "RemoteExecutor",
    "ServerURLError",
    "check_server_health",
    "connect_to_external_server",
    "create_executor",
    "validate_and_normalize_server_url",
]
