"""Exception hierarchy for the workflow engine."""
from __future__ import annotations


class WorkflowEngineError(Exception):
    """Base exception for engine-level failures."""


class WebhookAuthError(WorkflowEngineError):
    """No workflow matches the (account, webhook token) pair."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Invalid webhook token for account {account_id}")


class NodeExecutionError(WorkflowEngineError):
    """A node could not be executed; the chain stops and the run is marked failed."""

    def __init__(self, message: str, node_id: str = ""):
        self.node_id = node_id
        super().__init__(message)


class NodeConfigError(NodeExecutionError):
    pass


class NoChannelError(NodeExecutionError):
    def __init__(self, account_id: str, node_id: str = ""):
        self.account_id = account_id
        super().__init__("No active authorized channel found for account", node_id)


class CycleGuardError(NodeExecutionError):
    def __init__(self, node_id: str, limit: int):
        self.limit = limit
        super().__init__(
            f"Node chain exceeded {limit} steps (graph has {limit} nodes); possible cycle",
            node_id,
        )
