"""Orchestration error taxonomy (delivery errors live in channels.base)."""
from __future__ import annotations


class FlowError(Exception):
    """Base for failures while interpreting a flow."""


class FlowDefinitionError(FlowError):
    """The flow document is unusable (missing start/blocks or invalid blocks)."""


class UnknownBlockError(FlowError):
    """A block reference points at a block that does not exist."""

    def __init__(self, block_id: str):
        super().__init__(f"Unknown block: {block_id}")
        self.block_id = block_id


class ConditionEvaluationError(FlowError):
    """A condition could not be evaluated."""


class ScriptExecutionError(FlowError):
    """Tenant code failed, timed out, or was rejected by the sandbox."""


class TicketDistributionError(FlowError):
    """No eligible agent, or the distribution transaction failed."""


class TicketConflictError(TicketDistributionError):
    """A concurrent distribution took the same ticket number or open-ticket slot; safe to retry."""
