"""
Flow graph helpers: parsing a published flow document and resolving
block references against it.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from core.errors import FlowDefinitionError, UnknownBlockError
from models.schemas import Block, DeliveryRecord, Flow, SessionVars
from utils.conditions import evaluate_conditions

ERROR_BLOCK_ID = "onerror"


@dataclass
class TurnContext:
    """Mutable state of one interpreter turn."""
    user_id: str
    flow: Flow
    vars: SessionVars
    channel: str
    sent: Optional[DeliveryRecord] = None


def parse_flow(data: Any) -> Flow:
    """Validate a flow document. Raises FlowDefinitionError when it cannot be executed."""
    if isinstance(data, Flow):
        return data
    if not isinstance(data, dict) or not data.get("start") or not data.get("blocks"):
        raise FlowDefinitionError("Flow document is missing start or blocks")
    try:
        return Flow.model_validate(data)
    except ValidationError as e:
        raise FlowDefinitionError(f"Invalid flow document: {e}") from e


def static_error_content(data: Any, default: str) -> Any:
    """The flow's own onError message when present, else ``default``."""
    if isinstance(data, dict):
        on_error = data.get("onError")
        if isinstance(on_error, dict) and on_error.get("content"):
            return on_error["content"]
    return default


def get_block(flow: Flow, block_id: Optional[str]) -> Block:
    block = flow.blocks.get(block_id) if block_id else None
    if block is None:
        raise UnknownBlockError(str(block_id))
    return block


def resolve_by_id_or_label(flow: Flow, key: Optional[str]) -> Optional[str]:
    """Block id for ``key``, matched by id first, then by exact label."""
    if not key:
        return None
    if key in flow.blocks:
        return key
    for block_id, block in flow.blocks.items():
        if (block.label or "") == key:
            return block_id
    return None


def resolve_error_block(flow: Flow, error_block: str = ERROR_BLOCK_ID) -> Optional[str]:
    """The error block: the block with id ``error_block``, or whose label matches it."""
    if error_block in flow.blocks:
        return error_block
    wanted = error_block.lower()
    for block_id, block in flow.blocks.items():
        if (block.label or "").lower() == wanted:
            return block_id
    return None


def determine_next_block(block: Block, vars: dict[str, Any], flow: Flow, current_id: str,
                         error_block: Optional[str] = None) -> Optional[str]:
    """
    Next block after ``block``: the first action whose conditions all pass,
    else ``defaultNext`` when it names an existing block, else (only while in
    the error block) the block recorded in ``previousBlock``, else None.
    """
    for action in block.actions:
        if evaluate_conditions(action.conditions, vars):
            return action.next
    if block.default_next and block.default_next in flow.blocks:
        return block.default_next
    if error_block and current_id == error_block:
        return vars.get("previousBlock")
    return None
