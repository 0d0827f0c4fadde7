"""
Reply matching for interactive (button / list) blocks.

Clients echo either the option id or its title, sometimes with different
casing, accents or punctuation. Action conditions are therefore retried
against progressively looser views of the reply:

  1. the variable bag as-is
  2. ``lastUserMessage`` replaced by the reply id
  3. ``lastUserMessage`` replaced by the reply title
  4. everything loosely normalized (conditions' string values included)
  5. each candidate from the pool (message, title, id, option aliases)

The first view that satisfies a condition list wins.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from models.schemas import Block, Condition, Flow
from utils.conditions import evaluate_conditions
from utils.text import loose

_NORMALIZED_OPERATORS = {"equals", "not_equals", "contains", "starts_with", "ends_with"}


@dataclass
class InteractiveAliases:
    id_to_title: dict[str, str] = field(default_factory=dict)
    title_to_id: dict[str, str] = field(default_factory=dict)  # keyed by loose(title)

    def candidates_for(self, *values: Optional[str]) -> list[str]:
        """Aliases of ``values``: the title of a known id, the id of a known title."""
        out: list[str] = []
        for value in values:
            if not value:
                continue
            if value in self.id_to_title:
                out.append(self.id_to_title[value])
            option_id = self.title_to_id.get(loose(value))
            if option_id:
                out.append(option_id)
        return out


def build_interactive_aliases(block: Optional[Block]) -> InteractiveAliases:
    """Map option ids to titles (and back) for list and button content."""
    aliases = InteractiveAliases()
    content = block.content if block else None
    if not isinstance(content, dict):
        return aliases
    action = content.get("action") or {}

    options: list[tuple[Any, Any]] = []
    if content.get("type") == "list":
        for section in action.get("sections") or []:
            options.extend((row.get("id"), row.get("title")) for row in section.get("rows") or [])
    elif content.get("type") == "button":
        for button in action.get("buttons") or []:
            reply = button.get("reply") or {}
            options.append((reply.get("id"), reply.get("title")))

    for option_id, title in options:
        if not option_id or not title:
            continue
        aliases.id_to_title[str(option_id)] = str(title)
        aliases.title_to_id[loose(title)] = str(option_id)
    return aliases


def _normalize_conditions(conditions: Iterable[Condition | dict]) -> list[dict[str, Any]]:
    out = []
    for c in conditions or []:
        data = c.model_dump() if isinstance(c, Condition) else dict(c or {})
        if str(data.get("type") or "").lower() in _NORMALIZED_OPERATORS:
            value = data.get("value")
            data["value"] = [loose(v) for v in value] if isinstance(value, list) else loose(value)
        out.append(data)
    return out


def eval_conditions_smart(conditions: list[Condition | dict], vars: dict[str, Any]) -> bool:
    if evaluate_conditions(conditions, vars):
        return True

    for key in ("lastReplyId", "lastReplyTitle"):
        if vars.get(key) and evaluate_conditions(conditions, {**vars, "lastUserMessage": vars[key]}):
            return True

    reply_id = loose(vars.get("lastReplyId"))
    reply_title = loose(vars.get("lastReplyTitle"))
    normalized = _normalize_conditions(conditions)
    if evaluate_conditions(normalized, {
        **vars,
        "lastUserMessage": loose(vars.get("lastUserMessage")),
        "lastReplyId": reply_id,
        "lastReplyTitle": reply_title,
    }):
        return True

    extra = vars.get("_candidates")
    raw_pool = [vars.get("lastUserMessage"), vars.get("lastReplyTitle"), vars.get("lastReplyId")]
    raw_pool += extra if isinstance(extra, list) else []
    pool = list(dict.fromkeys(loose(v) for v in raw_pool if v))
    for candidate in pool:
        if evaluate_conditions(normalized, {
            **vars,
            "lastUserMessage": candidate,
            "lastReplyId": reply_id,
            "lastReplyTitle": reply_title,
        }):
            return True
    return False


def determine_next_smart(block: Block, vars: dict[str, Any], flow: Flow) -> Optional[str]:
    """Like determine_next_block, with tolerant matching and no error-block fallback."""
    aliases = build_interactive_aliases(block)
    candidates = aliases.candidates_for(
        vars.get("lastUserMessage"), vars.get("lastReplyId"), vars.get("lastReplyTitle"),
    )
    if candidates:
        existing = vars.get("_candidates")
        existing = existing if isinstance(existing, list) else []
        vars = {**vars, "_candidates": [*existing, *candidates]}

    for action in block.actions:
        if eval_conditions_smart(action.conditions, vars):
            return action.next
    if block.default_next and block.default_next in flow.blocks:
        return block.default_next
    return None
