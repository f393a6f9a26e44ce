"""Funnel scripts: the block graph a conversation walks through.

A script is loaded from the JSON stored on ``Funnel.flow``::

    {
        "startBlockId": "welcome-1",
        "stages": [{"id": "s1", "name": "WELCOME", "blockIds": ["welcome-1"]}, ...],
        "blocks": {
            "welcome-1": {
                "id": "welcome-1",
                "message": "What's your niche?",
                "options": [{"text": "E-commerce", "nextBlockId": "value-1"}]
            }
        }
    }

snake_case keys (``start_block_id``, ``block_ids``, ``next_block_id``,
``resource_name``) are accepted as well.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from core.exceptions import ScriptError
from core.logging_config import get_logger

LOGGER = get_logger(__name__)


# Stage names with engine-level meaning
STAGE_WELCOME = "WELCOME"
STAGE_VALUE_DELIVERY = "VALUE_DELIVERY"
STAGE_QUALIFICATION = "QUALIFICATION"
STAGE_PAIN_POINT_QUALIFICATION = "PAIN_POINT_QUALIFICATION"
STAGE_TRANSITION = "TRANSITION"
STAGE_EXPERIENCE_QUALIFICATION = "EXPERIENCE_QUALIFICATION"

LINK_PLACEHOLDER = "[LINK]"

WELCOME_PROMPT = "Answer by pasting one of those numbers"
OPTIONS_PROMPT = "Answer with number/keyword"


@dataclass(frozen=True)
class Option:
    """One choice on a block."""

    text: str
    next_block_id: Optional[str] = None


@dataclass(frozen=True)
class Block:
    """One script position."""

    id: str
    message: str
    options: Tuple[Option, ...] = ()
    resource_name: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return not self.options


@dataclass(frozen=True)
class Stage:
    """A named group of blocks, used for phase classification only."""

    name: str
    block_ids: Tuple[str, ...] = ()
    id: Optional[str] = None


def _pick(data: Mapping[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in data:
        return data[camel]
    return data.get(snake, default)


@dataclass(frozen=True)
class FunnelScript:
    """
    Immutable view over a funnel's block graph.

    Lookups never raise for unknown ids; callers decide what a missing block
    means (the phase classifier treats it as COMPLETED).
    """

    blocks: Dict[str, Block]
    stages: Tuple[Stage, ...] = ()
    start_block_id: Optional[str] = None
    resources: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(
        cls,
        flow: Mapping[str, Any],
        resources: Optional[Mapping[str, str]] = None,
    ) -> "FunnelScript":
        """
        Build a script from its stored JSON.

        Raises:
            ScriptError: If the structure is not a funnel flow.
        """
        if not isinstance(flow, Mapping):
            raise ScriptError("Funnel flow must be an object")

        raw_blocks = flow.get("blocks")
        if not isinstance(raw_blocks, Mapping) or not raw_blocks:
            raise ScriptError("Funnel flow has no blocks")

        blocks: Dict[str, Block] = {}
        for key, raw in raw_blocks.items():
            if not isinstance(raw, Mapping):
                raise ScriptError(f"Block {key!r} must be an object")
            block_id = str(raw.get("id") or key)
            options = []
            for raw_option in raw.get("options") or []:
                if not isinstance(raw_option, Mapping) or "text" not in raw_option:
                    raise ScriptError(f"Block {block_id!r} has an option without text")
                next_id = _pick(raw_option, "nextBlockId", "next_block_id")
                options.append(
                    Option(
                        text=str(raw_option["text"]),
                        next_block_id=str(next_id) if next_id else None,
                    )
                )
            blocks[block_id] = Block(
                id=block_id,
                message=str(raw.get("message") or ""),
                options=tuple(options),
                resource_name=_pick(raw, "resourceName", "resource_name"),
            )

        stages = []
        for raw_stage in flow.get("stages") or []:
            if not isinstance(raw_stage, Mapping) or not raw_stage.get("name"):
                raise ScriptError("Every stage needs a name")
            stages.append(
                Stage(
                    name=str(raw_stage["name"]),
                    block_ids=tuple(str(b) for b in _pick(raw_stage, "blockIds", "block_ids", [])),
                    id=raw_stage.get("id"),
                )
            )

        start = _pick(flow, "startBlockId", "start_block_id")
        return cls(
            blocks=blocks,
            stages=tuple(stages),
            start_block_id=str(start) if start else None,
            resources=dict(resources or {}),
        )

    @classmethod
    def from_funnel(cls, funnel) -> "FunnelScript":
        """Build a script from a ``core.models.Funnel`` row."""
        return cls.from_dict(funnel.flow, funnel.resources)

    def get_block(self, block_id: Optional[str]) -> Optional[Block]:
        if not block_id:
            return None
        return self.blocks.get(block_id)

    def stage_of(self, block_id: Optional[str]) -> Optional[Stage]:
        """First stage whose block set contains ``block_id``."""
        if not block_id:
            return None
        for stage in self.stages:
            if block_id in stage.block_ids:
                return stage
        return None

    def stage_named(self, name: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def first_block_of_stage(self, name: str) -> Optional[Block]:
        """The first existing block listed in the named stage."""
        stage = self.stage_named(name)
        if stage is None:
            return None
        for block_id in stage.block_ids:
            block = self.blocks.get(block_id)
            if block is not None:
                return block
        return None

    def entry_block(self) -> Optional[Block]:
        """Where a new external conversation starts: the first WELCOME block, else startBlockId."""
        welcome = self.first_block_of_stage(STAGE_WELCOME)
        if welcome is not None:
            return welcome
        return self.get_block(self.start_block_id)

    def resource_link(self, block: Block) -> Optional[str]:
        if not block.resource_name:
            return None
        return self.resources.get(block.resource_name)

    def problems(self) -> List[str]:
        """Consistency problems worth reporting when a funnel is loaded."""
        found = []
        for block in self.blocks.values():
            for option in block.options:
                if option.next_block_id and option.next_block_id not in self.blocks:
                    found.append(
                        f"Block {block.id!r} option {option.text!r} points to "
                        f"missing block {option.next_block_id!r}"
                    )
            if block.resource_name and block.resource_name not in self.resources:
                found.append(f"Block {block.id!r} uses unknown resource {block.resource_name!r}")
        for stage in self.stages:
            for block_id in stage.block_ids:
                if block_id not in self.blocks:
                    found.append(f"Stage {stage.name!r} lists missing block {block_id!r}")
        if self.entry_block() is None:
            found.append("Funnel has no WELCOME stage and no valid startBlockId")
        return found


def render_block_message(
    script: FunnelScript,
    block: Block,
    prompt: str = OPTIONS_PROMPT,
) -> str:
    """
    Outbound text for a block: its message with ``[LINK]`` resolved, followed
    by the options as numbered lines.
    """
    message = block.message
    if LINK_PLACEHOLDER in message:
        link = script.resource_link(block)
        if link:
            message = message.replace(LINK_PLACEHOLDER, link)
        else:
            LOGGER.warning(f"Block {block.id} has [LINK] but no resolvable resource")

    if not block.options:
        return message

    lines = [f"{i}. {option.text}" for i, option in enumerate(block.options, start=1)]
    return f"{message}\n\n{prompt}\n" + "\n".join(lines)


__all__ = [
    "Option",
    "Block",
    "Stage",
    "FunnelScript",
    "render_block_message",
    "STAGE_WELCOME",
    "STAGE_VALUE_DELIVERY",
    "STAGE_QUALIFICATION",
    "STAGE_PAIN_POINT_QUALIFICATION",
    "STAGE_TRANSITION",
    "STAGE_EXPERIENCE_QUALIFICATION",
    "WELCOME_PROMPT",
    "OPTIONS_PROMPT",
]
