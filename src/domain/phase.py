"""Phase classification.

A conversation's phase is derived from the stage that contains its current
block. Classification is total: anything that cannot be placed (unknown block,
block outside every stage, no script) is COMPLETED, so a poller always has a
decision to act on.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from domain.script import (
    FunnelScript,
    STAGE_PAIN_POINT_QUALIFICATION,
    STAGE_QUALIFICATION,
    STAGE_TRANSITION,
    STAGE_VALUE_DELIVERY,
    STAGE_WELCOME,
)


class ConversationPhase(str, Enum):
    """Coarse position of a conversation in its funnel."""
    PHASE1 = "PHASE1"
    PHASE2 = "PHASE2"
    TRANSITION = "TRANSITION"
    COMPLETED = "COMPLETED"


STAGE_PHASES = {
    STAGE_WELCOME: ConversationPhase.PHASE1,
    STAGE_VALUE_DELIVERY: ConversationPhase.PHASE2,
    STAGE_QUALIFICATION: ConversationPhase.PHASE2,
    STAGE_PAIN_POINT_QUALIFICATION: ConversationPhase.PHASE2,
    STAGE_TRANSITION: ConversationPhase.TRANSITION,
}


def classify_phase(block_id: Optional[str], script: Optional[FunnelScript]) -> ConversationPhase:
    """Map a block id to its phase. Never raises."""
    if script is None or not block_id:
        return ConversationPhase.COMPLETED
    if script.get_block(block_id) is None:
        return ConversationPhase.COMPLETED
    stage = script.stage_of(block_id)
    if stage is None:
        return ConversationPhase.COMPLETED
    return STAGE_PHASES.get(stage.name.upper(), ConversationPhase.COMPLETED)


def phase_reference_time(conversation, phase: ConversationPhase) -> Optional[datetime]:
    """
    The timestamp inactivity is measured from for ``phase``.

    PHASE1 counts from creation, PHASE2 from when the user entered it (falling
    back to the last update for rows written before that column was set).
    Other phases use the last update.
    """
    if phase is ConversationPhase.PHASE1:
        return conversation.created_at
    if phase is ConversationPhase.PHASE2:
        return conversation.phase2_started_at or conversation.updated_at
    return conversation.updated_at


__all__ = ["ConversationPhase", "STAGE_PHASES", "classify_phase", "phase_reference_time"]
