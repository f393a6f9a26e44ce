"""Domain layer: funnel scripts, phase classification and reply validation.

Everything here is pure: no sessions, no network, no clock.
"""
from __future__ import annotations

from .phase import ConversationPhase, classify_phase, phase_reference_time
from .script import Block, FunnelScript, Option, Stage, render_block_message
from .validator import ValidationResult, normalize_input, validate_response

__all__ = [
    # Scripts
    "Block",
    "FunnelScript",
    "Option",
    "Stage",
    "render_block_message",
    # Phases
    "ConversationPhase",
    "classify_phase",
    "phase_reference_time",
    # Validation
    "ValidationResult",
    "normalize_input",
    "validate_response",
]
