"""Conversation services for the DM funnel engine.

This module provides:
- Conversation persistence with compare-and-set updates
- Funnel navigation for accepted replies
- The escalation ladder for invalid replies
- Timeout abandonment and reminder nudges
- Handoff to the private chat surface
- Conversation creation on user join
- Operator notifications (Slack, SMS)

Services take a database session and a messaging provider; none of them
holds global state.
"""
from __future__ import annotations

# Retry utilities
from .retry import with_retry

# Persistence
from .conversation_store import ConversationStore, get_conversation_store

# Outbound
from .outbound import deliver

# Navigation
from .navigator import (
    COMPLETION_MESSAGE,
    FunnelNavigator,
    NavigationResult,
    get_navigator,
    script_for,
)

# Escalation
from .escalation import (
    EscalationPolicy,
    EscalationResult,
    FINAL_MESSAGE,
    REPROMPT_MESSAGE,
    WARNING_MESSAGE,
    escalation_action,
    get_escalation_policy,
)

# Timeouts and nudges
from .timeouts import (
    SweepResult,
    TimeoutService,
    due_nudge,
    is_timed_out,
    nudge_message,
)

# Handoff
from .handoff import (
    FALLBACK_MESSAGE,
    HandoffOrchestrator,
    HandoffResult,
    build_chat_link,
    get_handoff_orchestrator,
)

# User join
from .user_join import UserJoinResult, find_deployed_funnel, handle_user_joined

# Notifications
from .notification import NotificationService

__all__ = [
    # Retry
    "with_retry",
    # Persistence
    "ConversationStore",
    "get_conversation_store",
    # Outbound
    "deliver",
    # Navigation
    "COMPLETION_MESSAGE",
    "FunnelNavigator",
    "NavigationResult",
    "get_navigator",
    "script_for",
    # Escalation
    "EscalationPolicy",
    "EscalationResult",
    "FINAL_MESSAGE",
    "REPROMPT_MESSAGE",
    "WARNING_MESSAGE",
    "escalation_action",
    "get_escalation_policy",
    # Timeouts
    "SweepResult",
    "TimeoutService",
    "due_nudge",
    "is_timed_out",
    "nudge_message",
    # Handoff
    "FALLBACK_MESSAGE",
    "HandoffOrchestrator",
    "HandoffResult",
    "build_chat_link",
    "get_handoff_orchestrator",
    # User join
    "UserJoinResult",
    "find_deployed_funnel",
    "handle_user_joined",
    # Notifications
    "NotificationService",
]
