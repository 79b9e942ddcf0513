"""
Consultation core: state machine, change reconciliation, thread management
and per-client views.
"""

from consult_core_lib.core.board import CaseBoard
from consult_core_lib.core.reconciler import ChangeReconciler, SubscriptionHandle
from consult_core_lib.core.session import ConsultationSession
from consult_core_lib.core.session_cache import SessionCache
from consult_core_lib.core.state_machine import CaseStateMachine
from consult_core_lib.core.thread import MessageThread
from consult_core_lib.core.thread_manager import (
    RESPONDER_TEMPLATES,
    ConsultationThreadManager,
)

__all__ = [
    "CaseBoard",
    "CaseStateMachine",
    "ChangeReconciler",
    "ConsultationSession",
    "ConsultationThreadManager",
    "MessageThread",
    "RESPONDER_TEMPLATES",
    "SessionCache",
    "SubscriptionHandle",
]
