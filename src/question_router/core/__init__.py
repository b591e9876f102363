"""Core business logic components.

- QuestionDetector / QuestionIntake: Recognise and start tracking questions
- EscalationTargetResolver: Effective settings and per-level targets
- NotificationDispatcher: Renders and sends one escalation notification
- EscalationScheduler: Periodic escalation of overdue questions
- AnswerReconciler: Applies answer signals to question state
- EscalationAdmin: Validated settings and target administration
- RouterService: Wires everything to a chat platform and a store
"""

from question_router.core.admin import ConfigPreview, EscalationAdmin
from question_router.core.detector import QuestionDetector
from question_router.core.dispatcher import NotificationDispatcher
from question_router.core.intake import QuestionIntake
from question_router.core.reconciler import AnswerReconciler
from question_router.core.resolver import EscalationTargetResolver
from question_router.core.scheduler import EscalationScheduler, TickReport, compute_due_at
from question_router.core.service import RouterService, create_service

__all__ = [
    "AnswerReconciler",
    "ConfigPreview",
    "EscalationAdmin",
    "EscalationScheduler",
    "EscalationTargetResolver",
    "NotificationDispatcher",
    "QuestionDetector",
    "QuestionIntake",
    "RouterService",
    "TickReport",
    "compute_due_at",
    "create_service",
]
