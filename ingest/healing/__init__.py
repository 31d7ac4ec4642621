"""Batch healing of incomplete catalog details."""
from .checkpoint import Checkpoint
from .orchestrator import HealingOrchestrator, HealingSummary, select_targets
from .tasks import InvalidTransition, ScrapeTask, TaskState

__all__ = [
    "Checkpoint",
    "HealingOrchestrator",
    "HealingSummary",
    "InvalidTransition",
    "ScrapeTask",
    "TaskState",
    "select_targets",
]
