"""Delivery channels for synthetic resume input."""

from .automation import AutomationChannel
from .base import DeliveryError, ResumeInput
from .pty import PtyChannel
from .tiered import DeliveryReport, TargetAttempt, TieredDelivery
from .tmux import KeyStep, TmuxChannel, build_resume_sequence

__all__ = [
    "AutomationChannel",
    "DeliveryError",
    "DeliveryReport",
    "KeyStep",
    "PtyChannel",
    "ResumeInput",
    "TargetAttempt",
    "TieredDelivery",
    "TmuxChannel",
    "build_resume_sequence",
]
