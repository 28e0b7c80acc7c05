"""Shared types for delivery channels."""

from __future__ import annotations

from dataclasses import dataclass


class DeliveryError(RuntimeError):
    """Raised when a channel fails to inject input into a target."""


@dataclass(slots=True, frozen=True)
class ResumeInput:
    """What gets typed: a menu-option key, then the literal resume text."""

    menu_key: str = "1"
    text: str = "continue"

    def __post_init__(self) -> None:
        if len(self.menu_key) != 1:
            raise ValueError("menu_key must be a single character")
        if not self.text:
            raise ValueError("text must not be empty")


__all__ = ["DeliveryError", "ResumeInput"]
