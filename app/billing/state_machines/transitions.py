"""
Helpers for running django-fsm transitions.
"""

from __future__ import annotations

from typing import Any

from django_fsm import TransitionNotAllowed, can_proceed

from billing.exceptions import InvalidStateTransitionError


def apply_transition(instance: Any, name: str, *args: Any, **kwargs: Any) -> None:
    """
    Run the transition method ``name`` on ``instance``.

    Converts django-fsm's TransitionNotAllowed into
    InvalidStateTransitionError so callers see a conflict in our standard
    error format. Does not save.
    """
    method = getattr(instance, name)
    try:
        method(*args, **kwargs)
    except TransitionNotAllowed:
        raise InvalidStateTransitionError(
            f"Cannot {name} {instance.__class__.__name__} from '{instance.state}' state",
            details={
                "entity": instance.__class__.__name__,
                "entity_id": str(instance.pk),
                "current_state": instance.state,
                "transition": name,
            },
        ) from None


def can_transition(instance: Any, name: str) -> bool:
    """Whether transition ``name`` is allowed from the instance's current state."""
    return can_proceed(getattr(instance, name))


__all__ = ["apply_transition", "can_transition"]
