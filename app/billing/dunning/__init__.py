"""
Dunning (failed-payment recovery).

- policy: pure retry schedule and decision function
- service: persistence of attempts and their side effects
"""

from billing.dunning.policy import (
    DEFAULT_RETRY_DAYS,
    DunningAction,
    DunningActionKind,
    DunningManager,
    DunningPolicy,
)

__all__ = [
    "DEFAULT_RETRY_DAYS",
    "DunningAction",
    "DunningActionKind",
    "DunningManager",
    "DunningPolicy",
]
