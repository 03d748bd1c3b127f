"""
Rate limiting package for the gate.

Holds the fixed-window throttle that enforces per-identity request budgets
under named policies (general and strict).
"""

from .fixed_window import (
    GENERAL_POLICY,
    STRICT_POLICY,
    FixedWindowThrottle,
    ThrottleDecision,
    ThrottlePolicy,
    ThrottleWindow,
    client_identity,
)

__all__ = [
    "GENERAL_POLICY",
    "STRICT_POLICY",
    "FixedWindowThrottle",
    "ThrottleDecision",
    "ThrottlePolicy",
    "ThrottleWindow",
    "client_identity",
]
