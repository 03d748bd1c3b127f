"""
Failed-login lockout package.
"""

from .tracker import LockoutResult, LockoutState, LockoutTracker, apply_failure, apply_success

__all__ = ["LockoutResult", "LockoutState", "LockoutTracker", "apply_failure", "apply_success"]
