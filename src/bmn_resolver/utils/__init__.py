"""Utility modules for bmn-resolver."""

from bmn_resolver.utils.locks import KeyLockRegistry, LockTimeoutError
from bmn_resolver.utils.retry import RetryPolicy

__all__ = ["KeyLockRegistry", "LockTimeoutError", "RetryPolicy"]
