"""Registry of BLT requests.

Replaces ad hoc shared "current jobs" maps: every request state lives here,
and every change to it goes through a per-entry transaction.
"""

from blt.registry.tracker import RegistryTransaction, StudyRegistry

__all__ = [
    "StudyRegistry",
    "RegistryTransaction",
]
