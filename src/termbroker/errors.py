"""Exception hierarchy for termbroker.

Only process startup raises. Everything the decision channel or an
observer can call reports failure through its return value.
"""

from __future__ import annotations


class BrokerError(Exception):
    """Base exception for all termbroker errors."""


class SpawnError(BrokerError):
    """The agent process could not be started; no session was registered."""

    def __init__(self, task: str, cwd: str, reason: str):
        self.task = task
        self.cwd = cwd
        self.reason = reason
        super().__init__(f"Failed to spawn agent in {cwd}: {reason}")