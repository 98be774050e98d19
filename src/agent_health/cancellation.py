"""
Cancellation registry for in-flight benchmark runs.

A token exists only while its run is executing. Each benchmark service owns
one registry and hands the run's token to the orchestrator.
"""

import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """Process-local cancel flag for one run."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self._cancelled = False

    def cancel(self) -> bool:
        """Set the flag. Returns False when it was already set."""
        if self._cancelled:
            return False
        self._cancelled = True
        return True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled


class CancellationRegistry:
    def __init__(self):
        self._tokens: Dict[str, CancellationToken] = {}

    def register(self, run_id: str) -> CancellationToken:
        if run_id in self._tokens:
            raise ValueError(f"Run {run_id} already has an active cancellation token")
        token = CancellationToken(run_id)
        self._tokens[run_id] = token
        return token

    def get(self, run_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(run_id)

    def unregister(self, run_id: str) -> None:
        self._tokens.pop(run_id, None)

    def cancel(self, run_id: str) -> Optional[bool]:
        """Flag the run's token.

        Returns None when no run with this id is in flight, False when it was
        already cancelled, True on the first successful cancel.
        """
        token = self._tokens.get(run_id)
        if token is None:
            return None
        first = token.cancel()
        if first:
            logger.info(f"Cancellation requested for run {run_id}")
        return first

    def active_run_ids(self) -> List[str]:
        return list(self._tokens)

