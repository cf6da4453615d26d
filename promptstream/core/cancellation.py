"""Cooperative cancellation flag shared between a session and its generator."""

import logging

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    One-shot cancellation flag.

    The session sets it; the token generator and the session's pull loop poll
    it between chunks. Setting it twice is harmless.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._cancelled = False

    def cancel(self) -> bool:
        """
        Set the flag.

        Returns:
            True if this call cancelled the token, False if it already was
        """
        if self._cancelled:
            return False
        self._cancelled = True
        logger.debug(f"Cancellation requested: {self.name or 'unnamed'}")
        return True

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._cancelled

    def __repr__(self) -> str:
        return f"CancellationToken(name={self.name!r}, cancelled={self._cancelled})"
