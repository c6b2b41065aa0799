"""Cooperative cancellation for chat runs."""

from .errors import Aborted


class AbortController:
    """Controls cancellation of a single chat run.

    Usage:
        controller = AbortController()

        # From a UI handler:
        controller.abort()

        # Before each suspension point:
        controller.check()  # Raises Aborted if aborted
    """

    def __init__(self):
        self._aborted = False

    @property
    def is_aborted(self) -> bool:
        """Check if abort was requested."""
        return self._aborted

    def abort(self) -> None:
        """Request cancellation of the current run."""
        self._aborted = True

    def check(self) -> None:
        """Raise ``Aborted`` if cancellation was requested."""
        if self._aborted:
            raise Aborted()
