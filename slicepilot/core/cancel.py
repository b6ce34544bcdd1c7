from __future__ import annotations

import threading

from .errors import PipelineCancelled


class CancelToken:
    """Cooperative cancellation flag shared by one pipeline run.

    Checked right after every external call; once set, the run discards
    whatever it was about to apply.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled("Run was cancelled")
