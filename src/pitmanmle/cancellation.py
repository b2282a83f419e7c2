# src/pitmanmle/cancellation.py

import threading


class EstimationCancelled(Exception):
    """Raised when an estimation is aborted through its CancellationToken."""


class CancellationToken:
    """
    Cooperative stop flag for one estimation.

    Another thread may call cancel(); the estimator polls check() inside
    its loops and unwinds with EstimationCancelled once the flag is seen.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise EstimationCancelled("estimation cancelled")

