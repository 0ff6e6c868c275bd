"""
Optimistic values: a flag the UI already shows while the backend call that
makes it true is still in flight.
"""
from dataclasses import dataclass, replace
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Optimistic(Generic[T]):
    """
    Either a confirmed value, or a pending value plus what to revert to.

    >>> flag = Optimistic(False).propose(True)
    >>> flag.value, flag.pending
    (True, True)
    >>> flag.rollback().value
    False
    """

    value: T
    pending: bool = False
    revert: Optional[T] = None

    @property
    def confirmed_value(self) -> T:
        """Last value the server agreed to"""
        return self.revert if self.pending else self.value

    def propose(self, value: T) -> "Optimistic[T]":
        # Stacked proposals still revert to the last confirmed value
        return Optimistic(value=value, pending=True, revert=self.confirmed_value)

    def confirm(self) -> "Optimistic[T]":
        return Optimistic(value=self.value)

    def rollback(self) -> "Optimistic[T]":
        if not self.pending:
            return self
        return Optimistic(value=self.revert)

    def reconcile(self, server_value: T) -> "Optimistic[T]":
        """
        Apply a value observed by a poll.

        A settled value is replaced outright. While a mutation is in flight
        only the revert target moves; the mutation's own confirm/rollback
        settles the flag, and the next poll after that wins.
        """
        if self.pending:
            return replace(self, revert=server_value)
        return Optimistic(value=server_value)
