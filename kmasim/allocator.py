"""The interface shared by the kernel memory allocators."""

from __future__ import annotations

from abc import ABC, abstractmethod

from kmasim.pages import PagePool


class AllocationError(Exception):
    """Raised when an allocator cannot satisfy a request."""

    def __init__(self, size: int, message: str | None = None):
        self.size = size
        super().__init__(message or f"cannot allocate {size} bytes")


class Allocator(ABC):
    """Hands out byte ranges carved from the pages of a :class:`PagePool`.

    ``malloc`` returns the address of the first usable byte; ``free`` takes
    that address back together with the size that was requested for it.
    """

    def __init__(self, pool: PagePool | None = None):
        self.pool = pool if pool is not None else PagePool()

    @property
    def page_size(self) -> int:
        """Size of the pages this allocator draws from."""
        return self.pool.page_size

    @abstractmethod
    def malloc(self, size: int) -> int:
        """Allocate ``size`` bytes and return their address.

        Raises :class:`AllocationError` if the request cannot be satisfied.
        """

    @abstractmethod
    def free(self, address: int, size: int) -> None:
        """Release memory previously returned by :meth:`malloc`."""