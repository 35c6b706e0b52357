"""The simplest allocator: one whole page for every request."""

from __future__ import annotations

from kmasim.allocator import AllocationError, Allocator

POINTER_SIZE = 8
_BYTE_ORDER = "little"


class DummyAllocator(Allocator):
    """Gives every request a page of its own.

    The first bytes of the page record where the page starts, so that
    ``free`` can find the page again from the address it is handed.
    """

    def malloc(self, size: int) -> int:
        page = self.pool.get_page()
        self.pool.write(page.address, page.address.to_bytes(POINTER_SIZE, _BYTE_ORDER))
        if size + POINTER_SIZE > page.size:
            self.pool.free_page(page)
            raise AllocationError(
                size, f"request of {size} bytes does not fit in a page"
            )
        return page.address + POINTER_SIZE

    def free(self, address: int, size: int) -> None:
        header = address - POINTER_SIZE
        page = self.pool.page_at(header)
        if header != page.address:
            raise ValueError(f"address {address:#x} was not returned by malloc")
        recorded = int.from_bytes(self.pool.read(header, POINTER_SIZE), _BYTE_ORDER)
        self.pool.free_page(self.pool.page_at(recorded))