"""An allocator keeping a free list of blocks for each power-of-two size."""

from __future__ import annotations

from kmasim.allocator import AllocationError, Allocator
from kmasim.pages import PAGE_SIZE, Page, PagePool

MIN_BLOCK_SIZE = 64
BUFFER_HEADER_SIZE = 40


def _block_sizes(page_size: int) -> list[int]:
    sizes = []
    size = MIN_BLOCK_SIZE
    while size <= page_size:
        sizes.append(size)
        size *= 2
    return sizes


def choose_block_size(size: int, page_size: int = PAGE_SIZE) -> int | None:
    """Return the smallest block that holds ``size`` bytes plus its header.

    Returns ``None`` when even a whole page is too small.
    """
    if size < 0:
        raise ValueError(f"size must not be negative, got {size}")
    needed = size + BUFFER_HEADER_SIZE
    return next((block for block in _block_sizes(page_size) if block >= needed), None)


class PowerOfTwoAllocator(Allocator):
    """Power-of-two free list allocator.

    Each size class has its own free list; a page is cut into equal blocks
    of one class when that list runs dry, and returned to the pool once all
    its blocks are free again.  A control page is held while any data page
    is in use.
    """

    def __init__(self, pool: PagePool | None = None):
        super().__init__(pool)
        self._control: Page | None = None
        # Free lists keep their head at the end.
        self._free_lists: dict[int, list[int]] = {}
        self._allocated: dict[int, int] = {}
        self._pages_in_use = 0

    def _init_size_table(self) -> None:
        self._control = self.pool.get_page()
        self._free_lists = {size: [] for size in _block_sizes(self.page_size)}
        self._pages_in_use = 0

    def _release_size_table(self) -> None:
        assert self._control is not None
        self.pool.free_page(self._control)
        self._control = None
        self._free_lists = {}

    def _carve_page(self, block_size: int) -> list[int]:
        page = self.pool.get_page()
        self._pages_in_use += 1
        return list(reversed(range(page.address, page.end, block_size)))

    def malloc(self, size: int) -> int:
        if self._control is None:
            self._init_size_table()
        block_size = choose_block_size(size, self.page_size)
        if block_size is None:
            raise AllocationError(
                size, f"request of {size} bytes exceeds the largest block"
            )
        free_list = self._free_lists[block_size]
        if not free_list:
            free_list.extend(self._carve_page(block_size))
        block = free_list.pop()
        self._allocated[block] = block_size
        return block + BUFFER_HEADER_SIZE

    def free(self, address: int, size: int) -> None:
        block = address - BUFFER_HEADER_SIZE
        block_size = self._allocated.pop(block, None)
        if block_size is None:
            raise ValueError(f"address {address:#x} is not allocated")
        free_list = self._free_lists[block_size]
        free_list.append(block)

        page = self.pool.page_at(block)
        free_on_page = sum(1 for candidate in free_list if candidate in page)
        if free_on_page * block_size >= self.page_size:
            free_list[:] = [candidate for candidate in free_list if candidate not in page]
            self._pages_in_use -= 1
            self.pool.free_page(page)
        if self._pages_in_use == 0:
            self._release_size_table()