"""A binary buddy allocator that splits pages into power-of-two blocks."""

from __future__ import annotations

from dataclasses import dataclass, field

from kmasim.allocator import AllocationError, Allocator
from kmasim.pages import PAGE_SIZE, Page, PagePool

MIN_BLOCK_SIZE = 64
BUFFER_HEADER_SIZE = 48


def _block_sizes(page_size: int) -> list[int]:
    sizes = []
    size = MIN_BLOCK_SIZE
    while size <= page_size:
        sizes.append(size)
        size *= 2
    return sizes


def buddy_block_size(size: int, page_size: int = PAGE_SIZE) -> int | None:
    """Return the smallest block that holds ``size`` bytes plus its header.

    Returns ``None`` when even a whole page is too small.
    """
    if size < 0:
        raise ValueError(f"size must not be negative, got {size}")
    needed = size + BUFFER_HEADER_SIZE
    return next((block for block in _block_sizes(page_size) if block >= needed), None)


@dataclass
class _PageState:
    page: Page
    # Start address -> size of every block currently carved from the page.
    blocks: dict[int, int] = field(default_factory=dict)
    allocated: set[int] = field(default_factory=set)
    has_bitmap: bool = False

    def only_bitmap_allocated(self) -> bool:
        if not self.has_bitmap:
            return not self.allocated
        return self.allocated == {self.page.address}


class BuddyAllocator(Allocator):
    """Buddy system allocator.

    Every data page starts as one free block.  Requests smaller than a page
    split blocks in halves until the size fits; a freed block merges with
    its buddy whenever both are free.  Pages used for small blocks give up
    their first block to an occupancy bitmap, and return to the pool once
    nothing else on them is allocated.  A request needing a whole page gets
    a page of its own.  A control page is held while any data page is in use.
    """

    def __init__(self, pool: PagePool | None = None):
        super().__init__(pool)
        bitmap_size = buddy_block_size(
            self.page_size // MIN_BLOCK_SIZE, self.page_size
        )
        if bitmap_size is None or bitmap_size >= self.page_size:
            raise ValueError(
                f"page size {self.page_size} is too small for a buddy allocator"
            )
        self._bitmap_size = bitmap_size
        self._control: Page | None = None
        # Free lists keep their head at the end.
        self._free_lists: dict[int, list[int]] = {}
        self._pages: dict[int, _PageState] = {}

    def _init_free_list(self) -> None:
        self._control = self.pool.get_page()
        self._free_lists = {size: [] for size in _block_sizes(self.page_size)}
        self._pages = {}

    def _release_free_list(self) -> None:
        assert self._control is not None
        self.pool.free_page(self._control)
        self._control = None
        self._free_lists = {}

    def _state_of(self, address: int) -> _PageState:
        return self._pages[self.pool.page_at(address).address]

    def _pop_head(self, size: int, address: int) -> None:
        removed = self._free_lists[size].pop()
        assert removed == address

    def _take(self, size: int, address: int) -> None:
        self._pop_head(size, address)
        self._state_of(address).allocated.add(address)

    def _split(self, address: int, need: int) -> int:
        state = self._state_of(address)
        size = state.blocks[address]
        while size != need:
            self._pop_head(size, address)
            half = size // 2
            for child in (address + half, address):
                state.blocks[child] = half
                self._free_lists[half].append(child)
            size = half
        return address

    def _search(self, block_size: int) -> int | None:
        for size, free_list in self._free_lists.items():
            if size >= block_size and free_list:
                head = free_list[-1]
                if size == block_size:
                    return head
                return self._split(head, block_size)
        return None

    def _add_page(self, with_bitmap: bool) -> None:
        page = self.pool.get_page()
        state = _PageState(page=page, has_bitmap=with_bitmap)
        self._pages[page.address] = state
        state.blocks[page.address] = self.page_size
        self._free_lists[self.page_size].append(page.address)
        if with_bitmap:
            bitmap = self._split(page.address, self._bitmap_size)
            self._take(self._bitmap_size, bitmap)

    def malloc(self, size: int) -> int:
        if self._control is None:
            self._init_free_list()
        block_size = buddy_block_size(size, self.page_size)
        if block_size is None:
            raise AllocationError(
                size, f"request of {size} bytes exceeds the largest block"
            )
        block = self._search(block_size)
        if block is None:
            self._add_page(with_bitmap=block_size != self.page_size)
            block = self._search(block_size)
            assert block is not None
        self._take(block_size, block)
        return block + BUFFER_HEADER_SIZE

    def free(self, address: int, size: int) -> None:
        block = address - BUFFER_HEADER_SIZE
        try:
            state = self._state_of(block)
        except (ValueError, KeyError):
            raise ValueError(f"address {address:#x} is not allocated") from None
        if block not in state.allocated or (
            state.has_bitmap and block == state.page.address
        ):
            raise ValueError(f"address {address:#x} is not allocated")
        state.allocated.discard(block)
        block_size = state.blocks[block]

        if block_size == self.page_size:
            del self._pages[state.page.address]
            self.pool.free_page(state.page)
        else:
            self._free_lists[block_size].append(block)
            self._coalesce(state, block)
            if state.only_bitmap_allocated():
                self._release_page(state)

        if not self._pages:
            self._release_free_list()

    def _coalesce(self, state: _PageState, block: int) -> None:
        base = state.page.address
        while True:
            size = state.blocks[block]
            if size == self.page_size:
                return
            buddy = base + ((block - base) ^ size)
            if (
                state.blocks.get(buddy) != size
                or buddy in state.allocated
            ):
                return
            self._free_lists[size].remove(buddy)
            self._free_lists[size].remove(block)
            left, right = min(block, buddy), max(block, buddy)
            del state.blocks[right]
            state.blocks[left] = size * 2
            self._free_lists[size * 2].append(left)
            block = left

    def _release_page(self, state: _PageState) -> None:
        for address, size in state.blocks.items():
            if address not in state.allocated:
                self._free_lists[size].remove(address)
        del self._pages[state.page.address]
        self.pool.free_page(state.page)