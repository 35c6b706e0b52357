"""A simulated page allocator handing out fixed-size pages from a bounded pool."""

from __future__ import annotations

from dataclasses import dataclass

PAGE_SIZE = 8192
MAX_PAGES = 4096


class OutOfPagesError(RuntimeError):
    """Raised when every page of the pool is already handed out."""


@dataclass(frozen=True)
class Page:
    """A page handed out by a :class:`PagePool`."""

    id: int
    address: int
    size: int

    @property
    def end(self) -> int:
        """Address one past the last byte of the page."""
        return self.address + self.size

    def __contains__(self, address: object) -> bool:
        return isinstance(address, int) and self.address <= address < self.end


@dataclass(frozen=True)
class PageStats:
    """A snapshot of the pool's page counters."""

    num_requested: int
    num_freed: int
    num_in_use: int
    page_size: int

    @property
    def bytes_in_use(self) -> int:
        return self.num_in_use * self.page_size


def _check_power_of_two(value: int, what: str) -> None:
    if value <= 0 or value & (value - 1):
        raise ValueError(f"{what} must be a positive power of two, got {value}")


def base_address(address: int, page_size: int = PAGE_SIZE) -> int:
    """Return the start of the page that holds ``address``."""
    _check_power_of_two(page_size, "page size")
    if address < 0:
        raise ValueError(f"address must not be negative, got {address}")
    return address & ~(page_size - 1)


class PagePool:
    """A bounded pool of page-aligned, contiguous pages with byte storage.

    The backing store is set up on the first request and torn down as soon
    as no page is in use any more; freed pages are reused last-in first-out.
    """

    def __init__(self, page_size: int = PAGE_SIZE, max_pages: int = MAX_PAGES):
        _check_power_of_two(page_size, "page size")
        if max_pages < 1:
            raise ValueError(f"max_pages must be at least 1, got {max_pages}")
        self.page_size = page_size
        self.max_pages = max_pages
        # Page aligned and never zero, so that zero can stand for "no address".
        self.base = page_size
        self._num_requested = 0
        self._num_freed = 0
        self._next_id = 0
        self._free: list[int] | None = None
        self._memory: dict[int, bytearray] = {}
        self._in_use: dict[int, Page] = {}

    def _ensure_pool(self) -> list[int]:
        if self._free is None:
            # Popped from the end, so the lowest page goes out first.
            self._free = list(reversed(range(self.max_pages)))
        return self._free

    def get_page(self) -> Page:
        """Hand out one page, raising :class:`OutOfPagesError` when none is left."""
        free = self._ensure_pool()
        if not free:
            raise OutOfPagesError("all pages already allocated")
        index = free.pop()
        self._num_requested += 1
        page = Page(
            id=self._next_id,
            address=self.base + index * self.page_size,
            size=self.page_size,
        )
        self._next_id += 1
        self._memory.setdefault(index, bytearray(self.page_size))
        self._in_use[index] = page
        return page

    def free_page(self, page: Page) -> None:
        """Return a page to the pool."""
        index = self._index_of(page.address)
        if index is None or self._in_use.get(index) != page:
            raise ValueError(f"page {page!r} is not in use")
        del self._in_use[index]
        self._num_freed += 1
        assert self._free is not None
        self._free.append(index)
        if not self._in_use:
            self._free = None
            self._memory.clear()

    def stats(self) -> PageStats:
        """Return a snapshot of the page counters."""
        return PageStats(
            num_requested=self._num_requested,
            num_freed=self._num_freed,
            num_in_use=len(self._in_use),
            page_size=self.page_size,
        )

    def _index_of(self, address: int) -> int | None:
        offset = address - self.base
        if offset < 0:
            return None
        index = offset // self.page_size
        return index if index < self.max_pages else None

    def page_at(self, address: int) -> Page:
        """Return the in-use page that holds ``address``."""
        index = self._index_of(address)
        page = self._in_use.get(index) if index is not None else None
        if page is None:
            raise ValueError(f"address {address:#x} is not inside a page in use")
        return page

    def _span(self, address: int, size: int) -> tuple[bytearray, int]:
        if size < 0:
            raise ValueError(f"size must not be negative, got {size}")
        page = self.page_at(address)
        offset = address - page.address
        if offset + size > page.size:
            raise ValueError(
                f"range {address:#x}+{size} runs past the end of its page"
            )
        index = self._index_of(address)
        assert index is not None
        return self._memory[index], offset

    def read(self, address: int, size: int) -> bytes:
        """Read ``size`` bytes starting at ``address`` within one page."""
        memory, offset = self._span(address, size)
        return bytes(memory[offset:offset + size])

    def write(self, address: int, data: bytes) -> None:
        """Write ``data`` starting at ``address`` within one page."""
        data = bytes(data)
        memory, offset = self._span(address, len(data))
        memory[offset:offset + len(data)] = data