import random

import pytest

from kmasim.allocator import AllocationError
from kmasim.buddy import (
    BUFFER_HEADER_SIZE,
    MIN_BLOCK_SIZE,
    BuddyAllocator,
    buddy_block_size,
)
from kmasim.pages import PAGE_SIZE, OutOfPagesError, PagePool


@pytest.fixture
def pool():
    return PagePool()


@pytest.fixture
def allocator(pool):
    return BuddyAllocator(pool)


def test_block_size_smallest_class():
    assert buddy_block_size(0) == MIN_BLOCK_SIZE
    assert buddy_block_size(MIN_BLOCK_SIZE - BUFFER_HEADER_SIZE) == MIN_BLOCK_SIZE


def test_block_size_next_class():
    assert buddy_block_size(MIN_BLOCK_SIZE - BUFFER_HEADER_SIZE + 1) == 2 * MIN_BLOCK_SIZE


def test_block_size_whole_page_and_beyond():
    assert buddy_block_size(PAGE_SIZE - BUFFER_HEADER_SIZE) == PAGE_SIZE
    assert buddy_block_size(PAGE_SIZE - BUFFER_HEADER_SIZE + 1) is None


def test_block_size_negative_rejected():
    with pytest.raises(ValueError):
        buddy_block_size(-1)


def test_page_too_small_rejected():
    with pytest.raises(ValueError):
        BuddyAllocator(PagePool(page_size=MIN_BLOCK_SIZE))


def test_first_allocation_takes_control_and_data_page(allocator, pool):
    address = allocator.malloc(10)
    assert pool.stats().num_in_use == 2
    allocator.free(address, 10)
    stats = pool.stats()
    assert stats.num_in_use == 0
    assert stats.num_requested == stats.num_freed == 2


def test_first_block_follows_bitmap(allocator, pool):
    address = allocator.malloc(10)
    page = pool.page_at(address)
    bitmap_block = buddy_block_size(PAGE_SIZE // MIN_BLOCK_SIZE)
    assert address - BUFFER_HEADER_SIZE - page.address == bitmap_block


def test_freed_block_is_reused_first(allocator):
    first = allocator.malloc(10)
    second = allocator.malloc(10)
    assert first != second
    allocator.free(second, 10)
    assert allocator.malloc(10) == second
    allocator.free(first, 10)


def test_whole_page_request_gets_own_page(allocator, pool):
    size = PAGE_SIZE - BUFFER_HEADER_SIZE
    address = allocator.malloc(size)
    page = pool.page_at(address)
    assert address - BUFFER_HEADER_SIZE == page.address
    assert pool.stats().num_in_use == 2
    allocator.free(address, size)
    assert pool.stats().num_in_use == 0


def test_oversized_request_raises(allocator, pool):
    with pytest.raises(AllocationError):
        allocator.malloc(PAGE_SIZE)
    # The control page was brought in before the size was checked.
    assert pool.stats().num_in_use == 1
    address = allocator.malloc(100)
    allocator.free(address, 100)
    assert pool.stats().num_in_use == 0


def test_small_blocks_fill_a_page_before_a_new_one(allocator, pool):
    bitmap_block = buddy_block_size(PAGE_SIZE // MIN_BLOCK_SIZE)
    per_page = (PAGE_SIZE - bitmap_block) // MIN_BLOCK_SIZE
    addresses = [allocator.malloc(1) for _ in range(per_page)]
    assert pool.stats().num_in_use == 2
    assert len({pool.page_at(a).address for a in addresses}) == 1
    extra = allocator.malloc(1)
    assert pool.stats().num_in_use == 3
    for address in addresses + [extra]:
        allocator.free(address, 1)
    assert pool.stats().num_in_use == 0


def test_coalescing_allows_large_block_after_small_ones(allocator, pool):
    small = [allocator.malloc(1) for _ in range(8)]
    for address in small:
        allocator.free(address, 1)
    assert pool.stats().num_in_use == 0
    keep = allocator.malloc(1)
    pages_before = pool.stats().num_requested
    big = allocator.malloc(PAGE_SIZE // 2 - BUFFER_HEADER_SIZE)
    assert pool.stats().num_requested == pages_before
    assert pool.page_at(big).address == pool.page_at(keep).address
    allocator.free(big, 0)
    allocator.free(keep, 1)
    assert pool.stats().num_in_use == 0


def test_free_unknown_address_raises(allocator):
    address = allocator.malloc(10)
    with pytest.raises(ValueError):
        allocator.free(address + 8, 10)
    allocator.free(address, 10)


def test_double_free_raises(allocator):
    keep = allocator.malloc(10)
    address = allocator.malloc(10)
    allocator.free(address, 10)
    with pytest.raises(ValueError):
        allocator.free(address, 10)
    allocator.free(keep, 10)


def test_out_of_pages_propagates():
    pool = PagePool(max_pages=2)
    allocator = BuddyAllocator(pool)
    size = PAGE_SIZE - BUFFER_HEADER_SIZE
    allocator.malloc(size)
    with pytest.raises(OutOfPagesError):
        allocator.malloc(size)


def _spans(pool, live):
    return sorted(
        (address - BUFFER_HEADER_SIZE, address - BUFFER_HEADER_SIZE + buddy_block_size(size))
        for address, (size, _) in live.items()
    )


def _aligned(pool, live):
    return all(
        (address - BUFFER_HEADER_SIZE - pool.page_at(address).address)
        % buddy_block_size(size)
        == 0
        for address, (size, _) in live.items()
    )


def _allocate_random(allocator, pool, rng):
    size = rng.randint(1, PAGE_SIZE - BUFFER_HEADER_SIZE)
    address = allocator.malloc(size)
    data = bytes(rng.randrange(256) for _ in range(size))
    pool.write(address, data)
    return address, size, data


def _free_random(allocator, pool, rng, live):
    address = rng.choice(list(live))
    size, data = live.pop(address)
    contents = pool.read(address, size)
    allocator.free(address, size)
    return contents, data


@pytest.mark.parametrize("seed", [1, 7, 113])
def test_random_workload_keeps_blocks_disjoint(seed, pool):
    allocator = BuddyAllocator(pool)
    rng = random.Random(seed)
    first_address, first_size, first_data = _allocate_random(allocator, pool, rng)
    live = {first_address: (first_size, first_data)}
    freed = 0
    for _ in range(600):
        if len(live) > 0 and rng.random() > 0.6:
            contents, data = _free_random(allocator, pool, rng, live)
            assert contents == data
            freed += 1
        else:
            address, size, data = _allocate_random(allocator, pool, rng)
            live[address] = (size, data)

        assert _aligned(pool, live)
        spans = _spans(pool, live)
        assert all(end <= start for (_, end), (start, _) in zip(spans, spans[1:]))

    assert freed > 0
    expected = {address: data for address, (_, data) in live.items()}
    actual = {address: pool.read(address, size) for address, (size, _) in live.items()}
    assert actual == expected
    for address, (size, _) in list(live.items()):
        allocator.free(address, size)
    stats = pool.stats()
    assert stats.num_in_use == 0
    assert stats.num_requested == stats.num_freed