"""A randomised stress test that mixes allocations and frees."""

from __future__ import annotations

import argparse
import random
import sys
from dataclasses import dataclass

from kmasim.allocator import AllocationError, Allocator
from kmasim.pages import PagePool, PageStats
from kmasim.trace import make_allocator

SEED = 113
NUM_OPS = 24000
PROB_ALLOC = 0.6
MAX_SIZE = 8000
PROB_OVERSIZED = 0.02

_CYCLE = bytes(range(256))


@dataclass(frozen=True)
class CompetitionResult:
    """Counts and page statistics from one stress run."""

    allocations: int
    deallocations: int
    stats_before_cleanup: PageStats
    final_stats: PageStats
    mismatches: int

    @property
    def passed(self) -> bool:
        """True when every page requested was given back."""
        stats = self.final_stats
        return stats.num_requested == stats.num_freed and stats.num_in_use == 0


@dataclass
class _Block:
    size: int
    address: int
    value: bytes


def _pattern(start: int, size: int) -> bytes:
    offset = start % len(_CYCLE)
    repeats = (offset + size) // len(_CYCLE) + 1
    return (_CYCLE * repeats)[offset:offset + size]


class _Stress:
    def __init__(self, allocator: Allocator, pool: PagePool, rng: random.Random,
                 max_size: int, prob_oversized: float):
        self.allocator = allocator
        self.pool = pool
        self.rng = rng
        self.max_size = max_size
        self.prob_oversized = prob_oversized
        # Most recently allocated block last.
        self.live: list[_Block] = []
        self.next_value = 0
        self.mismatches = 0

    def _check(self, block: _Block) -> None:
        actual = self.pool.read(block.address, block.size)
        self.mismatches += sum(a != b for a, b in zip(actual, block.value))

    def allocate(self) -> None:
        size = 0
        while size == 0:
            size = int(self.rng.random() * self.max_size)
        if self.rng.random() < self.prob_oversized:
            size += self.pool.page_size
        try:
            address = self.allocator.malloc(size)
        except AllocationError:
            if size <= self.max_size:
                raise RuntimeError(f"allocation of {size} bytes failed") from None
            return
        if size > self.max_size:
            raise RuntimeError(f"allocation of {size} bytes should have failed")
        value = _pattern(self.next_value, size)
        self.next_value += size
        self.pool.write(address, value)
        block = _Block(size, address, value)
        self._check(block)
        self.live.append(block)

    def deallocate(self) -> None:
        if not self.live:
            raise RuntimeError("nothing to deallocate")
        index = int(self.rng.random() * (len(self.live) - 1))
        block = self.live.pop(len(self.live) - 1 - index)
        self._check(block)
        self.allocator.free(block.address, block.size)


def run_competition(
    allocator: Allocator,
    pool: PagePool | None = None,
    seed: int = SEED,
    num_ops: int = NUM_OPS,
    prob_alloc: float = PROB_ALLOC,
    max_size: int = MAX_SIZE,
    prob_oversized: float = PROB_OVERSIZED,
) -> CompetitionResult:
    """Run ``num_ops`` random operations, then free everything still held.

    A free happens only while at least two blocks are held.  Oversized
    requests (a page larger than usual) must fail; every other must succeed.
    """
    if max_size < 2:
        raise ValueError(f"max_size must be at least 2, got {max_size}")
    if num_ops < 0:
        raise ValueError(f"num_ops must not be negative, got {num_ops}")
    pool = pool if pool is not None else allocator.pool
    stress = _Stress(allocator, pool, random.Random(seed), max_size, prob_oversized)
    allocations = deallocations = 0

    for _ in range(num_ops):
        if len(stress.live) >= 2 and stress.rng.random() > prob_alloc:
            stress.deallocate()
            deallocations += 1
        else:
            stress.allocate()
            allocations += 1

    before = pool.stats()
    while stress.live:
        stress.deallocate()

    return CompetitionResult(
        allocations=allocations,
        deallocations=deallocations,
        stats_before_cleanup=before,
        final_stats=pool.stats(),
        mismatches=stress.mismatches,
    )


def _print_stats(label: str, stats: PageStats) -> None:
    print(
        "%s %5d/%5d/%5d"
        % (label, stats.num_requested, stats.num_freed, stats.num_in_use)
    )


def main(argv: list[str] | None = None) -> int:
    """Run the stress test against one allocator and print the outcome."""
    parser = argparse.ArgumentParser(
        prog="kmasim-competition",
        description="Stress a kernel memory allocator with random requests.",
    )
    parser.add_argument("-a", "--allocator", default="bud",
                        choices=["bud", "buddy", "dummy", "p2fl"])
    parser.add_argument("--seed", type=int, default=SEED)
    parser.add_argument("--ops", type=int, default=NUM_OPS)
    parser.add_argument("--prob-alloc", type=float, default=PROB_ALLOC)
    parser.add_argument("--max-size", type=int, default=MAX_SIZE)
    parser.add_argument("--prob-oversized", type=float, default=PROB_OVERSIZED)
    args = parser.parse_args(argv)

    pool = PagePool()
    allocator = make_allocator(args.allocator, pool)
    try:
        result = run_competition(
            allocator,
            pool,
            seed=args.seed,
            num_ops=args.ops,
            prob_alloc=args.prob_alloc,
            max_size=args.max_size,
            prob_oversized=args.prob_oversized,
        )
    except (RuntimeError, ValueError) as exc:
        print(f"ERROR: {exc}.", file=sys.stderr)
        print("Test: FAILED")
        return 1

    print("Allocation/Deallocation:     %5d/%5d"
          % (result.allocations, result.deallocations))
    _print_stats("Page Requested/Freed/In_Use:", result.stats_before_cleanup)
    print("Freeing all memory now")
    _print_stats("Page Requested/Freed/In Use:", result.final_stats)
    if result.mismatches:
        print(f"memory mismatches: {result.mismatches}", file=sys.stderr)
    print("Test: PASS" if result.passed else "Test: FAILED")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())