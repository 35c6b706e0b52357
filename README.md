# kmasim

A small laboratory for kernel memory allocation algorithms. Memory comes from a
simulated pool of fixed-size, page-aligned pages (`kmasim.pages.PagePool`,
8192-byte pages and at most 4096 of them by default). Allocators carve those
pages into blocks and hand back integer addresses, whose bytes can be read and
written through the pool.

## Pages

`PagePool` hands out `Page` objects with `get_page()` and takes them back with
`free_page(page)`. When every page is in use, `get_page()` raises
`OutOfPagesError`. `stats()` returns a `PageStats` snapshot with
`num_requested`, `num_freed`, `num_in_use`, `page_size` and `bytes_in_use`.
`read(address, size)` and `write(address, data)` work on a range inside a
single page that is in use. `page_at(address)` finds the page that holds an
address. `base_address(address, page_size)` rounds an address down to the
start of its page.

## Allocators

- `DummyAllocator` (`kmasim.dummy`) gives every request a whole page.
- `PowerOfTwoAllocator` (`kmasim.p2fl`) keeps one free list per power-of-two
  block size, from 64 bytes up to a page. It returns a page to the pool once
  every block on it is free. `choose_block_size(size, page_size)` gives the
  block a request would use, or `None` if it does not fit.
- `BuddyAllocator` (`kmasim.buddy`) is a binary buddy system. It splits blocks
  in halves, merges free buddies, keeps a bitmap block on each page of small
  blocks, and gives requests that need a whole page a page of their own.
  `buddy_block_size(size, page_size)` gives the block a request would use.

All of them implement the `Allocator` interface from `kmasim.allocator`:
`malloc(size)` returns an address, or raises `AllocationError` when the
request cannot be satisfied, and `free(address, size)` releases it. The
free-list and buddy allocators hold a control page for as long as any of
their data pages is in use.

## Using it from Python

```python
from kmasim.pages import PagePool
from kmasim.buddy import BuddyAllocator

pool = PagePool(page_size=8192, max_pages=4096)
allocator = BuddyAllocator(pool)

address = allocator.malloc(100)
pool.write(address, b"hello")
assert pool.read(address, 5) == b"hello"
allocator.free(address, 100)

print(pool.stats())  # every page has been handed back
```

## Trace runner

A trace file starts with the number of request slots, followed by
`REQUEST <id> <size>` and `FREE <id>` commands, separated by whitespace:

```
3
REQUEST 0 100
REQUEST 1 5000
FREE 0
REQUEST 2 64
FREE 1
FREE 2
```

Replay it against an allocator:

```
kmasim-trace trace.txt
kmasim-trace -a p2fl trace.txt
kmasim-trace --competition trace.txt
```

Options: `-a/--allocator` picks `bud` (the default), `buddy`, `dummy` or
`p2fl`; `--competition` switches modes; `-o/--output` sets where the
correctness-mode record goes (default `kma_output.dat`).

In correctness mode every allocation is filled with a byte pattern that is
checked again before it is freed, and a line `step allocated_bytes page_bytes`
is written per command, starting from `0 0 0`. Competition mode skips the
memory checks and prints the average ratio of wasted to requested bytes. A
request may fail only if it is larger than the page size minus 8 bytes. At the
end the runner checks that every page was returned, prints the page counters
and `Test: PASS` or `Test: FAILED`, and exits with status 0 or 1.

From Python the same is available as `parse_trace(text)`, which returns a
`Trace` of `Command`s, `make_allocator(name, pool)` and
`run_trace(trace, allocator, pool, competition)`, which returns a
`TraceResult` or raises `TraceError`.

## Randomised stress test

```
kmasim-competition
kmasim-competition -a p2fl --seed 7 --ops 5000
```

This performs a seeded random mix of allocations and frees (options
`--seed`, `--ops`, `--prob-alloc`, `--max-size`, `--prob-oversized`),
including a small share of oversized requests that must be refused, then frees
everything and checks that all pages were released. From Python, call
`run_competition(allocator, pool, ...)`, which returns a `CompetitionResult`
whose `passed` property reports the page check.

## What it does not do

Only the three allocators above are provided. The record written by the trace
runner is plain text; the package does not plot it.