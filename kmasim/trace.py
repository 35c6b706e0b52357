"""Replay allocation traces against an allocator and check the results."""

from __future__ import annotations

import argparse
import math
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from kmasim.allocator import AllocationError, Allocator
from kmasim.buddy import BuddyAllocator
from kmasim.dummy import DummyAllocator
from kmasim.p2fl import PowerOfTwoAllocator
from kmasim.pages import OutOfPagesError, PagePool, PageStats

POINTER_SIZE = 8
REQUEST = "REQUEST"
FREE = "FREE"
DEFAULT_OUTPUT = "kma_output.dat"

_ALLOCATORS: dict[str, type[Allocator]] = {
    "bud": BuddyAllocator,
    "buddy": BuddyAllocator,
    "dummy": DummyAllocator,
    "p2fl": PowerOfTwoAllocator,
}

_CYCLE = bytes(range(256))


class TraceError(Exception):
    """Raised when a trace is malformed or a replay fails its checks."""

    def __init__(
        self,
        message: str,
        detail: str = "",
        result: TraceResult | None = None,
    ):
        self.message = message
        self.detail = detail
        self.result = result
        super().__init__(f"{message}: {detail}" if detail else message)


@dataclass(frozen=True)
class Command:
    """One line of a trace: a request of ``size`` bytes, or a free."""

    kind: str
    req_id: int
    size: int | None = None

    def __post_init__(self) -> None:
        if self.kind not in (REQUEST, FREE):
            raise TraceError("unknown command type:", self.kind)
        if self.kind == REQUEST and self.size is None:
            raise TraceError("Not enough arguments to REQUEST")


@dataclass(frozen=True)
class Trace:
    """A parsed trace: the number of request slots and the commands."""

    num_requests: int
    commands: tuple[Command, ...] = ()

    def __iter__(self) -> Iterator[Command]:
        return iter(self.commands)

    def __len__(self) -> int:
        return len(self.commands)


@dataclass
class TraceResult:
    """What a replay observed."""

    stats: PageStats
    allocations: int
    deallocations: int
    points: list[tuple[int, int, int]] = field(default_factory=list)
    mismatches: int = 0
    average_ratio: float | None = None


def _read_int(tokens: Iterator[str]) -> int | None:
    token = next(tokens, None)
    if token is None:
        return None
    try:
        return int(token)
    except ValueError:
        return None


def parse_trace(text: str) -> Trace:
    """Parse a trace: a request count, then REQUEST id size / FREE id commands."""
    tokens = iter(text.split())
    count = _read_int(tokens)
    if count is None:
        raise TraceError("Couldn't read number of requests at head of file")
    commands = []
    for word in tokens:
        if word == REQUEST:
            req_id = _read_int(tokens)
            size = _read_int(tokens)
            if req_id is None or size is None:
                raise TraceError("Not enough arguments to REQUEST")
            commands.append(Command(REQUEST, req_id, size))
        elif word == FREE:
            req_id = _read_int(tokens)
            if req_id is None:
                raise TraceError("Not enough arguments to FREE")
            commands.append(Command(FREE, req_id))
        else:
            raise TraceError("unknown command type:", word)
    return Trace(count, tuple(commands))


def make_allocator(name: str, pool: PagePool | None = None) -> Allocator:
    """Build the allocator called ``name`` (dummy, p2fl, bud or buddy)."""
    try:
        cls = _ALLOCATORS[name]
    except KeyError:
        known = ", ".join(sorted(_ALLOCATORS))
        raise ValueError(f"unknown allocator {name!r}; choose from {known}") from None
    return cls(pool)


def _pattern(start: int, size: int) -> bytes:
    offset = start % len(_CYCLE)
    repeats = (offset + size) // len(_CYCLE) + 1
    return (_CYCLE * repeats)[offset:offset + size]


def _count_mismatches(actual: bytes, expected: bytes) -> int:
    return sum(a != b for a, b in zip(actual, expected))


@dataclass
class _Live:
    size: int
    address: int
    value: bytes


class _Replay:
    def __init__(self, allocator: Allocator, pool: PagePool, competition: bool):
        self.allocator = allocator
        self.pool = pool
        self.competition = competition
        self.limit = pool.page_size - POINTER_SIZE
        self.live: dict[int, _Live] = {}
        self.next_value = 0
        self.current_bytes = 0
        self.mismatches = 0

    def _fill(self, size: int) -> bytes:
        data = _pattern(self.next_value, size)
        self.next_value += size
        return data

    def _check(self, block: _Live) -> None:
        actual = self.pool.read(block.address, block.size)
        self.mismatches += _count_mismatches(actual, block.value)

    def request(self, req_id: int, size: int) -> None:
        if req_id in self.live:
            raise TraceError("request is already allocated", str(req_id))
        if size < 0:
            raise TraceError("invalid request size", str(size))
        try:
            address = self.allocator.malloc(size)
        except AllocationError:
            if size <= self.limit:
                raise TraceError(
                    "got NULL from kma_malloc for alloc'able request"
                ) from None
            return
        except OutOfPagesError:
            raise TraceError("error: all pages already allocated") from None
        if size > self.limit:
            raise TraceError("got NULL from kma_malloc for alloc'able request")
        self.current_bytes += size
        value = b""
        if not self.competition:
            value = self._fill(size)
            self.pool.write(address, value)
        block = _Live(size, address, value)
        if not self.competition:
            self._check(block)
        self.live[req_id] = block

    def release(self, req_id: int) -> None:
        block = self.live.pop(req_id, None)
        if block is None:
            raise TraceError("request is not allocated", str(req_id))
        if block.size <= 0:
            raise TraceError("request has no size", str(req_id))
        if not self.competition:
            self._check(block)
        self.allocator.free(block.address, block.size)
        self.current_bytes -= block.size


def run_trace(
    trace: Trace,
    allocator: Allocator,
    pool: PagePool | None = None,
    competition: bool = False,
) -> TraceResult:
    """Replay ``trace`` on ``allocator`` and check that every page comes back.

    In correctness mode each allocation is filled with a byte pattern that
    is checked again before it is freed, and the bytes allocated and the
    bytes held in pages are recorded after every command.  In competition
    mode the average ratio of wasted to allocated bytes is computed instead.
    """
    pool = pool if pool is not None else allocator.pool
    replay = _Replay(allocator, pool, competition)
    allocations = deallocations = 0
    points: list[tuple[int, int, int]] = [] if competition else [(0, 0, 0)]
    ratios: list[float] = []

    for index, command in enumerate(trace, start=1):
        if not 0 <= command.req_id < trace.num_requests:
            raise TraceError("request id out of range", str(command.req_id))
        if command.kind == REQUEST:
            assert command.size is not None
            replay.request(command.req_id, command.size)
            allocations += 1
        else:
            replay.release(command.req_id)
            deallocations += 1

        total = pool.stats().bytes_in_use
        if competition:
            if allocations != deallocations:
                wasted = total - replay.current_bytes
                if replay.current_bytes:
                    ratios.append(wasted / replay.current_bytes)
                else:
                    ratios.append(math.inf if wasted else math.nan)
        else:
            points.append((index, replay.current_bytes, total))

    stats = pool.stats()
    average = None
    if competition:
        average = sum(ratios) / len(ratios) if ratios else math.nan
    result = TraceResult(
        stats=stats,
        allocations=allocations,
        deallocations=deallocations,
        points=points,
        mismatches=replay.mismatches,
        average_ratio=average,
    )
    if stats.num_requested != stats.num_freed or stats.num_in_use != 0:
        raise TraceError("not all pages freed", result=result)
    if result.mismatches:
        raise TraceError("there were memory mismatches", result=result)
    return result


def _write_points(path: str, points: list[tuple[int, int, int]]) -> None:
    with open(path, "w", encoding="ascii") as out:
        for point in points:
            out.write("%d %d %d\n" % point)


def _report(result: TraceResult, args: argparse.Namespace) -> None:
    if not args.competition:
        _write_points(args.output, result.points)
    stats = result.stats
    print(
        "Page Requested/Freed/In Use: %5d/%5d/%5d"
        % (stats.num_requested, stats.num_freed, stats.num_in_use)
    )


def _fail(message: str, detail: str = "") -> int:
    print(f"ERROR: {message}: {detail}.", file=sys.stderr)
    print("Test: FAILED")
    return 1


def main(argv: list[str] | None = None) -> int:
    """Replay a trace file and report whether the allocator passed."""
    parser = argparse.ArgumentParser(
        prog="kmasim-trace",
        description="Replay an allocation trace against a kernel memory allocator.",
    )
    parser.add_argument("trace_file", help="trace to replay")
    parser.add_argument(
        "-a", "--allocator", default="bud", choices=sorted(_ALLOCATORS)
    )
    parser.add_argument(
        "--competition",
        action="store_true",
        help="measure wasted memory instead of checking contents",
    )
    parser.add_argument(
        "-o", "--output", default=DEFAULT_OUTPUT,
        help="where to write the allocation trace in correctness mode",
    )
    args = parser.parse_args(argv)

    mode = "competition" if args.competition else "correctness"
    print(f"{parser.prog}: Running in {mode} mode")

    try:
        text = Path(args.trace_file).read_text(encoding="utf-8")
    except OSError:
        return _fail("unable to open input test file", args.trace_file)

    pool = PagePool()
    allocator = make_allocator(args.allocator, pool)
    try:
        result = run_trace(parse_trace(text), allocator, pool, args.competition)
    except TraceError as exc:
        if exc.result is not None:
            try:
                _report(exc.result, args)
            except OSError:
                return _fail("unable to open allocation output file", args.output)
        return _fail(exc.message, exc.detail)

    try:
        _report(result, args)
    except OSError:
        return _fail("unable to open allocation output file", args.output)
    if args.competition:
        print(f"Competition average ratio: {result.average_ratio:f}")
    print("Test: PASS")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())