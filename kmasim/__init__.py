"""Simulated kernel memory allocators over a fixed-size page pool, with trace and stress-test runners."""

__version__ = "0.1.0"
__all__ = ["allocator", "buddy", "competition", "dummy", "p2fl", "pages", "trace"]