import pytest

from kmasim.allocator import AllocationError, Allocator
from kmasim.buddy import BuddyAllocator
from kmasim.competition import run_competition, main
from kmasim.dummy import DummyAllocator
from kmasim.p2fl import PowerOfTwoAllocator
from kmasim.pages import PagePool

OPS = 300


class _Refusing(Allocator):
    def malloc(self, size):
        raise AllocationError(size)

    def free(self, address, size):
        raise AssertionError("nothing was allocated")


class _Leaking(Allocator):
    def malloc(self, size):
        return self.pool.get_page().address

    def free(self, address, size):
        pass


@pytest.mark.parametrize(
    "cls", [DummyAllocator, PowerOfTwoAllocator, BuddyAllocator]
)
def test_allocators_pass(cls):
    pool = PagePool()
    result = run_competition(cls(pool), pool, num_ops=OPS)
    assert result.passed
    assert result.mismatches == 0
    assert result.allocations + result.deallocations == OPS
    assert result.final_stats.num_in_use == 0


def test_same_seed_same_result():
    first_pool = PagePool()
    second_pool = PagePool()
    first = run_competition(BuddyAllocator(first_pool), first_pool, seed=7, num_ops=OPS)
    second = run_competition(
        BuddyAllocator(second_pool), second_pool, seed=7, num_ops=OPS
    )
    assert first == second


def test_only_allocations_keep_one_page_each():
    pool = PagePool()
    result = run_competition(
        DummyAllocator(pool), pool, num_ops=50, prob_alloc=1.0, prob_oversized=0.0
    )
    assert result.deallocations == 0
    assert result.allocations == 50
    assert result.stats_before_cleanup.num_in_use == 50
    assert result.passed


def test_oversized_requests_all_fail():
    pool = PagePool()
    result = run_competition(DummyAllocator(pool), pool, num_ops=40, prob_oversized=1.0)
    assert result.allocations == 40
    assert result.stats_before_cleanup.num_in_use == 0
    assert result.final_stats.num_requested == 40
    assert result.passed


def test_refused_allocation_is_an_error():
    with pytest.raises(RuntimeError):
        run_competition(_Refusing(PagePool()), num_ops=10, prob_oversized=0.0)


def test_leaked_pages_fail():
    pool = PagePool()
    result = run_competition(_Leaking(pool), pool, num_ops=10, prob_oversized=0.0)
    assert not result.passed
    assert result.final_stats.num_in_use == result.allocations


def test_max_size_must_allow_nonzero_sizes():
    with pytest.raises(ValueError):
        run_competition(DummyAllocator(PagePool()), max_size=1)


def test_main_prints_pass(capsys):
    code = main(["-a", "p2fl", "--ops", "100"])
    out = capsys.readouterr().out
    assert code == 0
    assert "Freeing all memory now" in out
    assert out.rstrip().endswith("Test: PASS")