from __future__ import annotations

import threading

import pytest

from netattach.src.workqueue import ExponentialBackoffRateLimiter, RateLimitingQueue

# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------


def test_backoff_doubles_per_failure_and_caps() -> None:
    limiter = ExponentialBackoffRateLimiter(base_delay=0.5, max_delay=3.0)

    delays = [limiter.when("ns/a") for _ in range(5)]

    assert delays == [0.5, 1.0, 2.0, 3.0, 3.0]
    assert limiter.num_requeues("ns/a") == 5


def test_backoff_is_tracked_per_item_and_reset_by_forget() -> None:
    limiter = ExponentialBackoffRateLimiter(base_delay=1.0, max_delay=100.0)
    limiter.when("ns/a")
    limiter.when("ns/a")

    assert limiter.when("ns/b") == 1.0

    limiter.forget("ns/a")
    assert limiter.num_requeues("ns/a") == 0
    assert limiter.when("ns/a") == 1.0


def test_backoff_with_huge_failure_count_returns_max() -> None:
    limiter = ExponentialBackoffRateLimiter(base_delay=0.005, max_delay=1000.0)
    for _ in range(200):
        delay = limiter.when("ns/a")

    assert delay == 1000.0


@pytest.mark.parametrize(("base", "maximum"), [(0, 1.0), (-1, 1.0), (2.0, 1.0)])
def test_rate_limiter_rejects_invalid_settings(base: float, maximum: float) -> None:
    with pytest.raises(ValueError):
        ExponentialBackoffRateLimiter(base_delay=base, max_delay=maximum)


# ---------------------------------------------------------------------------
# Queue semantics
# ---------------------------------------------------------------------------


def test_pending_keys_are_deduplicated() -> None:
    queue = RateLimitingQueue()

    queue.add("ns/a")
    queue.add("ns/a")
    queue.add("ns/b")

    assert len(queue) == 2


def test_keys_are_handed_out_in_fifo_order() -> None:
    queue = RateLimitingQueue()
    for key in ("ns/a", "ns/b", "ns/c"):
        queue.add(key)

    handed_out = [queue.get(timeout=0)[0] for _ in range(3)]

    assert handed_out == ["ns/a", "ns/b", "ns/c"]


def test_key_added_while_processing_is_requeued_on_done() -> None:
    queue = RateLimitingQueue()
    queue.add("ns/a")
    item, shutdown = queue.get(timeout=0)
    assert (item, shutdown) == ("ns/a", False)

    queue.add("ns/a")
    assert len(queue) == 0

    queue.done("ns/a")
    assert len(queue) == 1
    assert queue.get(timeout=0) == ("ns/a", False)


def test_done_without_readd_does_not_requeue() -> None:
    queue = RateLimitingQueue()
    queue.add("ns/a")
    queue.get(timeout=0)

    queue.done("ns/a")

    assert len(queue) == 0


def test_get_times_out_when_empty() -> None:
    queue = RateLimitingQueue()

    assert queue.get(timeout=0.01) == (None, False)


def test_shut_down_drains_then_reports_shutdown() -> None:
    queue = RateLimitingQueue()
    queue.add("ns/a")

    queue.shut_down()
    queue.add("ns/b")

    assert queue.shutting_down
    assert queue.get(timeout=0) == ("ns/a", False)
    assert queue.get(timeout=0) == (None, True)


def test_shut_down_wakes_blocked_getter() -> None:
    queue = RateLimitingQueue()
    results: list[tuple[str | None, bool]] = []

    getter = threading.Thread(target=lambda: results.append(queue.get()))
    getter.start()
    queue.shut_down()
    getter.join(timeout=2)

    assert not getter.is_alive()
    assert results == [(None, True)]


def test_add_after_delivers_once_delay_elapses() -> None:
    queue = RateLimitingQueue()

    queue.add_after("ns/a", 0.05)
    assert len(queue) == 0

    assert queue.get(timeout=2) == ("ns/a", False)


def test_add_after_with_zero_delay_adds_immediately() -> None:
    queue = RateLimitingQueue()

    queue.add_after("ns/a", 0)

    assert len(queue) == 1


def test_shut_down_cancels_pending_delayed_adds() -> None:
    queue = RateLimitingQueue()
    queue.add_after("ns/a", 10)

    queue.shut_down()

    assert queue.get(timeout=0) == (None, True)


def test_add_rate_limited_counts_requeues_until_forget() -> None:
    limiter = ExponentialBackoffRateLimiter(base_delay=0.001, max_delay=0.01)
    queue = RateLimitingQueue(rate_limiter=limiter)

    queue.add_rate_limited("ns/a")
    assert queue.get(timeout=2) == ("ns/a", False)
    queue.done("ns/a")
    queue.add_rate_limited("ns/a")

    assert queue.num_requeues("ns/a") == 2
    queue.forget("ns/a")
    assert queue.num_requeues("ns/a") == 0
    queue.shut_down()
