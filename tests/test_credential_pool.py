import asyncio

import pytest

from ai_grader.config import key_fingerprint
from ai_grader.services.credential_pool import FAILURE, RATE_LIMITED, SUCCESS, CredentialPool


async def test_acquire_prefers_least_recently_used(make_pool, clock):
    pool = await make_pool(api_keys=["k1", "k2", "k3"])

    order = []
    for _ in range(4):
        lease = await pool.acquire()
        order.append(lease.id)
        await pool.release(lease, SUCCESS)
        clock.advance(1)

    assert order == [0, 1, 2, 0]


async def test_acquire_reserves_the_credential(make_pool):
    pool = await make_pool(api_keys=["only-key"])

    lease = await pool.acquire()
    assert lease is not None
    assert lease.api_key == "only-key"
    assert lease.label == "key-1"
    assert await pool.acquire() is None

    await pool.release(lease, SUCCESS)
    assert await pool.acquire() is not None


async def test_concurrent_acquires_never_double_assign(make_pool):
    pool = await make_pool(api_keys=["k1", "k2", "k3"])

    leases = await asyncio.gather(*(pool.acquire() for _ in range(5)))

    granted = [lease.id for lease in leases if lease is not None]
    assert len(granted) == 3
    assert sorted(granted) == [0, 1, 2]


async def test_rolling_window_caps_requests(make_pool, clock):
    pool = await make_pool(api_keys=["k1"], rpm_limit=3, window_seconds=60)

    for _ in range(3):
        lease = await pool.acquire()
        assert lease is not None
        await pool.release(lease, SUCCESS)
        clock.advance(10)

    # t=30: three acquisitions at t=0, 10 and 20 are still in the window
    assert await pool.acquire() is None

    # t=61: the t=0 acquisition has rolled out
    clock.advance(31)
    lease = await pool.acquire()
    assert lease is not None
    await pool.release(lease, SUCCESS)

    # t=62: window holds t=10, 20 and 61 again
    clock.advance(1)
    assert await pool.acquire() is None


async def test_failed_calls_still_count_against_the_window(make_pool):
    pool = await make_pool(api_keys=["k1"], rpm_limit=2)

    for _ in range(2):
        lease = await pool.acquire()
        await pool.release(lease, FAILURE)

    assert await pool.acquire() is None
    stats = await pool.stats()
    assert stats[0]["request_count"] == 2
    assert stats[0]["penalty_count"] == 0
    assert stats[0]["backoff_seconds_remaining"] == 0


def test_backoff_doubles_and_caps():
    pool = CredentialPool(
        None, ["k1"], backoff_base_seconds=15, backoff_max_seconds=300,
    )

    assert pool.backoff_seconds(0) == 0
    assert [pool.backoff_seconds(p) for p in (1, 2, 3, 4, 5)] == [15, 30, 60, 120, 240]
    assert pool.backoff_seconds(6) == 300
    assert pool.backoff_seconds(20) == 300


async def test_rate_limit_puts_credential_in_backoff(make_pool, clock):
    pool = await make_pool(api_keys=["k1"], backoff_base_seconds=15, backoff_max_seconds=300)

    lease = await pool.acquire()
    await pool.release(lease, RATE_LIMITED)

    stats = await pool.stats()
    assert stats[0]["penalty_count"] == 1
    assert stats[0]["backoff_seconds_remaining"] == 15
    assert stats[0]["in_flight"] == 0
    assert await pool.acquire() is None

    clock.advance(16)
    lease = await pool.acquire()
    assert lease is not None
    await pool.release(lease, RATE_LIMITED)
    assert (await pool.stats())[0]["backoff_seconds_remaining"] == 30


async def test_success_clears_backoff(make_pool, clock):
    pool = await make_pool(api_keys=["k1"])

    lease = await pool.acquire()
    await pool.release(lease, RATE_LIMITED)
    clock.advance(20)
    lease = await pool.acquire()
    await pool.release(lease, SUCCESS)

    stats = await pool.stats()
    assert stats[0]["backoff_seconds_remaining"] == 0
    assert stats[0]["penalty_count"] == 1


async def test_backed_off_credential_is_skipped(make_pool):
    pool = await make_pool(api_keys=["k1", "k2"])

    first = await pool.acquire()
    await pool.release(first, RATE_LIMITED)

    lease = await pool.acquire()
    assert lease.id != first.id


async def test_abandoned_lease_expires(make_pool, clock):
    pool = await make_pool(api_keys=["k1"], lease_seconds=120)

    assert await pool.acquire() is not None
    assert await pool.acquire() is None

    clock.advance(121)
    assert await pool.acquire() is not None


async def test_stats_do_not_modify_counters(make_pool, clock):
    pool = await make_pool(api_keys=["k1", "k2"], rpm_limit=4)
    lease = await pool.acquire()
    await pool.release(lease, SUCCESS)

    before = await pool.stats()
    clock.advance(5)
    await pool.stats()
    after = await pool.stats()

    assert [s["request_count"] for s in after] == [s["request_count"] for s in before]
    assert after[0]["request_count"] == 1
    assert after[0]["utilization_percent"] == 25
    assert after[0]["max_per_window"] == 4
    assert after[0]["key_fingerprint"] == key_fingerprint("k1")
    assert after[1]["request_count"] == 0


async def test_release_rejects_unknown_outcome(make_pool):
    pool = await make_pool(api_keys=["k1"])
    lease = await pool.acquire()

    with pytest.raises(ValueError):
        await pool.release(lease, "maybe")


async def test_empty_pool_never_grants(make_pool):
    pool = await make_pool(api_keys=[])

    assert pool.size == 0
    assert pool.max_concurrency == 0
    assert await pool.acquire() is None
    assert await pool.stats() == []


async def test_resync_with_rotated_key_resets_counters(make_pool):
    pool = await make_pool(api_keys=["old-key"])
    lease = await pool.acquire()
    await pool.release(lease, RATE_LIMITED)

    rotated = await make_pool(api_keys=["new-key"])
    stats = await rotated.stats()

    assert stats[0]["key_fingerprint"] == key_fingerprint("new-key")
    assert stats[0]["request_count"] == 0
    assert stats[0]["penalty_count"] == 0
    assert stats[0]["backoff_seconds_remaining"] == 0


async def test_late_release_of_expired_lease_keeps_newer_reservation(make_pool, clock):
    pool = await make_pool(api_keys=["k1"], lease_seconds=120)
    stale = await pool.acquire()

    clock.advance(121)
    current = await pool.acquire()
    assert current is not None

    await pool.release(stale, SUCCESS)

    assert (await pool.stats())[0]["in_flight"] == 1
    assert await pool.acquire() is None

    await pool.release(current, SUCCESS)
    assert (await pool.stats())[0]["in_flight"] == 0
    assert await pool.acquire() is not None


async def test_release_of_expired_but_unreplaced_lease_frees_credential(make_pool, clock):
    pool = await make_pool(api_keys=["k1"], lease_seconds=120)
    lease = await pool.acquire()

    clock.advance(121)
    await pool.release(lease, FAILURE)

    assert (await pool.stats())[0]["in_flight"] == 0
    assert await pool.acquire() is not None
