from __future__ import annotations

import logging

import pytest

from chat_realtime.application.policies.retry import RetryPolicy, reconnect_policy, send_retry_policy
from chat_realtime.application.ports.clock import call_every
from chat_realtime.application.store import Store


def test_store_notifies_once_per_change():
    store: Store[int] = Store(0)
    seen: list[int] = []
    store.subscribe(seen.append)

    store.update(lambda s: s + 1)
    store.update(lambda s: s)

    assert seen == [1]
    assert store.state == 1


def test_store_unsubscribe():
    store: Store[int] = Store(0)
    seen: list[int] = []
    unsubscribe = store.subscribe(seen.append)
    unsubscribe()
    store.update(lambda s: s + 1)
    assert seen == []


def test_failing_listener_does_not_block_others(caplog):
    store: Store[int] = Store(0)
    seen: list[int] = []

    def _boom(_: int) -> None:
        raise RuntimeError("listener bug")

    store.subscribe(_boom)
    store.subscribe(seen.append)
    with caplog.at_level(logging.ERROR):
        store.update(lambda s: s + 1)

    assert seen == [1]
    assert "Store listener failed" in caplog.text


def test_reconnect_policy_backs_off_to_cap():
    policy = reconnect_policy(attempts=5, delay=1.0, max_delay=5.0)
    assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert policy.allows(5)
    assert not policy.allows(6)


def test_send_retry_policy_is_one_shot():
    policy = send_retry_policy(1.5)
    assert policy.allows(1)
    assert not policy.allows(2)
    assert policy.delay(1) == 1.5


@pytest.mark.parametrize("attempt", [0, 1])
def test_first_delay_is_base(attempt):
    assert RetryPolicy(max_attempts=3, base_delay=0.5).delay(attempt) == 0.5


def test_call_every_repeats_until_cancelled(scheduler):
    ticks: list[float] = []
    timer = call_every(scheduler, 1.0, lambda: ticks.append(scheduler.now().timestamp()))

    scheduler.advance(3.5)
    assert len(ticks) == 3

    timer.cancel()
    scheduler.advance(10)
    assert len(ticks) == 3
    assert scheduler.pending == 0
