from conftest import FakeClock
from vf_bridge.callback_stash import CALLBACK_PREFIX, CallbackStash


def test_token_is_single_use_and_owner_bound():
    stash = CallbackStash(ttl_seconds=60)
    token = stash.put(7, "x" * 200)

    assert token.startswith(CALLBACK_PREFIX)
    assert len(token.encode("utf-8")) <= 64
    assert stash.take(token, 8) is None
    assert stash.take(token, 7) == "x" * 200
    assert stash.take(token, 7) is None


def test_expired_token_is_rejected():
    clock = FakeClock()
    stash = CallbackStash(ttl_seconds=60, clock=clock)
    token = stash.put(7, "payload")
    clock.advance(61)
    assert stash.take(token, 7) is None
    assert len(stash) == 0


def test_sweep_removes_only_expired():
    clock = FakeClock()
    stash = CallbackStash(ttl_seconds=60, clock=clock)
    stash.put(1, "old")
    clock.advance(30)
    fresh = stash.put(1, "new")
    clock.advance(40)

    assert stash.sweep() == 1
    assert len(stash) == 1
    assert stash.take(fresh, 1) == "new"


def test_unknown_token():
    assert CallbackStash(ttl_seconds=60).take("CB:nope", 1) is None
