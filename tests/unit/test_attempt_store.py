from __future__ import annotations

from fixgate.attempts.store import MAX_ATTEMPTS, AttemptStore, cooldown_hours
from fixgate.storage.json_doc import InMemoryDocument, JsonFileDocument


FP = "TypeError:src/a.ts:abc123"


def test_three_failures_exhaust_fingerprint(clock) -> None:
    store = AttemptStore(InMemoryDocument(), now=clock)
    for _ in range(3):
        store.record_attempt(FP, False)
    state = store.get_state(FP)
    assert state.exhausted is True
    assert store.can_attempt(FP) is False

    # Still exhausted long after every cooldown elapsed.
    clock.advance(days=30)
    assert store.can_attempt(FP) is False


def test_success_resets_counter(clock) -> None:
    store = AttemptStore(InMemoryDocument(), now=clock)
    store.record_attempt(FP, False)
    store.record_attempt(FP, False)
    state = store.record_attempt(FP, True)
    assert state.attempts == 0
    assert state.cooldown_until is None
    assert state.exhausted is False
    assert len(state.history) == 3
    assert store.can_attempt(FP) is True


def test_cooldown_blocks_until_elapsed(clock) -> None:
    store = AttemptStore(InMemoryDocument(), now=clock)
    state = store.record_attempt(FP, False)
    assert state.cooldown_until is not None
    assert store.can_attempt(FP) is False
    clock.advance(hours=23, minutes=59)
    assert store.can_attempt(FP) is False
    clock.advance(minutes=1)
    assert store.can_attempt(FP) is True


def test_cooldown_growth_is_monotonic_and_bounded() -> None:
    values = [cooldown_hours(n) for n in range(1, 8)]
    assert values == sorted(values)
    assert values[0] == 24
    assert max(values) == 24 * 2 ** (MAX_ATTEMPTS - 1)


def test_ceiling_without_flag_is_made_sticky(clock) -> None:
    doc = InMemoryDocument([{"fingerprint": FP, "attempts": 3, "exhausted": False, "history": []}])
    store = AttemptStore(doc, now=clock)
    assert store.can_attempt(FP) is False
    assert doc.data[0]["exhausted"] is True


def test_persists_to_json_file(tmp_path, clock) -> None:
    path = tmp_path / "state" / "attempt-store.json"
    AttemptStore(JsonFileDocument(str(path)), now=clock).record_attempt(FP, False)
    again = AttemptStore(JsonFileDocument(str(path)), now=clock)
    assert again.get_state(FP).attempts == 1
