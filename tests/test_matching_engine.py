import logging
import random
import threading
from contextlib import contextmanager

import pytest

from santachain.services import matching
from santachain.services.matching import (
    AssignmentFailed,
    ChainLocks,
    ChainNotFound,
    InsufficientParticipants,
    MatchingAlreadyComplete,
    MatchingAlreadyInProgress,
    MatchingEngine,
    PersistenceFailure,
)


@pytest.fixture
def engine(participant_store, chain_store):
    return MatchingEngine(participant_store, chain_store, rng=random.Random(99))


def test_three_participants_activate_chain(engine, participant_store, chain_store):
    chain_store.add("c1", status="matching")
    participant_store.add("c1", 1, 2, 3)

    result = engine.run_matching("c1")

    assert result.chain_id == "c1"
    assert result.attempts == 1
    assert result.assignments in ({1: 2, 2: 3, 3: 1}, {1: 3, 3: 2, 2: 1})
    assert participant_store.recipients("c1") == result.assignments
    assert chain_store.status("c1") == "active"


def test_two_participants(engine, participant_store, chain_store):
    chain_store.add("c2", status="matching")
    participant_store.add("c2", 1, 2)

    result = engine.run_matching("c2")

    assert result.assignments == {1: 2, 2: 1}
    assert chain_store.status("c2") == "active"


def test_open_chain_can_be_matched_directly(engine, participant_store, chain_store):
    chain_store.add("c3", status="open")
    participant_store.add("c3", 10, 20, 30, 40)

    engine.run_matching("c3")

    assert chain_store.status("c3") == "active"


@pytest.mark.parametrize("status", ["open", "matching"])
def test_single_participant_leaves_chain_untouched(engine, participant_store, chain_store, status):
    chain_store.add("c4", status=status)
    participant_store.add("c4", 1)

    with pytest.raises(InsufficientParticipants):
        engine.run_matching("c4")

    assert chain_store.status("c4") == status
    assert participant_store.recipients("c4") == {1: None}


def test_missing_chain(engine):
    with pytest.raises(ChainNotFound):
        engine.run_matching("nope")


def test_partial_write_failure_reports_written_and_rolls_back(engine, participant_store, chain_store):
    chain_store.add("c5", status="matching")
    participant_store.add("c5", 1, 2, 3, 4, 5)
    participant_store.fail_on_write = 3

    with pytest.raises(PersistenceFailure) as excinfo:
        engine.run_matching("c5")

    err = excinfo.value
    assert err.written == [1, 2]
    assert err.failed == 3
    assert err.stage == "assignment"
    assert err.compensated is True
    assert chain_store.status("c5") == "matching"
    assert all(r is None for r in participant_store.recipients("c5").values())


def test_chain_status_failure_is_a_persistence_failure(engine, participant_store, chain_store):
    chain_store.add("c6", status="matching")
    participant_store.add("c6", 1, 2, 3)
    chain_store.fail_status_write = True

    with pytest.raises(PersistenceFailure) as excinfo:
        engine.run_matching("c6")

    assert excinfo.value.stage == "chain_status"
    assert excinfo.value.written == [1, 2, 3]
    assert excinfo.value.failed is None
    assert chain_store.status("c6") == "matching"
    assert all(r is None for r in participant_store.recipients("c6").values())


def test_second_run_is_rejected_and_keeps_first_assignment(engine, participant_store, chain_store):
    chain_store.add("c7", status="matching")
    participant_store.add("c7", 1, 2, 3, 4, 5, 6)

    first = engine.run_matching("c7")
    with pytest.raises(MatchingAlreadyComplete):
        engine.run_matching("c7")

    assert participant_store.recipients("c7") == first.assignments


@pytest.mark.parametrize("status", ["active", "revealing", "revealed", "completed"])
def test_matched_chains_are_never_reshuffled(engine, participant_store, chain_store, status):
    chain_store.add("c8", status=status)
    participant_store.add("c8", 1, 2, 3)

    with pytest.raises(MatchingAlreadyComplete):
        engine.run_matching("c8")
    assert participant_store.assignment_writes == 0


def test_concurrent_run_is_rejected(participant_store, chain_store):
    chain_store.add("c9", status="matching")
    participant_store.add("c9", 1, 2, 3, 4)
    engine = MatchingEngine(participant_store, chain_store, locks=ChainLocks())

    started = threading.Event()
    release = threading.Event()

    def block_first_write():
        if participant_store.assignment_writes == 1:
            started.set()
            assert release.wait(5)

    participant_store.before_write = block_first_write
    outcome = {}

    def run():
        outcome["result"] = engine.run_matching("c9")

    worker = threading.Thread(target=run)
    worker.start()
    assert started.wait(5)

    with pytest.raises(MatchingAlreadyInProgress):
        engine.run_matching("c9")

    release.set()
    worker.join(5)

    assert chain_store.status("c9") == "active"
    assert participant_store.recipients("c9") == outcome["result"].assignments


def test_lost_status_swap_clears_assignments(engine, participant_store, chain_store):
    chain_store.add("c10", status="matching")
    participant_store.add("c10", 1, 2, 3)
    chain_store.hijack_status = "active"

    with pytest.raises(MatchingAlreadyComplete):
        engine.run_matching("c10")

    assert all(r is None for r in participant_store.recipients("c10").values())


def test_retry_budget_exhausted(monkeypatch, engine, participant_store, chain_store, caplog):
    chain_store.add("c11", status="matching")
    participant_store.add("c11", 1, 2, 3)
    calls = []

    def broken(participants, rng=None):
        calls.append(1)
        return {p: p for p in participants}

    monkeypatch.setattr(matching, "compute_assignment", broken)

    with caplog.at_level(logging.ERROR, logger="santachain.services.matching"):
        with pytest.raises(AssignmentFailed) as excinfo:
            engine.run_matching("c11")

    assert excinfo.value.attempts == 10
    assert len(calls) == 10
    assert participant_store.assignment_writes == 0
    assert chain_store.status("c11") == "matching"
    assert any("exhausted" in r.getMessage() for r in caplog.records)


def test_retry_recovers_after_bad_attempt(monkeypatch, engine, participant_store, chain_store):
    chain_store.add("c12", status="matching")
    participant_store.add("c12", 1, 2)
    real = matching.compute_assignment
    attempts = iter([{1: 1, 2: 2}])

    def flaky(participants, rng=None):
        return next(attempts, None) or real(participants, rng)

    monkeypatch.setattr(matching, "compute_assignment", flaky)

    result = engine.run_matching("c12")
    assert result.attempts == 2
    assert result.assignments == {1: 2, 2: 1}


def test_writes_happen_inside_the_unit_of_work(participant_store, chain_store):
    chain_store.add("c13", status="matching")
    participant_store.add("c13", 1, 2, 3)
    events = []

    @contextmanager
    def recording_transaction():
        events.append("begin")
        try:
            yield
        except Exception:
            events.append("rollback")
            raise
        events.append("commit")

    engine = MatchingEngine(participant_store, chain_store, transaction=recording_transaction)
    engine.run_matching("c13")
    assert events == ["begin", "commit"]

    chain_store.add("c14", status="matching")
    participant_store.add("c14", 1, 2, 3)
    participant_store.fail_on_write = participant_store.assignment_writes + 2
    with pytest.raises(PersistenceFailure):
        engine.run_matching("c14")
    assert events == ["begin", "commit", "begin", "rollback"]


def test_lock_registry_forgets_released_chains():
    locks = ChainLocks()

    with locks.hold("c1"):
        assert "c1" in locks
        with pytest.raises(MatchingAlreadyInProgress):
            with locks.hold("c1"):
                pass
    assert "c1" not in locks

    with pytest.raises(RuntimeError):
        with locks.hold("c2"):
            raise RuntimeError("boom")
    assert len(locks) == 0


def test_engine_releases_chain_lock(engine, participant_store, chain_store):
    chain_store.add("c20")
    participant_store.add("c20", 1, 2, 3)

    engine.run_matching("c20")

    assert len(engine.locks) == 0
