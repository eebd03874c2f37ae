"""
Gift chain matching.

Participants are shuffled and linked into a ring: each one gifts the next,
the last gifts the first. That is always a single cycle covering everyone,
so nobody can draw themselves once there are at least two people.

The engine talks to its storage only through ParticipantStore/ChainStore so
it can run against the SQL stores (see services/stores.py) or in-memory fakes.
"""
from __future__ import annotations

import logging
import random
import threading
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from typing import Callable, ContextManager, Iterator, Protocol, Sequence

from .lifecycle import ACTIVE, MATCHABLE, MATCHED, normalize_status

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 10


class MatchingError(RuntimeError):
    pass


class ChainNotFound(MatchingError):
    def __init__(self, chain_id: str):
        super().__init__(f"Chain {chain_id} not found")
        self.chain_id = chain_id


class InsufficientParticipants(MatchingError):
    def __init__(self, count: int):
        super().__init__(f"Not enough participants for matching (minimum 2, got {count})")
        self.count = count


NotEnoughParticipants = InsufficientParticipants


class AssignmentFailed(MatchingError):
    """Retry budget exhausted. The ring construction should make this unreachable."""

    def __init__(self, chain_id: str | None, attempts: int):
        super().__init__(f"Failed to create valid assignments after {attempts} attempts")
        self.chain_id = chain_id
        self.attempts = attempts


class PersistenceFailure(MatchingError):
    def __init__(self, chain_id: str, written: list[int], failed: int | None, stage: str):
        if stage == "assignment":
            msg = f"Failed to save assignment for fid {failed} ({len(written)} saved before the failure)"
        else:
            msg = "Failed to update chain status after saving assignments"
        super().__init__(msg)
        self.chain_id = chain_id
        self.written = written
        self.failed = failed
        self.stage = stage
        self.compensated = False


class MatchingAlreadyInProgress(MatchingError):
    def __init__(self, chain_id: str):
        super().__init__(f"Matching is already running for chain {chain_id}")
        self.chain_id = chain_id


class MatchingAlreadyComplete(MatchingError):
    def __init__(self, chain_id: str, status: str):
        super().__init__(f"Chain {chain_id} has already been matched (status: {status})")
        self.chain_id = chain_id
        self.status = status


@dataclass(frozen=True)
class ChainRecord:
    id: str
    status: str
    min_participants: int
    max_participants: int
    join_deadline: object = None
    reveal_date: object = None


@dataclass(frozen=True)
class ParticipantRecord:
    fid: int
    assigned_recipient_fid: int | None
    has_sent_gift: bool


class ParticipantStore(Protocol):
    def list_participants(self, chain_id: str) -> list[int]: ...

    def get_participant(self, chain_id: str, fid: int) -> ParticipantRecord | None: ...

    def set_assigned_recipient(self, chain_id: str, fid: int, recipient_fid: int | None) -> bool | None: ...


class ChainStore(Protocol):
    def get_chain(self, chain_id: str) -> ChainRecord | None: ...

    def set_chain_status(self, chain_id: str, status: str) -> None: ...

    def set_chain_status_if(self, chain_id: str, expected: str, status: str) -> bool: ...


@dataclass
class MatchingResult:
    chain_id: str
    assignments: dict[int, int]
    attempts: int


class ChainLocks:
    """Per-chain non-blocking locks; one registry is shared per application."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # Only chains being matched right now; released ids are dropped.
        self._held: set[str] = set()

    def __contains__(self, chain_id: str) -> bool:
        with self._guard:
            return chain_id in self._held

    def __len__(self) -> int:
        with self._guard:
            return len(self._held)

    @contextmanager
    def hold(self, chain_id: str) -> Iterator[None]:
        with self._guard:
            if chain_id in self._held:
                raise MatchingAlreadyInProgress(chain_id)
            self._held.add(chain_id)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(chain_id)


def compute_assignment(participants: Sequence[int], rng=None) -> dict[int, int]:
    if len(participants) < 2:
        raise InsufficientParticipants(len(participants))

    order = list(participants)
    (rng or random).shuffle(order)

    n = len(order)
    return {order[i]: order[(i + 1) % n] for i in range(n)}


def validate_assignment(mapping: dict[int, int]) -> bool:
    return all(giver != receiver for giver, receiver in mapping.items())


class MatchingEngine:
    def __init__(
        self,
        participants: ParticipantStore,
        chains: ChainStore,
        *,
        transaction: Callable[[], ContextManager] = nullcontext,
        locks: ChainLocks | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        rng=None,
    ):
        self.participants = participants
        self.chains = chains
        self.transaction = transaction
        self.locks = locks if locks is not None else ChainLocks()
        self.max_attempts = max_attempts
        self.rng = rng

    def run_matching(self, chain_id: str) -> MatchingResult:
        with self.locks.hold(chain_id):
            chain = self.chains.get_chain(chain_id)
            if chain is None:
                raise ChainNotFound(chain_id)

            status = normalize_status(chain.status)
            if status not in MATCHABLE:
                logger.warning("Refusing to re-match chain %s in status %s", chain_id, status)
                raise MatchingAlreadyComplete(chain_id, status)

            fids = list(self.participants.list_participants(chain_id))
            if len(fids) < 2:
                raise InsufficientParticipants(len(fids))

            assignments, attempts = self._assign(chain_id, fids)

            with self.transaction():
                self._persist(chain_id, fids, assignments, expected=status)

        logger.info("Matched chain %s: %d participants in %d attempt(s)", chain_id, len(fids), attempts)
        return MatchingResult(chain_id=chain_id, assignments=assignments, attempts=attempts)

    def _assign(self, chain_id: str, fids: list[int]) -> tuple[dict[int, int], int]:
        for attempt in range(1, self.max_attempts + 1):
            mapping = compute_assignment(fids, self.rng)
            if validate_assignment(mapping):
                return mapping, attempt
            logger.warning("Attempt %d for chain %s produced a self-assignment", attempt, chain_id)

        logger.error("Assignment retry budget exhausted for chain %s after %d attempts", chain_id, self.max_attempts)
        raise AssignmentFailed(chain_id, self.max_attempts)

    def _persist(self, chain_id: str, fids: list[int], assignments: dict[int, int], expected: str) -> None:
        written: list[int] = []
        try:
            for giver in fids:
                try:
                    if self.participants.set_assigned_recipient(chain_id, giver, assignments[giver]) is False:
                        raise LookupError(f"participant {giver} not found in chain {chain_id}")
                except Exception as exc:
                    logger.error("Saving assignment for fid %s in chain %s failed: %s", giver, chain_id, exc)
                    raise PersistenceFailure(chain_id, list(written), giver, "assignment") from exc
                written.append(giver)

            try:
                swapped = self.chains.set_chain_status_if(chain_id, expected, ACTIVE)
            except Exception as exc:
                logger.error("Activating chain %s failed: %s", chain_id, exc)
                raise PersistenceFailure(chain_id, list(written), None, "chain_status") from exc

            if not swapped:
                current = self.chains.get_chain(chain_id)
                current_status = normalize_status(current.status) if current else expected
                logger.warning("Chain %s left %s while matching (now %s)", chain_id, expected, current_status)
                if current_status in MATCHED:
                    raise MatchingAlreadyComplete(chain_id, current_status)
                raise MatchingAlreadyInProgress(chain_id)
        except MatchingError as err:
            compensated = self._compensate(chain_id, written)
            if isinstance(err, PersistenceFailure):
                err.compensated = compensated
            raise

    def _compensate(self, chain_id: str, written: list[int]) -> bool:
        ok = True
        for giver in reversed(written):
            try:
                self.participants.set_assigned_recipient(chain_id, giver, None)
            except Exception:
                logger.exception("Could not clear assignment for fid %s in chain %s", giver, chain_id)
                ok = False
        if written:
            logger.warning("Cleared %d partial assignment(s) in chain %s", len(written), chain_id)
        return ok
