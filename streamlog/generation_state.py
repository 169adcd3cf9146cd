"""Committed and proposed generations of the token ranges owned by a broker."""

from __future__ import annotations

import enum
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from streamlog.models import GenId

log = logging.getLogger(__name__)

START_TOKEN = -(2**63)


class GenerationStatus(enum.Enum):
    CANCELLED = "Cancelled"
    PROPOSED = "Proposed"
    ACCEPTED = "Accepted"
    COMMITTED = "Committed"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Generation:
    """A version of the ownership of a token range."""

    start: int
    end: int = 0
    version: int = 0
    timestamp: int = 0
    leader: int = 0
    followers: Tuple[int, ...] = ()
    tx_leader: int = 0
    tx: Optional[uuid.UUID] = None
    status: GenerationStatus = GenerationStatus.CANCELLED
    to_delete: bool = False
    parents: Tuple[GenId, ...] = ()
    cluster_size: int = 0

    def id(self) -> GenId:
        return GenId(start=self.start, version=self.version)


@dataclass(frozen=True)
class GenerationRanges:
    """A generation and the range indices within it."""

    generation: Generation
    indices: Tuple[int, ...]


class GenerationError(Exception):
    """Raised when a generation change is not valid for the current state."""


class GenerationStore(ABC):
    """Local persistence of the generation history."""

    @abstractmethod
    def latest_generations(self) -> List[Generation]:
        """The latest committed generation of each token."""

    @abstractmethod
    def generation_info(self, start: int, version: int) -> Optional[Generation]:
        """A past committed generation, or None when not found."""

    @abstractmethod
    def generations_by_parent(self, gen: Generation) -> List[Generation]:
        """The generations that have ``gen`` as a parent."""

    @abstractmethod
    def get_generations_by_token(self, token: int, cluster_size: int) -> List[Generation]:
        """The committed history of a token, latest first."""

    @abstractmethod
    def commit_generation(self, gen1: Generation, gen2: Optional[Generation]) -> None:
        """Persists one or two committed generations."""


class GenerationState:
    """Tracks the active (committed) and proposed generations by start token.

    Committed generations are replaced as a whole on every change, so readers never
    need the lock.
    """

    def __init__(self, store: GenerationStore, consumer_ranges: int) -> None:
        self._store = store
        self._consumer_ranges = consumer_ranges
        self._lock = threading.Lock()
        self._proposed: Dict[int, Generation] = {}
        self._generations: Dict[int, Generation] = {}

    def load_generations(self) -> None:
        """Loads the latest committed generations from the store."""
        with self._lock:
            if self._generations:
                raise GenerationError("Generation map is not empty")
            self._generations = {gen.start: gen for gen in self._store.latest_generations()}

    def generation(self, token: int) -> Optional[Generation]:
        """The active generation starting at ``token``, if any."""
        return self._generations.get(token)

    @property
    def generations(self) -> Dict[int, Generation]:
        """A snapshot of the active generations by start token."""
        return dict(self._generations)

    def generation_info(self, gen_id: GenId) -> Optional[Generation]:
        return self._store.generation_info(gen_id.start, gen_id.version)

    def next_generation(self, gen_id: GenId) -> Optional[List[Generation]]:
        """The generations following a past one; None when not found or still active."""
        gen = self.generation_info(gen_id)
        if gen is None:
            return None
        current = self.generation(gen_id.start)
        if current is not None and current.version == gen_id.version:
            return None
        return self._store.generations_by_parent(gen)

    def generation_proposed(self, token: int) -> Tuple[Optional[Generation], Optional[Generation]]:
        """The committed and proposed generations of a token."""
        with self._lock:
            proposed = self._proposed.get(token)
            committed = self.generation(token)
        return committed, proposed

    def set_generation_proposed(
        self,
        gen: Generation,
        gen2: Optional[Generation] = None,
        expected_tx: Optional[uuid.UUID] = None,
    ) -> None:
        """Compares and sets the proposed or accepted generation (or two accepted ones)."""
        with self._lock:
            if gen2 is not None:
                self._accept_multiple(gen, gen2)
                return

            existing = self._proposed.get(gen.start)
            current_tx = existing.tx if existing is not None else None

            if existing is not None and expected_tx is None:
                raise GenerationError("Existing transaction is not nil")
            if existing is None and expected_tx is not None:
                raise GenerationError("Existing transaction is nil and expected not to be")
            if existing is not None and current_tx != expected_tx:
                raise GenerationError(f"Existing proposed does not match: {current_tx} (expected {expected_tx})")

            self._validate_committed(gen)

            if not gen.to_delete:
                log.info(
                    "%s v%d with B%d as leader for range [%d, %d]",
                    gen.status, gen.version, gen.leader, gen.start, gen.end,
                )
            else:
                last_version = gen.parents[0].version if gen.parents else 0
                log.info(
                    "%s delete of token range [%d, %d] with last known version v%d",
                    gen.status, gen.start, gen.end, last_version,
                )
            self._proposed[gen.start] = gen

    def _validate_committed(self, gen: Generation) -> None:
        committed = self.generation(gen.start)
        if committed is not None and gen.version <= committed.version:
            raise GenerationError(
                "Proposed version is not the next version of committed: "
                f"committed = {committed.version}, proposed = {gen.version}"
            )

    def _accept_multiple(self, gen1: Generation, gen2: Generation) -> None:
        if gen1.status is not GenerationStatus.ACCEPTED or gen2.status is not GenerationStatus.ACCEPTED:
            raise GenerationError("Multiple generations can not be proposed, only accepted")

        for number, gen in ((1, gen1), (2, gen2)):
            existing = self._proposed.get(gen.start)
            if existing is None or existing.tx != gen.tx:
                raise GenerationError(
                    f"Existing proposed for generation #{number} does not match: "
                    f"(was found {str(existing is not None).lower()})"
                )

        self._validate_committed(gen1)
        self._validate_committed(gen2)

        self._proposed[gen1.start] = gen1
        self._proposed[gen2.start] = gen2

        if not gen2.to_delete:
            log.info(
                "Accepted two generations: [%d, %d] v%d with B%d as leader and [%d, %d] v%d with B%d as leader "
                "(B%d as tx leader)",
                gen1.start, gen1.end, gen1.version, gen1.leader,
                gen2.start, gen2.end, gen2.version, gen2.leader, gen2.tx_leader,
            )
        else:
            log.info(
                "Accepted two generations: [%d, %d] v%d with B%d as leader and a generation to delete range "
                "[%d, %d] (B%d as tx leader)",
                gen1.start, gen1.end, gen1.version, gen1.leader, gen2.start, gen2.end, gen2.tx_leader,
            )

    def set_as_committed(self, token1: int, token2: Optional[int], tx: uuid.UUID, origin: int) -> None:
        """Commits the proposed generation(s) of the transaction, storing the history."""
        with self._lock:
            gen1 = self._proposed.get(token1)
            if gen1 is None:
                raise GenerationError(f"No proposed value found for token {token1}")
            if gen1.tx != tx:
                raise GenerationError("Transaction does not match")

            gen2: Optional[Generation] = None
            if token2 is not None:
                gen2 = self._proposed.get(token2)
                if gen2 is None:
                    raise GenerationError(f"No proposed value found for second token {token2}")
                if gen2.tx != tx:
                    raise GenerationError(f"Transaction does not match for token {token2} ({gen2.tx} != {tx})")

            gen1 = replace(gen1, status=GenerationStatus.COMMITTED)
            if gen2 is None:
                log.info(
                    "Committing [%d, %d] v%d with B%d as leader", gen1.start, gen1.end, gen1.version, gen1.leader
                )
            else:
                if not gen2.to_delete:
                    log.info(
                        "Committing both [%d, %d] v%d with B%d as leader and [%d, %d] v%d with B%d as leader",
                        gen1.start, gen1.end, gen1.version, gen1.leader,
                        gen2.start, gen2.end, gen2.version, gen2.leader,
                    )
                else:
                    log.info(
                        "Committing [%d, %d] v%d with B%d as leader for joined ranges",
                        gen1.start, gen1.end, gen1.version, gen1.leader,
                    )
                gen2 = replace(gen2, status=GenerationStatus.COMMITTED)

            # A removed generation is not persisted
            gen2_for_store = None if gen2 is not None and gen2.to_delete else gen2
            # Persist first so that store failures leave local state untouched
            self._store.commit_generation(gen1, gen2_for_store)

            self._copy_and_store(gen1, gen2)
            self._proposed.pop(token1, None)
            if token2 is not None:
                self._proposed.pop(token2, None)

    def repair_committed(self, gen: Generation) -> Generation:
        """Commits a generation without checking the proposed values; returns the committed one."""
        if gen.to_delete:
            raise ValueError("Repair generations to delete is not supported")
        with self._lock:
            committed = replace(gen, status=GenerationStatus.COMMITTED)
            self._store.commit_generation(committed, None)
            self._copy_and_store(committed, None)
            log.info(
                "Committed [%d, %d] v%d with B%d as leader as part of repair",
                committed.start, committed.end, committed.version, committed.leader,
            )
            self._proposed.pop(committed.start, None)
        return committed

    def _copy_and_store(self, gen: Generation, gen2: Optional[Generation]) -> None:
        new_map = dict(self._generations)
        for item in (gen, gen2):
            if item is None:
                continue
            if item.to_delete:
                new_map.pop(item.start, None)
            else:
                new_map[item.start] = item
        self._generations = new_map

    def is_token_in_range(self, token: int) -> bool:
        """Whether an active range contains the token without starting at it."""
        return any(
            token > gen.start and (token < gen.end or gen.end == START_TOKEN)
            for gen in self._generations.values()
        )

    def has_token_history(self, token: int, cluster_size: int) -> bool:
        return len(self._store.get_generations_by_token(token, cluster_size)) > 0

    def get_token_history(self, token: int, cluster_size: int) -> Optional[Generation]:
        """The last committed generation of the token from the store."""
        result = self._store.get_generations_by_token(token, cluster_size)
        return result[0] if result else None

    def parent_ranges(self, gen: Generation, indices: Sequence[int]) -> Optional[List[GenerationRanges]]:
        """Projects the ranges of a generation onto the ranges of its parents.

        Returns None when the generation has no parents.
        """
        if gen is None:
            raise ValueError("Generation can not be None when looking for parent ranges")
        if not gen.parents:
            return None

        indices = tuple(indices)
        if len(gen.parents) == 1:
            parent = self.generation_info(gen.parents[0])
            if parent is None:
                log.error("Could not find generation info %s for reader projection", gen.parents[0])
                return None
            return [GenerationRanges(generation=parent, indices=indices)]

        result: List[GenerationRanges] = []
        middle_index = self._consumer_ranges // 2
        for parent_id in gen.parents:
            parent = self.generation_info(parent_id)
            if parent is None:
                log.error("Could not find generation info %s for reader projection", parent_id)
                continue
            for index in indices:
                projected = _project(index, middle_index, parent_id.start == gen.start)
                if projected is not None:
                    result.append(GenerationRanges(generation=parent, indices=projected))
        return result


def _project(index: int, middle_index: int, same_token: bool) -> Optional[Tuple[int, int]]:
    if same_token:
        if index >= middle_index:
            return None
        return index * 2, index * 2 + 1
    if index < middle_index:
        return None
    base = (index - middle_index) * 2
    return base, base + 1


def _as_tuple(values: Iterable[int]) -> Tuple[int, ...]:
    return tuple(values)