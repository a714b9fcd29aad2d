"""Committed and proposed generations of the token ranges owned by a broker."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple
from uuid import UUID

logger = logging.getLogger(__name__)

# The lowest token in the ring; an end token equal to it means "until the end of the ring".
START_TOKEN = -(2**63)


class GenerationStatus(enum.Enum):
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    COMMITTED = "committed"

    def __str__(self) -> str:
        return self.value.capitalize()


class GenerationError(Exception):
    """Raised when a generation change is rejected."""


@dataclass(frozen=True)
class GenId:
    """Identifies a generation by its start token and version."""

    start: int
    version: int

    def __str__(self) -> str:
        return f"{self.start} v{self.version}"


@dataclass(frozen=True)
class Generation:
    """Ownership of a token range for a version: leader, followers and transaction."""

    start: int
    end: int
    version: int = 0
    timestamp: int = 0
    tx: Optional[UUID] = None
    tx_leader: int = 0
    status: GenerationStatus = GenerationStatus.PROPOSED
    leader: int = 0
    followers: Tuple[int, ...] = ()
    parents: Tuple[GenId, ...] = ()
    cluster_size: int = 0
    to_delete: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "followers", tuple(self.followers))
        object.__setattr__(self, "parents", tuple(self.parents))

    @property
    def id(self) -> GenId:
        return GenId(self.start, self.version)


@dataclass(frozen=True)
class GenerationRanges:
    """A generation together with range indices of it."""

    generation: Generation
    indices: Tuple[int, ...] = field(default=())

    def __post_init__(self) -> None:
        object.__setattr__(self, "indices", tuple(self.indices))


class LocalDb(Protocol):
    def latest_generations(self) -> Iterable[Generation]: ...

    def generation_info(self, start: int, version: int) -> Optional[Generation]: ...

    def generations_by_parent(self, gen: Generation) -> List[Generation]: ...

    def get_generations_by_token(self, token: int, cluster_size: int) -> List[Generation]: ...

    def commit_generation(self, gen1: Generation, gen2: Optional[Generation]) -> None: ...


class GenerationState:
    """Keeps the active generations (copy on write) and the proposed ones (lock protected)."""

    def __init__(self, local_db: LocalDb, consumer_ranges: int) -> None:
        self._local_db = local_db
        self._consumer_ranges = consumer_ranges
        self._lock = threading.Lock()
        self._proposed: Dict[int, Generation] = {}
        self._generations: Dict[int, Generation] = {}

    def load_generations(self) -> None:
        """Load all latest generations from local storage."""
        with self._lock:
            if self._generations:
                raise GenerationError("Generation map is not empty")
            self._generations = {gen.start: gen for gen in self._local_db.latest_generations()}

    def generation(self, token: int) -> Optional[Generation]:
        """Snapshot of the active generation starting at ``token``."""
        return self._generations.get(token)

    def generation_info(self, gen_id: GenId) -> Optional[Generation]:
        """A past committed generation, or None when not found."""
        return self._local_db.generation_info(gen_id.start, gen_id.version)

    def next_generation(self, gen_id: GenId) -> Optional[List[Generation]]:
        """The generations that followed an old one, or None when not found or still active."""
        gen = self.generation_info(gen_id)
        if gen is None:
            return None
        current = self.generation(gen_id.start)
        if current is not None and current.version == gen_id.version:
            return None
        return self._local_db.generations_by_parent(gen)

    def generation_proposed(self, token: int) -> Tuple[Optional[Generation], Optional[Generation]]:
        """Snapshot of the committed and proposed generations for ``token``."""
        with self._lock:
            proposed = self._proposed.get(token)
            committed = self.generation(token)
        return committed, proposed

    def is_token_in_range(self, token: int) -> bool:
        """Whether an active range contains ``token`` without starting at it."""
        return any(
            token > gen.start and (token < gen.end or gen.end == START_TOKEN)
            for gen in self._generations.values()
        )

    def has_token_history(self, token: int, cluster_size: int) -> bool:
        return bool(self._local_db.get_generations_by_token(token, cluster_size))

    def get_token_history(self, token: int, cluster_size: int) -> Optional[Generation]:
        """The last known committed generation for ``token`` from local storage."""
        result = self._local_db.get_generations_by_token(token, cluster_size)
        return result[0] if result else None

    def set_generation_proposed(
        self,
        gen: Generation,
        gen2: Optional[Generation] = None,
        expected_tx: Optional[UUID] = None,
    ) -> None:
        """Compare and set the proposed or accepted generation (or two accepted ones)."""
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
                raise GenerationError(
                    f"Existing proposed does not match: {current_tx} (expected {expected_tx})"
                )

            self._validate_committed(gen)

            if not gen.to_delete:
                logger.info(
                    "%s v%d with B%d as leader for range [%d, %d]",
                    gen.status, gen.version, gen.leader, gen.start, gen.end,
                )
            else:
                last_version = gen.parents[0].version if gen.parents else gen.version
                logger.info(
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
                    f"(was found {existing is not None})"
                )

        self._validate_committed(gen1)
        self._validate_committed(gen2)

        self._proposed[gen1.start] = gen1
        self._proposed[gen2.start] = gen2
        logger.info(
            "Accepted two generations: [%d, %d] v%d and [%d, %d]%s (B%d as tx leader)",
            gen1.start, gen1.end, gen1.version, gen2.start, gen2.end,
            " to delete" if gen2.to_delete else f" v{gen2.version}", gen2.tx_leader,
        )

    def set_as_committed(
        self, token1: int, token2: Optional[int], tx: UUID, origin: int
    ) -> None:
        """Commit the proposed generation(s) of the transaction ``tx``, storing the history."""
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
                    raise GenerationError(
                        f"Transaction does not match for token {token2} ({gen2.tx} != {tx})"
                    )
                gen2 = replace(gen2, status=GenerationStatus.COMMITTED)

            gen1 = replace(gen1, status=GenerationStatus.COMMITTED)
            logger.info(
                "Committing [%d, %d] v%d with B%d as leader (origin B%d)",
                gen1.start, gen1.end, gen1.version, gen1.leader, origin,
            )

            # A removed generation is not persisted
            gen2_for_db = gen2 if gen2 is not None and not gen2.to_delete else None

            # Store first so that storage failures don't affect local state
            self._local_db.commit_generation(gen1, gen2_for_db)
            self._copy_and_store(gen1, gen2)

            self._proposed.pop(token1, None)
            if token2 is not None:
                self._proposed.pop(token2, None)

    def repair_committed(self, gen: Generation) -> Generation:
        """Commit ``gen`` without checking proposed values; returns the committed generation."""
        if gen.to_delete:
            raise GenerationError("Repair generations to delete is not supported")
        with self._lock:
            committed = replace(gen, status=GenerationStatus.COMMITTED)
            logger.info(
                "Committing [%d, %d] v%d with B%d as leader as part of repair",
                committed.start, committed.end, committed.version, committed.leader,
            )
            self._local_db.commit_generation(committed, None)
            self._copy_and_store(committed, None)
            self._proposed.pop(committed.start, None)
        return committed

    def _copy_and_store(self, gen: Generation, gen2: Optional[Generation]) -> None:
        new_map = dict(self._generations)
        for g in (gen, gen2):
            if g is None:
                continue
            if g.to_delete:
                new_map.pop(g.start, None)
            else:
                new_map[g.start] = g
        self._generations = new_map

    def parent_ranges(self, gen: Generation, indices: Sequence[int]) -> List[GenerationRanges]:
        """Project token range indices of ``gen`` onto its parent generations."""
        if gen is None:
            raise ValueError("Generation can not be None when looking for parent ranges")
        if not gen.parents:
            return []

        if len(gen.parents) == 1:
            parent = self.generation_info(gen.parents[0])
            if parent is None:
                logger.error("Could not find generation info %s for reader projection", gen.parents[0])
                return []
            # Ranges are maintained
            return [GenerationRanges(parent, tuple(indices))]

        result: List[GenerationRanges] = []
        middle = self._consumer_ranges // 2
        for parent_id in gen.parents:
            parent = self.generation_info(parent_id)
            if parent is None:
                logger.error("Could not find generation info %s for reader projection", parent_id)
                continue
            for index in indices:
                if parent_id.start == gen.start:
                    if index >= middle:
                        continue
                    base = index * 2
                else:
                    if index < middle:
                        continue
                    base = (index - middle) * 2
                result.append(GenerationRanges(parent, (base, base + 1)))
        return result