"""
Pattern stores.

SqlPatternStore keeps learned patterns in the learned_patterns table so every
API process shares them. InMemoryPatternStore is the single-process variant
used in tests and local runs. Both hand out copies, so callers always read
a consistent snapshot.
"""

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aves.learning.patterns import PatternOutcome, PatternState
from aves.models.tables import LearnedPattern

logger = structlog.get_logger(__name__)

_STATE_FIELDS = [f.name for f in dataclasses.fields(PatternState)]

# Concurrent first writers for the same (species, feature) race on the
# unique constraint; the loser retries as an update.
_MAX_UPSERT_ATTEMPTS = 3


def _sort_key(state: PatternState):
    last = state.last_outcome_at.timestamp() if state.last_outcome_at else float("-inf")
    return (-state.confidence_multiplier, -last)


class PatternStore(ABC):
    """Storage for learned (species, feature) patterns."""

    @abstractmethod
    async def record_outcome(
        self, species: str, feature: str, outcome: PatternOutcome
    ) -> PatternState:
        """Apply one outcome atomically and return the updated state."""
        ...

    @abstractmethod
    async def get_recommendations(
        self, species: str, limit: Optional[int] = None
    ) -> list[PatternState]:
        """Patterns for a species, highest multiplier first, ties by recency."""
        ...

    @abstractmethod
    async def get_pattern(self, species: str, feature: str) -> Optional[PatternState]:
        ...

    @abstractmethod
    async def export(self) -> list[PatternState]:
        """Every stored pattern."""
        ...


class InMemoryPatternStore(PatternStore):

    def __init__(self):
        self._patterns: dict[tuple[str, str], PatternState] = {}
        self._lock = asyncio.Lock()

    async def record_outcome(self, species, feature, outcome):
        async with self._lock:
            state = self._patterns.get((species, feature))
            if state is None:
                state = PatternState(species=species, feature=feature)
            else:
                state = dataclasses.replace(state)
            state.apply(outcome)
            self._patterns[(species, feature)] = state
            return dataclasses.replace(state)

    async def get_recommendations(self, species, limit=None):
        async with self._lock:
            states = [
                dataclasses.replace(s)
                for (sp, _), s in self._patterns.items()
                if sp == species
            ]
        states.sort(key=_sort_key)
        return states[:limit] if limit is not None else states

    async def get_pattern(self, species, feature):
        async with self._lock:
            state = self._patterns.get((species, feature))
            return dataclasses.replace(state) if state else None

    async def export(self):
        async with self._lock:
            states = [dataclasses.replace(s) for s in self._patterns.values()]
        states.sort(key=lambda s: (s.species, s.feature))
        return states


class SqlPatternStore(PatternStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _to_state(row: LearnedPattern) -> PatternState:
        values = {name: getattr(row, name) for name in _STATE_FIELDS}
        values["rejection_categories"] = dict(row.rejection_categories or {})
        return PatternState(**values)

    @staticmethod
    def _write_state(row: LearnedPattern, state: PatternState) -> None:
        for name in _STATE_FIELDS:
            setattr(row, name, getattr(state, name))

    async def record_outcome(self, species, feature, outcome):
        for attempt in range(1, _MAX_UPSERT_ATTEMPTS + 1):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        result = await session.execute(
                            select(LearnedPattern)
                            .where(
                                LearnedPattern.species == species,
                                LearnedPattern.feature == feature,
                            )
                            .with_for_update()
                        )
                        row = result.scalar_one_or_none()
                        if row is None:
                            state = PatternState(species=species, feature=feature)
                            state.apply(outcome)
                            row = LearnedPattern()
                            self._write_state(row, state)
                            session.add(row)
                        else:
                            state = self._to_state(row)
                            state.apply(outcome)
                            self._write_state(row, state)
                return state
            except IntegrityError:
                if attempt == _MAX_UPSERT_ATTEMPTS:
                    raise
                logger.warning(
                    "pattern_upsert_conflict", species=species, feature=feature, attempt=attempt
                )

    async def get_recommendations(self, species, limit=None):
        query = (
            select(LearnedPattern)
            .where(LearnedPattern.species == species)
            .order_by(
                LearnedPattern.confidence_multiplier.desc(),
                LearnedPattern.last_outcome_at.desc().nulls_last(),
            )
        )
        if limit is not None:
            query = query.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [self._to_state(row) for row in result.scalars().all()]

    async def get_pattern(self, species, feature):
        async with self._session_factory() as session:
            result = await session.execute(
                select(LearnedPattern).where(
                    LearnedPattern.species == species,
                    LearnedPattern.feature == feature,
                )
            )
            row = result.scalar_one_or_none()
            return self._to_state(row) if row else None

    async def export(self):
        async with self._session_factory() as session:
            result = await session.execute(
                select(LearnedPattern).order_by(LearnedPattern.species, LearnedPattern.feature)
            )
            return [self._to_state(row) for row in result.scalars().all()]
