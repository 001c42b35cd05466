"""
Assignment engine for randomization components

Assigns a participant to one of a set of conditions for a state key:
- random: one seeded draw per participant
- balanced_random: least-assigned condition, ties broken by a seeded draw
- block: blocks of len(conditions) assignments, each an independently
  shuffled permutation of all conditions

Assignments are write-once per (scope_key, state_key). The check-and-write
runs inside a keyed lock on that pair; strategies sharing balance state
additionally hold the balance key's lock while they read, choose and
update it.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Union
import logging

from flowlab.core.errors import AssignmentConfigError
from flowlab.models.flow import AssignmentStrategy
from flowlab.models.session import AssignmentRecord, AssignmentResult
from flowlab.services.assignment_store import (
    AssignmentStore,
    KeyedLock,
    LocalKeyedLock,
    MemoryAssignmentStore,
)
from flowlab.services.seeding import SeedScope, derive_seed, pick_index, seeded_random, shuffled

logger = logging.getLogger(__name__)


@dataclass
class RandomizationContext:
    """Everything an assignment needs, passed explicitly instead of held globally"""
    base_seed: str
    store: AssignmentStore = field(default_factory=MemoryAssignmentStore)
    locks: KeyedLock = field(default_factory=LocalKeyedLock)


class AssignmentEngine:
    """Write-once condition assignment over a RandomizationContext"""

    BALANCED_STRATEGIES = (AssignmentStrategy.BALANCED_RANDOM, AssignmentStrategy.BLOCK)

    def __init__(self, context: RandomizationContext):
        self.context = context

    async def assign(
        self,
        scope_key: str,
        state_key: str,
        conditions: List[str],
        strategy: Union[AssignmentStrategy, str],
        balance_key: Optional[str] = None,
    ) -> AssignmentResult:
        """
        Assign a condition, or return the one already assigned.

        Args:
            scope_key: Session or participant the assignment belongs to
            state_key: user_state key the condition is written to
            conditions: Candidate conditions, in authoring order
            strategy: random, balanced_random or block
            balance_key: Pool shared by balanced strategies (defaults to state_key)

        Raises:
            AssignmentConfigError: empty conditions or unknown strategy
        """
        strategy = self._resolve_strategy(strategy)
        if not conditions:
            raise AssignmentConfigError(f"No conditions to assign for state key '{state_key}'")
        conditions = [str(c) for c in conditions]
        balance_key = balance_key or state_key

        store = self.context.store
        locks = self.context.locks

        async with locks.hold(f"record:{scope_key}:{state_key}"):
            existing = await store.get(scope_key, state_key)
            if existing is not None:
                return AssignmentResult(condition=existing.condition, existing=True)

            if strategy in self.BALANCED_STRATEGIES:
                async with locks.hold(f"balance:{balance_key}"):
                    condition = await self._choose(strategy, scope_key, state_key, conditions, balance_key)
                    record, created = await self._store_record(
                        scope_key, state_key, condition, strategy, balance_key
                    )
                    if created:
                        await self._record_balance(strategy, balance_key, condition)
            else:
                condition = await self._choose(strategy, scope_key, state_key, conditions, balance_key)
                record, created = await self._store_record(
                    scope_key, state_key, condition, strategy, balance_key
                )

        if not created:
            return AssignmentResult(condition=record.condition, existing=True)

        logger.info(
            f"Assigned {scope_key} to '{record.condition}' for '{state_key}' "
            f"({strategy.value}, pool {balance_key})"
        )
        return AssignmentResult(condition=record.condition, existing=False)

    @staticmethod
    def _resolve_strategy(strategy: Union[AssignmentStrategy, str]) -> AssignmentStrategy:
        try:
            return AssignmentStrategy(strategy)
        except ValueError:
            raise AssignmentConfigError(f"Unknown assignment strategy: {strategy!r}")

    async def _choose(
        self,
        strategy: AssignmentStrategy,
        scope_key: str,
        state_key: str,
        conditions: List[str],
        balance_key: str,
    ) -> str:
        if strategy == AssignmentStrategy.RANDOM:
            rand = self._participant_random(scope_key, state_key)
            return conditions[pick_index(rand, len(conditions))]

        if strategy == AssignmentStrategy.BALANCED_RANDOM:
            counts = await self.context.store.get_counts(balance_key, conditions)
            lowest = min(counts[c] for c in conditions)
            candidates = [c for c in conditions if counts[c] == lowest]
            rand = self._participant_random(scope_key, state_key)
            return candidates[pick_index(rand, len(candidates))]

        # Block: the permutation depends only on the block number, so every
        # replica derives the same order for the same block
        position = await self.context.store.get_position(balance_key)
        block, offset = divmod(position, len(conditions))
        block_seed = derive_seed(self.context.base_seed, SeedScope.EXPERIMENT, f"{balance_key}:block:{block}")
        return shuffled(conditions, seeded_random(block_seed))[offset]

    def _participant_random(self, scope_key: str, state_key: str):
        seed = derive_seed(self.context.base_seed, SeedScope.PARTICIPANT, f"{scope_key}:{state_key}")
        return seeded_random(seed)

    async def _store_record(
        self,
        scope_key: str,
        state_key: str,
        condition: str,
        strategy: AssignmentStrategy,
        balance_key: str,
    ):
        record = AssignmentRecord(
            scope_key=scope_key,
            state_key=state_key,
            condition=condition,
            strategy=strategy,
            balance_key=balance_key,
            assigned_at=datetime.now(timezone.utc),
        )
        return await self.context.store.insert_if_absent(record)

    async def _record_balance(self, strategy: AssignmentStrategy, balance_key: str, condition: str) -> None:
        if strategy == AssignmentStrategy.BALANCED_RANDOM:
            await self.context.store.increment_count(balance_key, condition)
        elif strategy == AssignmentStrategy.BLOCK:
            await self.context.store.advance_position(balance_key)
