"""
Execution Store
===============
In-memory keyed storage of Execution records and their test case results.

Contract (what the reconciliation loop and the service layer rely on):
    - create() assigns a fresh integer id; ids are never reused
    - get() raises RecordNotFound for unknown ids
    - list_all() returns records in creation order
    - save() replaces one record atomically
    - every read returns a deep copy, so callers never share mutable state
      with the store or with each other
    - lock(id) hands out one asyncio.Lock per record; holders serialise the
      read-modify-write of that record

Persistence:
    - Records live for the lifetime of the process only
    - Retention / deletion is not handled here
"""
import asyncio
import itertools
import logging
from typing import Dict, List, Optional

from pipeline_tracker.core.errors import InvalidTransition, RecordNotFound
from pipeline_tracker.models.execution import Execution, ExecutionStatus
from pipeline_tracker.models.test_result import ExecutionTestCase

logger = logging.getLogger(__name__)


class ExecutionStore:
    """
    Single source of truth for Execution records.

    Usage:
        store = ExecutionStore()
        record = await store.create(Execution(student_name="Alice", repository_url=url))
        async with store.lock(record.id):
            current = await store.get(record.id)
            current.current_stage = "BUILD"
            await store.save(current)
    """

    def __init__(self) -> None:
        self._records: Dict[int, Execution] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._test_cases: Dict[int, List[ExecutionTestCase]] = {}
        self._ids = itertools.count(1)
        self._case_ids = itertools.count(1)

    async def create(self, execution: Execution) -> Execution:
        if execution.id is not None:
            raise ValueError("New executions must not carry an id")
        record = execution.model_copy(deep=True)
        record.id = next(self._ids)
        self._records[record.id] = record
        logger.debug("Stored new execution %d", record.id)
        return record.model_copy(deep=True)

    async def get(self, execution_id: int) -> Execution:
        record = self._records.get(execution_id)
        if record is None:
            raise RecordNotFound(execution_id)
        return record.model_copy(deep=True)

    async def list_all(self) -> List[Execution]:
        return [record.model_copy(deep=True) for record in self._records.values()]

    async def list_by(
        self,
        *,
        student_name: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[Execution]:
        results = []
        for record in self._records.values():
            if student_name is not None and record.student_name != student_name:
                continue
            if status is not None and record.status != status:
                continue
            results.append(record.model_copy(deep=True))
        return results

    async def save(self, execution: Execution) -> Execution:
        if execution.id is None or execution.id not in self._records:
            raise RecordNotFound(execution.id)

        existing = self._records[execution.id]
        if existing.build_number is not None and execution.build_number != existing.build_number:
            raise ValueError(f"build_number of execution {execution.id} is immutable")
        if existing.is_terminal and execution.status != existing.status:
            raise InvalidTransition(existing.status, execution.status, "terminal status is final")

        record = execution.model_copy(deep=True)
        self._records[record.id] = record
        return record.model_copy(deep=True)

    def lock(self, execution_id: int) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[execution_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Test case results
    # ------------------------------------------------------------------
    async def add_test_results(
        self, execution_id: int, cases: List[ExecutionTestCase]
    ) -> List[ExecutionTestCase]:
        if execution_id not in self._records:
            raise RecordNotFound(execution_id)
        stored = []
        for case in cases:
            record = case.model_copy(deep=True)
            record.id = next(self._case_ids)
            record.execution_id = execution_id
            stored.append(record)
        self._test_cases.setdefault(execution_id, []).extend(stored)
        return [case.model_copy(deep=True) for case in stored]

    async def list_test_results(self, execution_id: int) -> List[ExecutionTestCase]:
        if execution_id not in self._records:
            raise RecordNotFound(execution_id)
        return [case.model_copy(deep=True) for case in self._test_cases.get(execution_id, [])]

    def __len__(self) -> int:
        return len(self._records)
