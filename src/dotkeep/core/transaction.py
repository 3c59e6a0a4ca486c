"""Transactions: ordered reversible operations with rollback.

A transaction runs operations strictly in the order they were added. Each
successful operation is pushed onto an executed stack; if any operation
fails, the stack is undone in strict reverse order and the failure is
raised with the operation's description.

    tx = Transaction()
    tx.add(MoveFileOp(src, store_path))
    tx.add(CreateSymlinkOp(target=store_path, link=src))
    tx.add(AddRegistryEntryOp(registry, entry))
    tx.execute_all()   # rolls back and raises OperationFailed on failure
    tx.commit()

States: OPEN -> COMMITTED | ROLLED_BACK. Both are terminal.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from types import TracebackType
from typing import Any

import structlog

from dotkeep.core.errors import (
    CannotRollbackCommitted,
    OperationFailed,
    RollbackError,
    RollbackFailure,
    TransactionClosed,
)

logger = structlog.get_logger(__name__)


class Operation(ABC):
    """A unit of reversible work.

    Calling `undo()` after `do()` restores the prior observable filesystem
    state on a best-effort basis; some inverses are lossy (see
    `CreateDirOp`).
    """

    @abstractmethod
    def do(self) -> None:
        """Apply the operation."""

    @abstractmethod
    def undo(self) -> None:
        """Reverse the operation after a successful `do()`."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable description used in errors and logs."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.describe()!r})"


class CallableOperation(Operation):
    """Operation built from a forward and an inverse callable."""

    def __init__(
        self,
        forward: Callable[[], Any],
        inverse: Callable[[], Any],
        description: str,
    ) -> None:
        self._forward = forward
        self._inverse = inverse
        self._description = description

    def do(self) -> None:
        self._forward()

    def undo(self) -> None:
        self._inverse()

    def describe(self) -> str:
        return self._description


class TransactionState(str, Enum):
    """Lifecycle of a transaction."""

    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Transaction:
    """Sequence of operations that either all apply or are all undone.

    Two usage patterns are supported:

    1. Direct: call `execute(op)` for each operation as it is built.
    2. Planned: `add(op)` each operation, then `execute_all()`.

    Both push successful operations onto the same executed stack.
    """

    def __init__(self, name: str = "transaction", logger: Any = None) -> None:
        """Initialize an open transaction.

        Args:
            name: Label included in log events
            logger: Optional structlog logger instance
        """
        self.name = name
        self._logger = (logger or structlog.get_logger(__name__)).bind(transaction=name)
        self._planned: list[Operation] = []
        self._executed: list[Operation] = []
        self._state = TransactionState.OPEN

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def is_committed(self) -> bool:
        return self._state is TransactionState.COMMITTED

    @property
    def executed_count(self) -> int:
        return len(self._executed)

    @property
    def planned(self) -> tuple[Operation, ...]:
        return tuple(self._planned)

    def _require_open(self) -> None:
        if self._state is not TransactionState.OPEN:
            raise TransactionClosed(self._state.value)

    def add(self, op: Operation) -> Transaction:
        """Plan an operation for `execute_all()`."""
        self._require_open()
        self._planned.append(op)
        return self

    def execute(self, op: Operation) -> None:
        """Run one operation and register it for rollback.

        On failure every previously executed operation is undone before the
        error is raised.

        Raises:
            TransactionClosed: If the transaction is committed or rolled back
            OperationFailed: If the operation fails; chained to the original
                error and listing any inverse actions that also failed
        """
        self._require_open()

        try:
            op.do()
        except Exception as exc:
            description = op.describe()
            self._logger.warning(
                "transaction.operation_failed",
                operation=description,
                error=str(exc),
                executed=len(self._executed),
            )
            failures: list[RollbackFailure] = []
            try:
                self.rollback()
            except RollbackError as rollback_error:
                failures = rollback_error.failures
            raise OperationFailed(description, exc, failures) from exc

        self._executed.append(op)
        self._logger.debug("transaction.executed", operation=op.describe())

    def execute_all(self) -> None:
        """Run every planned operation in order, stopping at the first failure."""
        for op in self._planned:
            self.execute(op)

    def rollback(self) -> None:
        """Undo executed operations in reverse order.

        Every inverse action is attempted even if an earlier one fails; the
        executed stack is cleared regardless.

        Raises:
            CannotRollbackCommitted: If the transaction was committed
            RollbackError: If one or more inverse actions failed
        """
        if self._state is TransactionState.COMMITTED:
            raise CannotRollbackCommitted()

        failures: list[RollbackFailure] = []
        undone = 0

        while self._executed:
            op = self._executed.pop()
            try:
                op.undo()
            except Exception as exc:
                failures.append(RollbackFailure(op.describe(), exc))
                self._logger.error(
                    "transaction.undo_failed", operation=op.describe(), error=str(exc)
                )
            else:
                undone += 1

        self._state = TransactionState.ROLLED_BACK
        self._logger.info(
            "transaction.rollback", undone=undone, failed=len(failures)
        )

        if failures:
            raise RollbackError(failures)

    def commit(self) -> None:
        """Mark the transaction successful and discard the rollback stack.

        Committing twice is a no-op.

        Raises:
            TransactionClosed: If the transaction was rolled back
        """
        if self._state is TransactionState.COMMITTED:
            return
        if self._state is TransactionState.ROLLED_BACK:
            raise TransactionClosed(self._state.value)

        committed = len(self._executed)
        self._state = TransactionState.COMMITTED
        self._executed = []
        self._logger.info("transaction.commit", operations=committed)

    def __enter__(self) -> Transaction:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._state is not TransactionState.OPEN:
            return
        if exc_type is None:
            self.commit()
            return
        # The original exception propagates; rollback failures are logged
        try:
            self.rollback()
        except RollbackError as rollback_error:
            self._logger.error(
                "transaction.rollback_incomplete",
                failures=[str(f) for f in rollback_error.failures],
            )
