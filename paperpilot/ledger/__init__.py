"""Persistence for trading state and the execution log."""

from paperpilot.ledger.execution_log import ExecutionLedger
from paperpilot.ledger.locks import KeyedLocks
from paperpilot.ledger.store import StateStore

__all__ = ["ExecutionLedger", "KeyedLocks", "StateStore"]
