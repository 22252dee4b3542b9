"""Error taxonomy shared by the dispatch engine, the ledger and the HTTP routes.

Lookup failures derive from ``KeyError`` and rule violations from ``ValueError`` so
callers that only care about the broad category can keep catching the built-ins.
"""

from __future__ import annotations


class ValidationError(ValueError):
    """Rejected input: non-positive amount, missing field, self-transfer."""


class InsufficientBalance(ValueError):
    def __init__(self, account_id: str, balance: object, amount: object) -> None:
        super().__init__(f"insufficient_balance: account={account_id} balance={balance} amount={amount}")
        self.account_id = account_id
        self.balance = balance
        self.amount = amount


class InvalidTransition(ValueError):
    """A state change that the task or worker state machine does not allow."""


class AccountNotFound(KeyError):
    pass


class TaskNotFound(KeyError):
    pass


class WorkerNotFound(KeyError):
    pass


class WorkerCallError(Exception):
    def __init__(self, address: str, message: str) -> None:
        super().__init__(f"{address}: {message}")
        self.address = address
        self.message = message


class WorkerUnreachable(WorkerCallError):
    """Transport failure: connection refused, timeout, name resolution."""


class WorkerRejected(WorkerCallError):
    """The worker answered but did not accept the task."""
