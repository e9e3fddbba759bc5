"""Exception hierarchy for the state store and meeting index.

Not-found is never an exception for reads: ``load``, ``has``,
``load_with_metadata`` and ``get_metadata`` return ``None`` / ``False``.
"""


class StateStoreError(Exception):
    """Base error for store and index failures.

    Carries the offending state id (when there is one) and the name of the
    operation that failed.
    """

    def __init__(
        self,
        message: str,
        state_id: str | None = None,
        operation: str | None = None,
    ):
        super().__init__(message)
        self.state_id = state_id
        self.operation = operation

    def __str__(self) -> str:
        message = super().__str__()
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.state_id is not None:
            context.append(f"state_id={self.state_id}")
        if context:
            return f"{message} ({', '.join(context)})"
        return message


class StoreNotInitializedError(StateStoreError):
    """Raised when an operation runs before ``initialize()``."""


class CorruptStateError(StateStoreError):
    """Raised when a stored value cannot be decoded into a document."""


class BackendError(StateStoreError):
    """Raised when the storage backend itself fails (I/O, connection, capacity)."""

    def __init__(
        self,
        message: str,
        state_id: str | None = None,
        operation: str | None = None,
        key: str | None = None,
    ):
        super().__init__(message, state_id=state_id, operation=operation)
        self.key = key


class IndexRebuildError(StateStoreError):
    """Raised when a full index rebuild could not complete."""
