"""
Error kinds surfaced by the sync kernel.

Only coordinator-level failures reach callers. Reconciliation and prefetch
failures are logged and corrected by the next resynchronization.
"""

from typing import Dict, List, Optional

from sync_kernel.models.mutation import ErrorKind, MutationResult


class SyncError(Exception):
    """Base class for sync kernel errors."""
    pass


class MutationError(SyncError):
    """A mutation was rolled back."""

    kind: ErrorKind = ErrorKind.NETWORK
    retryable = False

    def __init__(self, message: str, mutation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.mutation_id = mutation_id


class NetworkFailure(MutationError):
    """The authority could not be reached. Safe to retry."""

    kind = ErrorKind.NETWORK
    retryable = True


class ValidationRejected(MutationError):
    """The authority refused the change. Carries a user-facing message."""

    kind = ErrorKind.VALIDATION


class ConflictStale(MutationError):
    """The entity changed since the optimistic base."""

    kind = ErrorKind.CONFLICT


class PartialBulkFailure(MutationError):
    """Some items of a bulk mutation failed; the rest were committed."""

    kind = ErrorKind.PARTIAL_BULK

    def __init__(
        self,
        failed_ids: List[str],
        succeeded_ids: List[str],
        errors: Dict[str, MutationError],
    ):
        super().__init__(
            f"{len(failed_ids)} of {len(failed_ids) + len(succeeded_ids)} "
            f"items failed: {', '.join(failed_ids)}"
        )
        self.failed_ids = failed_ids
        self.succeeded_ids = succeeded_ids
        self.errors = errors


class SessionOffline(SyncError):
    """The push channel exhausted its reconnect budget."""
    pass


_ERRORS_BY_KIND = {
    ErrorKind.NETWORK: NetworkFailure,
    ErrorKind.VALIDATION: ValidationRejected,
    ErrorKind.CONFLICT: ConflictStale,
}


def error_from_result(result: MutationResult, mutation_id: Optional[str] = None) -> MutationError:
    """Map a failed settlement onto its typed error."""
    error_cls = _ERRORS_BY_KIND.get(result.error_kind, NetworkFailure)
    message = result.message or f"Mutation failed: {error_cls.kind.value}"
    return error_cls(message, mutation_id=mutation_id)
