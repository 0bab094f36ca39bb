"""Error taxonomy for managed identity reconciliation.

ValidationError and DecodeError are local failures. RemoteError wraps
anything the remote service (or the transport in front of it) reported,
labelled with the operation that was in progress. NotFoundError is the
only remote error the reconcilers recover from: read and delete treat it
as a removal signal.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ManagedIdentityState


class ReconcileError(Exception):
    """Base class for all reconciliation failures."""

    pass


class ValidationError(ReconcileError):
    """Raised when desired-state input is invalid. No remote call is made."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class UnsupportedTypeError(ValidationError):
    """Raised for a managed identity type outside the closed enumeration."""

    def __init__(self, identity_type: str) -> None:
        super().__init__(f"invalid managed identity type: {identity_type}", field="type")
        self.identity_type = identity_type


class DecodeError(ReconcileError):
    """Raised when an opaque credential payload cannot be decoded."""

    pass


class RemoteError(ReconcileError):
    """Raised when a remote call fails.

    The original message is kept verbatim; the operation label is
    prepended when rendering.
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation

    def __str__(self) -> str:
        if self.operation:
            return f"{self.operation}: {self.message}"
        return self.message


class NotFoundError(RemoteError):
    """Raised by the transport when the remote entity does not exist."""

    pass


class ChildFetchError(RemoteError):
    """The parent was created, but its access rules could not be fetched.

    The remote parent is left in place. ``state`` holds what could be
    projected from the create response (without access rules) so the
    caller can keep tracking the new identity.
    """

    def __init__(
        self,
        message: str,
        identity_id: str,
        state: ManagedIdentityState | None = None,
    ) -> None:
        super().__init__(
            message,
            operation=f"created managed identity {identity_id} but failed to fetch access rules",
        )
        self.identity_id = identity_id
        self.state = state
