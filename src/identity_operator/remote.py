"""Remote Call Port for managed identities.

The reconcilers talk to the remote service only through ManagedIdentityAPI.
Implementations raise RemoteError for failures, and NotFoundError where the
protocol reports a missing entity in a structured way.
"""

from __future__ import annotations

import re
from typing import Protocol

from .errors import NotFoundError
from .models import AccessRuleSpec, RemoteAccessRule, RemoteManagedIdentity
from .payload_codec import ManagedIdentityType

# Compatibility shim for transports that only report "not found" as text.
NOT_FOUND_PATTERN = re.compile(
    r"anaged identity(?: access rule)? with ID \S+ not found",
    re.IGNORECASE,
)


def is_not_found_error(error: BaseException) -> bool:
    """Return True if the error means the remote entity does not exist."""
    if isinstance(error, NotFoundError):
        return True
    return NOT_FOUND_PATTERN.search(str(error)) is not None


class ManagedIdentityAPI(Protocol):
    """Authenticated request/response functions, one per remote operation."""

    def create_managed_identity(
        self,
        *,
        identity_type: ManagedIdentityType,
        name: str,
        description: str,
        group_path: str,
        data: str,
        access_rules: list[AccessRuleSpec],
    ) -> RemoteManagedIdentity: ...

    def get_managed_identity(self, identity_id: str) -> RemoteManagedIdentity: ...

    def update_managed_identity(
        self, identity_id: str, *, description: str, data: str
    ) -> RemoteManagedIdentity: ...

    def delete_managed_identity(self, identity_id: str) -> None: ...

    def get_managed_identity_access_rules(self, identity_id: str) -> list[RemoteAccessRule]: ...

    def create_managed_identity_access_rule(
        self, identity_id: str, rule: AccessRuleSpec
    ) -> RemoteAccessRule: ...

    def get_managed_identity_access_rule(self, rule_id: str) -> RemoteAccessRule: ...

    def update_managed_identity_access_rule(
        self, rule_id: str, rule: AccessRuleSpec
    ) -> RemoteAccessRule: ...

    def delete_managed_identity_access_rule(self, rule_id: str) -> None: ...
