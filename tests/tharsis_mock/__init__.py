"""Tharsis API Mock for Integration Testing.

This module provides an in-memory implementation of the managed identity
Remote Call Port that enables reconciler testing without a Tharsis server.

Key Features:
- In-memory state for managed identities and access rules
- Server-side behaviour: resource paths, subjects, metadata timestamps
- Create responses that omit the persisted access rules, like the real API
- Error injection per operation, as structured NotFoundError or plain text
- Call log for asserting on the remote round trips

Usage:
    from tharsis_mock import MockTharsisAPI

    api = MockTharsisAPI()
    reconciler = ManagedIdentityReconciler(api)
    state = reconciler.create(spec)

    assert api.call_names() == ["create_managed_identity", "get_managed_identity_access_rules"]
"""

from .api import MockTharsisAPI, not_found_text
from .state import MockAccessRule, MockManagedIdentity, MockTharsisState

__all__ = [
    "MockAccessRule",
    "MockManagedIdentity",
    "MockTharsisAPI",
    "MockTharsisState",
    "not_found_text",
]
