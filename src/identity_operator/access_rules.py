"""Access rule reconciliation.

Each operation is a single remote round trip keyed by the access rule's
remote identifier. Updates replace the run stage, all three principal sets
and the attestation policies wholesale, and every tracked field is re-read
from the response. The rule type is fixed at creation.
"""

from __future__ import annotations

import logging

from .errors import RemoteError
from .models import AccessRuleSpec, AccessRuleState, RemoteAccessRule
from .remote import ManagedIdentityAPI, is_not_found_error

logger = logging.getLogger(__name__)

OP_CREATE = "creating managed identity access rule"
OP_READ = "reading managed identity access rule"
OP_UPDATE = "updating managed identity access rule"
OP_DELETE = "deleting managed identity access rule"


def _wrap(error: Exception, operation: str) -> RemoteError:
    message = error.message if isinstance(error, RemoteError) else str(error)
    return RemoteError(message, operation=operation)


class AccessRuleReconciler:
    """CRUD and read-back for managed identity access rules."""

    def __init__(self, api: ManagedIdentityAPI) -> None:
        self._api = api

    def create(self, rule: AccessRuleSpec, managed_identity_id: str) -> AccessRuleState:
        """Create an access rule under a managed identity.

        Args:
            rule: Desired rule.
            managed_identity_id: Remote ID of the owning managed identity.

        Returns:
            Projected state of the created rule.

        Raises:
            RemoteError: If the call fails or the rule comes back bound to a
                different managed identity.
        """
        try:
            created = self._api.create_managed_identity_access_rule(managed_identity_id, rule)
        except RemoteError as e:
            raise _wrap(e, OP_CREATE) from e

        if created.managed_identity_id and created.managed_identity_id != managed_identity_id:
            raise RemoteError(
                f"access rule {created.metadata.id} was created under managed identity "
                f"{created.managed_identity_id}, expected {managed_identity_id}",
                operation=OP_CREATE,
            )

        state = AccessRuleState.from_remote(created, managed_identity_id)
        logger.info(
            "Created managed identity access rule",
            extra={
                "access_rule_id": state.id,
                "managed_identity_id": managed_identity_id,
                "rule_type": state.type.value,
                "run_stage": state.run_stage.value,
            },
        )
        return state

    def read(
        self, rule_id: str, managed_identity_id: str | None = None
    ) -> AccessRuleState | None:
        """Read an access rule.

        Returns:
            The rule state, or None if the rule no longer exists remotely.
        """
        try:
            found = self._api.get_managed_identity_access_rule(rule_id)
        except RemoteError as e:
            if is_not_found_error(e):
                logger.warning(
                    "Managed identity access rule no longer exists, dropping from state",
                    extra={"access_rule_id": rule_id},
                )
                return None
            raise _wrap(e, OP_READ) from e

        return AccessRuleState.from_remote(found, managed_identity_id)

    def update(
        self, rule_id: str, rule: AccessRuleSpec, managed_identity_id: str | None = None
    ) -> AccessRuleState:
        """Replace an access rule's run stage, principal sets and attestation policies."""
        try:
            updated: RemoteAccessRule = self._api.update_managed_identity_access_rule(
                rule_id, rule
            )
        except RemoteError as e:
            raise _wrap(e, OP_UPDATE) from e

        state = AccessRuleState.from_remote(updated, managed_identity_id)
        logger.info(
            "Updated managed identity access rule",
            extra={"access_rule_id": rule_id, "run_stage": state.run_stage.value},
        )
        return state

    def delete(self, rule_id: str) -> None:
        """Delete an access rule. Deleting a missing rule succeeds."""
        try:
            self._api.delete_managed_identity_access_rule(rule_id)
        except RemoteError as e:
            if is_not_found_error(e):
                logger.info(
                    "Managed identity access rule already deleted",
                    extra={"access_rule_id": rule_id},
                )
                return
            raise _wrap(e, OP_DELETE) from e

        logger.info("Deleted managed identity access rule", extra={"access_rule_id": rule_id})
