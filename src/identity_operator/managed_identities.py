"""Managed identity reconciliation.

Orchestrates the parent entity lifecycle together with its access rules.

The remote create endpoint persists inline access rules but does not echo
them back, so create is a two-step operation: the parent create call,
followed by a rules fetch for the new ID. A failure in the second step is
reported as ChildFetchError so operators can tell "created, rules unknown"
apart from "not created". The created parent is not rolled back.
"""

from __future__ import annotations

import logging

from .access_rules import AccessRuleReconciler
from .errors import ChildFetchError, DecodeError, RemoteError
from .models import (
    AccessRuleState,
    ManagedIdentitySpec,
    ManagedIdentityState,
    RemoteAccessRule,
    RemoteManagedIdentity,
    format_last_updated,
    group_path_from_resource_path,
)
from .payload_codec import decode_payload, encode_payload
from .planner import ActionType, RuleAction
from .remote import ManagedIdentityAPI, is_not_found_error

logger = logging.getLogger(__name__)

OP_CREATE = "creating managed identity"
OP_READ = "reading managed identity"
OP_UPDATE = "updating managed identity"
OP_DELETE = "deleting managed identity"


def project_managed_identity(
    remote: RemoteManagedIdentity,
    access_rules: list[RemoteAccessRule] | None = None,
) -> ManagedIdentityState:
    """Project a remote managed identity into a state record.

    Args:
        remote: Entity returned by the remote service.
        access_rules: Rules to use instead of remote.access_rules.

    Raises:
        DecodeError: If the credential payload is malformed.
    """
    fields = decode_payload(remote.data)
    rules = remote.access_rules if access_rules is None else access_rules
    identity_id = remote.metadata.id

    return ManagedIdentityState(
        id=identity_id,
        type=remote.type,
        resource_path=remote.resource_path,
        name=remote.name,
        group_path=group_path_from_resource_path(remote.resource_path),
        description=remote.description,
        aws_role=fields.role,
        azure_client_id=fields.client_id,
        azure_tenant_id=fields.tenant_id,
        tharsis_service_account_path=fields.service_account_path,
        subject=fields.subject,
        access_rules=[AccessRuleState.from_remote(r, identity_id) for r in rules],
        last_updated=format_last_updated(remote.metadata.updated_at),
    )


class ManagedIdentityReconciler:
    """CRUD and read-back for managed identities."""

    def __init__(
        self,
        api: ManagedIdentityAPI,
        access_rules: AccessRuleReconciler | None = None,
    ) -> None:
        self._api = api
        self._access_rules = access_rules or AccessRuleReconciler(api)

    @property
    def access_rules(self) -> AccessRuleReconciler:
        return self._access_rules

    def create(self, spec: ManagedIdentitySpec) -> ManagedIdentityState:
        """Create a managed identity with its inline access rules.

        Args:
            spec: Desired managed identity.

        Returns:
            Fully populated state, including the access rules fetched after
            creation.

        Raises:
            ValidationError: If the credential fields do not match the type.
                Nothing is sent to the remote service.
            RemoteError: If the create call fails.
            ChildFetchError: If the identity was created but its access rules
                could not be fetched.
            DecodeError: If the returned payload is malformed.
        """
        data = encode_payload(spec.type, spec.credential_fields())

        try:
            created = self._api.create_managed_identity(
                identity_type=spec.type,
                name=spec.name,
                description=spec.description,
                group_path=spec.group_path,
                data=data,
                access_rules=spec.access_rules,
            )
        except RemoteError as e:
            raise RemoteError(e.message, operation=OP_CREATE) from e

        identity_id = created.metadata.id
        logger.info(
            "Created managed identity",
            extra={"managed_identity_id": identity_id, "resource_path": created.resource_path},
        )

        # The nested rules in the create response are never trusted
        try:
            rules = self._api.get_managed_identity_access_rules(identity_id)
        except RemoteError as e:
            logger.error(
                "Managed identity created but access rules could not be fetched",
                extra={"managed_identity_id": identity_id, "error": str(e)},
            )
            try:
                partial = project_managed_identity(created, access_rules=[])
            except DecodeError as decode_error:
                logger.error(
                    "Created managed identity returned a malformed payload",
                    extra={"managed_identity_id": identity_id, "error": str(decode_error)},
                )
                partial = None
            raise ChildFetchError(e.message, identity_id=identity_id, state=partial) from e

        return project_managed_identity(created, access_rules=rules)

    def read(self, identity_id: str) -> ManagedIdentityState | None:
        """Read a managed identity with its access rules.

        Returns:
            The state, or None if the identity no longer exists remotely.

        Raises:
            RemoteError: For any failure other than not-found.
            DecodeError: If the returned payload is malformed.
        """
        try:
            found = self._api.get_managed_identity(identity_id)
        except RemoteError as e:
            if is_not_found_error(e):
                logger.warning(
                    "Managed identity no longer exists, dropping from state",
                    extra={"managed_identity_id": identity_id},
                )
                return None
            raise RemoteError(e.message, operation=OP_READ) from e

        return project_managed_identity(found)

    def update(self, identity_id: str, spec: ManagedIdentitySpec) -> ManagedIdentityState:
        """Update description and credentials of a managed identity.

        Type, name and group path are create-only; the caller must plan a
        replacement instead of an update when they change. Access rules are
        reconciled separately.

        Raises:
            ValidationError: If the credential fields do not match the type.
            RemoteError: If the update call fails.
            DecodeError: If the returned payload is malformed.
        """
        data = encode_payload(spec.type, spec.credential_fields())

        try:
            updated = self._api.update_managed_identity(
                identity_id, description=spec.description, data=data
            )
        except RemoteError as e:
            raise RemoteError(e.message, operation=OP_UPDATE) from e

        logger.info("Updated managed identity", extra={"managed_identity_id": identity_id})
        return project_managed_identity(updated)

    def delete(self, identity_id: str) -> None:
        """Delete a managed identity. The remote service cascades to its rules."""
        try:
            self._api.delete_managed_identity(identity_id)
        except RemoteError as e:
            if is_not_found_error(e):
                logger.info(
                    "Managed identity already deleted",
                    extra={"managed_identity_id": identity_id},
                )
                return
            raise RemoteError(e.message, operation=OP_DELETE) from e

        logger.info("Deleted managed identity", extra={"managed_identity_id": identity_id})

    def reconcile_access_rules(
        self, identity_id: str, actions: list[RuleAction]
    ) -> list[AccessRuleState]:
        """Apply planned access rule actions one at a time.

        Returns:
            The access rules tracked after all actions succeeded.
        """
        result: list[AccessRuleState] = []

        for action in actions:
            if action.action is ActionType.CREATE and action.desired is not None:
                result.append(self._access_rules.create(action.desired, identity_id))
            elif action.action is ActionType.UPDATE and action.desired and action.current:
                result.append(
                    self._access_rules.update(action.current.id, action.desired, identity_id)
                )
            elif action.action is ActionType.DELETE and action.current is not None:
                self._access_rules.delete(action.current.id)
            elif action.current is not None:
                result.append(action.current)

        return result
