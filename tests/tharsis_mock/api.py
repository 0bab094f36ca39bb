"""Mock implementation of the managed identity Remote Call Port."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from identity_operator.errors import NotFoundError, RemoteError
from identity_operator.models import AccessRuleSpec, RemoteAccessRule, RemoteManagedIdentity
from identity_operator.payload_codec import ManagedIdentityType

from .state import MockAccessRule, MockManagedIdentity, MockTharsisState


def not_found_text(kind: str, entity_id: str) -> str:
    """Error text the Tharsis API uses for a missing entity."""
    return f"{kind[0].upper()}{kind[1:]} with ID {entity_id} not found"


def _policy_nodes(rule: AccessRuleSpec) -> list[dict[str, Any]]:
    return [p.model_dump(by_alias=True) for p in rule.module_attestation_policies]


@dataclass
class MockCall:
    """One recorded call to the mock API."""

    name: str
    args: tuple[Any, ...]


class MockTharsisAPI:
    """In-memory Tharsis API.

    Args:
        structured_not_found: Raise NotFoundError for missing entities. When
            False, a plain RemoteError carrying the server's text is raised,
            like transports without structured error codes.
    """

    def __init__(self, structured_not_found: bool = True) -> None:
        self.state = MockTharsisState()
        self.structured_not_found = structured_not_found
        self.calls: list[MockCall] = []
        self._failures: dict[str, list[Exception]] = {}

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def fail(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls of an operation raise `error`."""
        self._failures.setdefault(operation, []).extend([error] * times)

    def call_names(self) -> list[str]:
        return [c.name for c in self.calls]

    def reset_calls(self) -> None:
        self.calls.clear()

    def seed_identity(
        self,
        *,
        identity_type: ManagedIdentityType,
        name: str,
        group_path: str,
        data: str,
        description: str = "",
        rules: list[AccessRuleSpec] | None = None,
    ) -> str:
        """Create an identity directly in state, bypassing the call log."""
        identity = MockManagedIdentity(
            id=self.state.new_id("mi"),
            type=identity_type.value,
            name=name,
            group_path=group_path,
            description=description,
            data=data,
            updated_at=self.state.now(),
        )
        self.state.identities[identity.id] = identity
        for rule in rules or []:
            self._store_rule(identity.id, rule)
        return identity.id

    def remove_identity(self, identity_id: str) -> None:
        """Delete an identity out of band."""
        identity = self.state.identities.pop(identity_id)
        for rule_id in identity.rule_ids:
            self.state.rules.pop(rule_id, None)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append(MockCall(name=name, args=args))
        pending = self._failures.get(name)
        if pending:
            raise pending.pop(0)

    def _not_found(self, kind: str, entity_id: str) -> RemoteError:
        text = not_found_text(kind, entity_id)
        if self.structured_not_found:
            return NotFoundError(text)
        return RemoteError(text)

    def _identity(self, identity_id: str) -> MockManagedIdentity:
        identity = self.state.identities.get(identity_id)
        if identity is None:
            raise self._not_found("managed identity", identity_id)
        return identity

    def _rule(self, rule_id: str) -> MockAccessRule:
        rule = self.state.rules.get(rule_id)
        if rule is None:
            raise self._not_found("managed identity access rule", rule_id)
        return rule

    def _store_rule(self, identity_id: str, rule: AccessRuleSpec) -> MockAccessRule:
        stored = MockAccessRule(
            id=self.state.new_id("rule"),
            managed_identity_id=identity_id,
            run_stage=rule.run_stage.value,
            allowed_users=list(rule.allowed_users),
            allowed_service_accounts=list(rule.allowed_service_accounts),
            allowed_teams=list(rule.allowed_teams),
            type=rule.type.value,
            module_attestation_policies=_policy_nodes(rule),
            updated_at=self.state.now(),
        )
        self.state.rules[stored.id] = stored
        self.state.identities[identity_id].rule_ids.append(stored.id)
        return stored

    def _rule_model(self, rule: MockAccessRule) -> RemoteAccessRule:
        return RemoteAccessRule.model_validate(rule.to_node(self.state.emails))

    def _identity_model(
        self, identity: MockManagedIdentity, include_rules: bool = True
    ) -> RemoteManagedIdentity:
        rules = []
        if include_rules:
            rules = [r.to_node(self.state.emails) for r in self.state.rules_of(identity.id)]
        return RemoteManagedIdentity.model_validate(identity.to_node(rules))

    # -------------------------------------------------------------------------
    # Remote Call Port
    # -------------------------------------------------------------------------

    def create_managed_identity(
        self,
        *,
        identity_type: ManagedIdentityType,
        name: str,
        description: str,
        group_path: str,
        data: str,
        access_rules: list[AccessRuleSpec],
    ) -> RemoteManagedIdentity:
        self._record("create_managed_identity", identity_type, name, group_path)
        for existing in self.state.identities.values():
            if existing.group_path == group_path and existing.name == name:
                raise RemoteError(f"managed identity {group_path}/{name} already exists")

        identity = MockManagedIdentity(
            id=self.state.new_id("mi"),
            type=identity_type.value,
            name=name,
            group_path=group_path,
            description=description,
            data=data,
            updated_at=self.state.now(),
        )
        self.state.identities[identity.id] = identity
        for rule in access_rules:
            self._store_rule(identity.id, rule)

        # The real API persists the inline rules but does not return them
        return self._identity_model(identity, include_rules=False)

    def get_managed_identity(self, identity_id: str) -> RemoteManagedIdentity:
        self._record("get_managed_identity", identity_id)
        return self._identity_model(self._identity(identity_id))

    def update_managed_identity(
        self, identity_id: str, *, description: str, data: str
    ) -> RemoteManagedIdentity:
        self._record("update_managed_identity", identity_id)
        identity = self._identity(identity_id)
        identity.description = description
        identity.data = data
        identity.version += 1
        identity.updated_at = self.state.now()
        return self._identity_model(identity)

    def delete_managed_identity(self, identity_id: str) -> None:
        self._record("delete_managed_identity", identity_id)
        self._identity(identity_id)
        self.remove_identity(identity_id)

    def get_managed_identity_access_rules(self, identity_id: str) -> list[RemoteAccessRule]:
        self._record("get_managed_identity_access_rules", identity_id)
        self._identity(identity_id)
        return [self._rule_model(r) for r in self.state.rules_of(identity_id)]

    def create_managed_identity_access_rule(
        self, identity_id: str, rule: AccessRuleSpec
    ) -> RemoteAccessRule:
        self._record("create_managed_identity_access_rule", identity_id)
        self._identity(identity_id)
        return self._rule_model(self._store_rule(identity_id, rule))

    def get_managed_identity_access_rule(self, rule_id: str) -> RemoteAccessRule:
        self._record("get_managed_identity_access_rule", rule_id)
        return self._rule_model(self._rule(rule_id))

    def update_managed_identity_access_rule(
        self, rule_id: str, rule: AccessRuleSpec
    ) -> RemoteAccessRule:
        self._record("update_managed_identity_access_rule", rule_id)
        stored = self._rule(rule_id)
        stored.run_stage = rule.run_stage.value
        stored.allowed_users = list(rule.allowed_users)
        stored.allowed_service_accounts = list(rule.allowed_service_accounts)
        stored.allowed_teams = list(rule.allowed_teams)
        stored.module_attestation_policies = _policy_nodes(rule)
        stored.version += 1
        stored.updated_at = self.state.now()
        return self._rule_model(stored)

    def delete_managed_identity_access_rule(self, rule_id: str) -> None:
        self._record("delete_managed_identity_access_rule", rule_id)
        stored = self._rule(rule_id)
        del self.state.rules[rule_id]
        identity = self.state.identities.get(stored.managed_identity_id)
        if identity is not None:
            identity.rule_ids.remove(rule_id)
