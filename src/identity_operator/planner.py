"""Desired-versus-state diff for one managed identity subtree.

Access rules have no stable identity in desired state, so they are matched
by membership instead of position:
1. A desired rule whose type, run stage, principal sets and attestation
   policies equal a tracked rule is left alone.
2. Remaining rules that share a type and run stage are paired and updated
   in place.
3. Leftover tracked rules are deleted; leftover desired rules are created.

Reordering rules or the principals inside them never produces a change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .models import AccessRuleSpec, AccessRuleState, ManagedIdentitySpec, ManagedIdentityState

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    """Planned change for an entity."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_CHANGE = "no_change"


@dataclass(frozen=True)
class RuleAction:
    """Planned change for one access rule."""

    action: ActionType
    desired: AccessRuleSpec | None = None
    current: AccessRuleState | None = None


@dataclass
class Plan:
    """Planned changes for a managed identity and its access rules."""

    identity_action: ActionType
    rule_actions: list[RuleAction] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        if self.identity_action is not ActionType.NO_CHANGE:
            return True
        return any(a.action is not ActionType.NO_CHANGE for a in self.rule_actions)

    def count(self, action: ActionType) -> int:
        """Number of rule actions of the given type."""
        return sum(1 for a in self.rule_actions if a.action is action)


def _same(desired: str | None, current: str | None) -> bool:
    # Empty and absent are equivalent
    return (desired or "") == (current or "")


def _same_slot(current: AccessRuleState, desired: AccessRuleSpec) -> bool:
    # Rule type is create-only
    return current.type == desired.type and current.run_stage == desired.run_stage


def immutable_changes(desired: ManagedIdentitySpec, current: ManagedIdentityState) -> list[str]:
    """List the create-only fields that differ between desired and state."""
    reasons = []
    if desired.type != current.type:
        reasons.append(f"type changes from {current.type.value} to {desired.type.value}")
    if desired.name != current.name:
        reasons.append(f"name changes from {current.name} to {desired.name}")
    if desired.group_path != current.group_path:
        reasons.append(f"groupPath changes from {current.group_path} to {desired.group_path}")
    return reasons


def mutable_changes(desired: ManagedIdentitySpec, current: ManagedIdentityState) -> list[str]:
    """List the updatable fields that differ between desired and state."""
    reasons = []
    if not _same(desired.description, current.description):
        reasons.append("description changed")
    if not _same(desired.aws_role, current.aws_role):
        reasons.append("awsRole changed")
    if not _same(desired.azure_client_id, current.azure_client_id):
        reasons.append("azureClientId changed")
    if not _same(desired.azure_tenant_id, current.azure_tenant_id):
        reasons.append("azureTenantId changed")
    if not _same(desired.tharsis_service_account_path, current.tharsis_service_account_path):
        reasons.append("tharsisServiceAccountPath changed")
    return reasons


def plan_access_rules(
    desired: list[AccessRuleSpec], current: list[AccessRuleState]
) -> list[RuleAction]:
    """Match desired rules against tracked rules by membership."""
    actions: list[RuleAction] = []
    unmatched_current = list(current)
    unmatched_desired: list[AccessRuleSpec] = []

    for rule in desired:
        match = next(
            (c for c in unmatched_current if c.membership() == rule.membership()), None
        )
        if match is None:
            unmatched_desired.append(rule)
            continue
        unmatched_current.remove(match)
        actions.append(RuleAction(ActionType.NO_CHANGE, desired=rule, current=match))

    for rule in unmatched_desired:
        match = next((c for c in unmatched_current if _same_slot(c, rule)), None)
        if match is None:
            actions.append(RuleAction(ActionType.CREATE, desired=rule))
            continue
        unmatched_current.remove(match)
        actions.append(RuleAction(ActionType.UPDATE, desired=rule, current=match))

    actions.extend(RuleAction(ActionType.DELETE, current=c) for c in unmatched_current)
    return actions


def plan_identity(
    desired: ManagedIdentitySpec | None, current: ManagedIdentityState | None
) -> Plan:
    """Plan the changes that bring remote state to the desired state.

    Args:
        desired: Desired managed identity, or None to remove it.
        current: Remote-confirmed state, or None if it does not exist.

    Returns:
        The plan. Access rule actions are only planned for in-place
        updates: on create and replace the rules are submitted inline, and
        on delete the remote service cascades.
    """
    if desired is None and current is None:
        return Plan(identity_action=ActionType.NO_CHANGE)

    if desired is None:
        return Plan(identity_action=ActionType.DELETE, reasons=["removed from desired state"])

    if current is None:
        return Plan(identity_action=ActionType.CREATE, reasons=["does not exist"])

    replace_reasons = immutable_changes(desired, current)
    if replace_reasons:
        logger.info(
            "Managed identity requires replacement",
            extra={"resource_path": current.resource_path, "reasons": replace_reasons},
        )
        return Plan(identity_action=ActionType.REPLACE, reasons=replace_reasons)

    reasons = mutable_changes(desired, current)
    rule_actions = plan_access_rules(desired.access_rules, current.access_rules)
    return Plan(
        identity_action=ActionType.UPDATE if reasons else ActionType.NO_CHANGE,
        rule_actions=rule_actions,
        reasons=reasons,
    )
