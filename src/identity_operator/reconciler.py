"""Single-identity reconciliation driver.

One reconcile run follows the usual refresh / plan / apply cycle:
1. Refresh: re-read the tracked identity so drift and out-of-band deletes
   are seen
2. Plan: diff desired state against the refreshed state
3. Apply: execute the plan through the managed identity reconciler

Errors never escape a run. They are recorded on the ReconcileResult along
with the best-known state, so the caller can always persist what actually
exists remotely.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .errors import ChildFetchError, NotFoundError, ReconcileError
from .managed_identities import ManagedIdentityReconciler
from .models import ManagedIdentitySpec, ManagedIdentityState
from .planner import ActionType, Plan, plan_identity
from .remote import ManagedIdentityAPI

logger = logging.getLogger(__name__)

OP_IMPORT = "importing managed identity"


@dataclass
class ReconcileResult:
    """Result of a single reconciliation run."""

    resource_path: str | None
    action: ActionType = ActionType.NO_CHANGE
    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    rules_created: int = 0
    rules_updated: int = 0
    rules_deleted: int = 0
    reasons: list[str] = field(default_factory=list)
    # Best-known remote state; None means nothing is tracked
    state: ManagedIdentityState | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None

    @property
    def changed(self) -> bool:
        if self.action is not ActionType.NO_CHANGE:
            return True
        return bool(self.rules_created or self.rules_updated or self.rules_deleted)


class Reconciler:
    """Drives one managed identity toward its desired state.

    Args:
        api: Remote Call Port implementation.
        dry_run: Plan only; never call a mutating remote operation.
    """

    def __init__(self, api: ManagedIdentityAPI, dry_run: bool = False) -> None:
        self._identities = ManagedIdentityReconciler(api)
        self._dry_run = dry_run

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def refresh(self, state: ManagedIdentityState | None) -> ReconcileResult:
        """Re-read the tracked identity without planning or applying."""
        result = ReconcileResult(
            resource_path=state.resource_path if state else None, state=state
        )
        try:
            result.state = self._read(state)
            if state is not None and result.state is None:
                result.action = ActionType.DELETE
                result.reasons.append("deleted outside of this operator")
        except ReconcileError as e:
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)
            self._log_result("refresh", result)
        return result

    def import_identity(self, identity_id: str) -> ReconcileResult:
        """Start tracking an existing remote identity by its ID."""
        result = ReconcileResult(resource_path=None)
        try:
            state = self._identities.read(identity_id)
            if state is None:
                raise NotFoundError(
                    f"managed identity with ID {identity_id} not found", operation=OP_IMPORT
                )
            result.state = state
            result.resource_path = state.resource_path
        except ReconcileError as e:
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)
            self._log_result("import", result)
        return result

    def destroy(self, state: ManagedIdentityState | None) -> ReconcileResult:
        """Delete the tracked identity; the remote service cascades to its rules."""
        return self.reconcile(None, state)

    def reconcile(
        self,
        desired: ManagedIdentitySpec | None,
        state: ManagedIdentityState | None,
    ) -> ReconcileResult:
        """Bring the remote identity to the desired state.

        Args:
            desired: Desired identity, or None to remove it.
            state: Last persisted state, or None if nothing is tracked.

        Returns:
            The run result. result.state is what should be persisted.
        """
        resource_path = desired.resource_path if desired else None
        if resource_path is None and state is not None:
            resource_path = state.resource_path

        result = ReconcileResult(resource_path=resource_path, dry_run=self._dry_run, state=state)

        try:
            current = self._read(state)
            result.state = current

            plan = plan_identity(desired, current)
            result.action = plan.identity_action
            result.reasons = list(plan.reasons)

            if self._dry_run or not plan.has_changes:
                self._count_planned(result, plan, desired)
                return result

            self._apply(result, plan, desired, current)

        except ChildFetchError as e:
            result.error = e
            result.state = e.state
        except ReconcileError as e:
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)
            self._log_result("reconcile", result)

        return result

    def _read(self, state: ManagedIdentityState | None) -> ManagedIdentityState | None:
        if state is None:
            return None
        return self._identities.read(state.id)

    def _count_planned(
        self, result: ReconcileResult, plan: Plan, desired: ManagedIdentitySpec | None
    ) -> None:
        if plan.identity_action in (ActionType.CREATE, ActionType.REPLACE) and desired:
            result.rules_created = len(desired.access_rules)
            return
        result.rules_created = plan.count(ActionType.CREATE)
        result.rules_updated = plan.count(ActionType.UPDATE)
        result.rules_deleted = plan.count(ActionType.DELETE)

    def _apply(
        self,
        result: ReconcileResult,
        plan: Plan,
        desired: ManagedIdentitySpec | None,
        current: ManagedIdentityState | None,
    ) -> None:
        action = plan.identity_action

        if action in (ActionType.DELETE, ActionType.REPLACE) and current is not None:
            self._identities.delete(current.id)
            result.state = None

        if action in (ActionType.CREATE, ActionType.REPLACE) and desired is not None:
            result.state = self._identities.create(desired)
            result.rules_created = len(result.state.access_rules)
            return

        if desired is None or current is None:
            return

        updated = current
        if action is ActionType.UPDATE:
            updated = self._identities.update(current.id, desired)
            result.state = updated

        rule_changes = [a for a in plan.rule_actions if a.action is not ActionType.NO_CHANGE]
        if rule_changes:
            rules = self._identities.reconcile_access_rules(current.id, plan.rule_actions)
            result.state = updated.model_copy(update={"access_rules": rules})
            result.rules_created = plan.count(ActionType.CREATE)
            result.rules_updated = plan.count(ActionType.UPDATE)
            result.rules_deleted = plan.count(ActionType.DELETE)

    def _log_result(self, operation: str, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "operation": operation,
            "resource_path": result.resource_path,
            "action": result.action.value,
            "dry_run": result.dry_run,
            "duration_seconds": result.duration_seconds,
            "rules_created": result.rules_created,
            "rules_updated": result.rules_updated,
            "rules_deleted": result.rules_deleted,
        }
        if result.reasons:
            extra["reasons"] = result.reasons
        if result.state is not None:
            extra["managed_identity_id"] = result.state.id

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif result.dry_run and result.changed:
            logger.warning("Reconciliation: changes pending (dry run)", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
