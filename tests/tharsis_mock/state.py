"""In-memory Tharsis state.

Records are stored the way the server stores them: the credential payload
is opaque, principals are resolved objects, and every mutation bumps the
metadata version and timestamp.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

# Fixed clock so lastUpdated values are predictable in assertions
BASE_TIME = datetime(2024, 1, 2, 15, 4, 5, tzinfo=UTC)


@dataclass
class MockAccessRule:
    """Server-side access rule."""

    id: str
    managed_identity_id: str
    run_stage: str
    allowed_users: list[str] = field(default_factory=list)
    allowed_service_accounts: list[str] = field(default_factory=list)
    allowed_teams: list[str] = field(default_factory=list)
    type: str = "eligible_principals"
    module_attestation_policies: list[dict[str, Any]] = field(default_factory=list)
    updated_at: datetime = BASE_TIME
    version: int = 1

    def to_node(self, emails: dict[str, str]) -> dict[str, Any]:
        return {
            "metadata": {
                "id": self.id,
                "createdAt": BASE_TIME.isoformat(),
                "updatedAt": self.updated_at.isoformat(),
                "version": str(self.version),
            },
            "type": self.type,
            "runStage": self.run_stage,
            "managedIdentityId": self.managed_identity_id,
            # Element order differs from input on purpose
            "allowedUsers": [
                {"username": u, "email": emails.get(u)} for u in reversed(self.allowed_users)
            ],
            "allowedServiceAccounts": [
                {"resourcePath": sa} for sa in reversed(self.allowed_service_accounts)
            ],
            "allowedTeams": [{"name": t} for t in reversed(self.allowed_teams)],
            "moduleAttestationPolicies": list(reversed(self.module_attestation_policies)),
        }


@dataclass
class MockManagedIdentity:
    """Server-side managed identity."""

    id: str
    type: str
    name: str
    group_path: str
    description: str
    data: str
    rule_ids: list[str] = field(default_factory=list)
    updated_at: datetime = BASE_TIME
    version: int = 1

    @property
    def resource_path(self) -> str:
        return f"{self.group_path}/{self.name}"

    @property
    def subject(self) -> str:
        return f"tharsis:{self.resource_path}"

    def stored_data(self) -> str:
        """Payload as returned by the server, with the subject filled in."""
        fields = json.loads(base64.b64decode(self.data))
        fields["subject"] = self.subject
        raw = json.dumps(fields, separators=(",", ":"))
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    def to_node(self, rules: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "metadata": {
                "id": self.id,
                "createdAt": BASE_TIME.isoformat(),
                "updatedAt": self.updated_at.isoformat(),
                "version": str(self.version),
            },
            "type": self.type,
            "resourcePath": self.resource_path,
            "name": self.name,
            "description": self.description,
            "data": self.stored_data(),
            "accessRules": rules,
        }


@dataclass
class MockTharsisState:
    """All server-side records plus an ID and clock source."""

    identities: dict[str, MockManagedIdentity] = field(default_factory=dict)
    rules: dict[str, MockAccessRule] = field(default_factory=dict)
    emails: dict[str, str] = field(default_factory=dict)
    _next_id: int = 0
    _ticks: int = 0

    def new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    def now(self) -> datetime:
        self._ticks += 1
        return BASE_TIME + timedelta(minutes=self._ticks)

    def rules_of(self, identity_id: str) -> list[MockAccessRule]:
        identity = self.identities[identity_id]
        return [self.rules[r] for r in identity.rule_ids if r in self.rules]
