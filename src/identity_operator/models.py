"""Pydantic models for managed identities and their access rules.

Three families of models live here:
1. Desired state (ManagedIdentitySpec, AccessRuleSpec) parsed from YAML
2. Remote entities returned by the Remote Call Port
3. State records (ManagedIdentityState, AccessRuleState) produced by the
   reconcilers and persisted between runs

Allowed-principal collections and attestation policies are sets. Both
desired and state records store them de-duplicated and sorted, so list
equality is set equality and the remote service's element order never shows
up as drift.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from .payload_codec import CredentialFields, ManagedIdentityType

# RFC 850 layout, e.g. "Monday, 02-Jan-06 15:04:05 UTC"
LAST_UPDATED_FORMAT = "%A, %d-%b-%y %H:%M:%S %Z"


class RunStage(str, Enum):
    """Job stage an access rule applies to."""

    PLAN = "plan"
    APPLY = "apply"


class AccessRuleType(str, Enum):
    """How an access rule decides which runs may use the identity."""

    ELIGIBLE_PRINCIPALS = "eligible_principals"
    MODULE_ATTESTATION = "module_attestation"


def _normalize_principals(values: list[str] | None) -> list[str]:
    if not values:
        return []
    return sorted({v.strip() for v in values if v and v.strip()})


def _normalize_policies(values: list[ModuleAttestationPolicy]) -> list[ModuleAttestationPolicy]:
    unique = {p.key(): p for p in values}
    return [unique[k] for k in sorted(unique)]


def format_last_updated(timestamp: datetime) -> str:
    """Format a remote modification timestamp for the state record."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    return timestamp.astimezone(UTC).strftime(LAST_UPDATED_FORMAT)


def group_path_from_resource_path(resource_path: str) -> str:
    """Return everything before the last path separator."""
    return resource_path.rpartition("/")[0]


class ModuleAttestationPolicy(BaseModel):
    """Signed in-toto attestation a module must carry for the rule to match."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    predicate_type: str | None = Field(None, alias="predicateType")
    public_key: str = Field(..., alias="publicKey", min_length=1)

    @field_validator("predicate_type", mode="before")
    @classmethod
    def empty_predicate_is_none(cls, v: str | None) -> str | None:
        return v or None

    def key(self) -> tuple[str, str]:
        return (self.public_key, self.predicate_type or "")


# Content of a rule, independent of its remote ID and element order
RuleMembership = tuple[
    AccessRuleType,
    RunStage,
    tuple[str, ...],
    tuple[str, ...],
    tuple[str, ...],
    tuple[tuple[str, str], ...],
]


class _AccessRuleContent(BaseModel):
    """Fields shared by desired and tracked access rules."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: AccessRuleType = AccessRuleType.ELIGIBLE_PRINCIPALS
    run_stage: RunStage = Field(..., alias="runStage")
    allowed_users: list[str] = Field(default_factory=list, alias="allowedUsers")
    allowed_service_accounts: list[str] = Field(
        default_factory=list, alias="allowedServiceAccounts"
    )
    allowed_teams: list[str] = Field(default_factory=list, alias="allowedTeams")
    module_attestation_policies: list[ModuleAttestationPolicy] = Field(
        default_factory=list, alias="moduleAttestationPolicies"
    )

    @field_validator("allowed_users", "allowed_service_accounts", "allowed_teams", mode="before")
    @classmethod
    def normalize_principals(cls, v: list[str] | None) -> list[str]:
        return _normalize_principals(v)

    @field_validator("module_attestation_policies")
    @classmethod
    def normalize_policies(cls, v: list[ModuleAttestationPolicy]) -> list[ModuleAttestationPolicy]:
        return _normalize_policies(v)

    def membership(self) -> RuleMembership:
        """Identity of the rule by content rather than position."""
        return (
            self.type,
            self.run_stage,
            tuple(self.allowed_users),
            tuple(self.allowed_service_accounts),
            tuple(self.allowed_teams),
            tuple(p.key() for p in self.module_attestation_policies),
        )


# =============================================================================
# Desired State
# =============================================================================


class AccessRuleSpec(_AccessRuleContent):
    """Desired access rule.

    eligible_principals rules grant access to the listed users, service
    accounts and teams. module_attestation rules grant access to runs whose
    module carries an attestation matching one of the policies.
    """

    @model_validator(mode="after")
    def check_policies_match_type(self) -> AccessRuleSpec:
        if self.type is AccessRuleType.MODULE_ATTESTATION and not self.module_attestation_policies:
            raise ValueError(
                "moduleAttestationPolicies is required for module_attestation access rules"
            )
        if self.type is AccessRuleType.ELIGIBLE_PRINCIPALS and self.module_attestation_policies:
            raise ValueError(
                "moduleAttestationPolicies is only valid for module_attestation access rules"
            )
        return self


class ManagedIdentitySpec(BaseModel):
    """Desired managed identity.

    Credential fields are flat here; the payload codec checks them against
    the identity type. resourcePath is derived by the remote service, so a
    value supplied in desired state is ignored.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: ManagedIdentityType
    name: str = Field(..., min_length=1)
    group_path: str = Field(..., alias="groupPath", min_length=1)
    description: str = ""

    aws_role: str | None = Field(None, alias="awsRole")
    azure_client_id: str | None = Field(None, alias="azureClientId")
    azure_tenant_id: str | None = Field(None, alias="azureTenantId")
    tharsis_service_account_path: str | None = Field(None, alias="tharsisServiceAccountPath")

    access_rules: list[AccessRuleSpec] = Field(default_factory=list, alias="accessRules")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if "/" in v:
            raise ValueError("name must not contain '/'")
        return v

    @field_validator("group_path")
    @classmethod
    def validate_group_path(cls, v: str) -> str:
        v = v.strip("/")
        if not v:
            raise ValueError("groupPath must not be empty")
        return v

    def credential_fields(self) -> CredentialFields:
        """Candidate credential values for the payload codec."""
        return CredentialFields(
            role=self.aws_role,
            client_id=self.azure_client_id,
            tenant_id=self.azure_tenant_id,
            service_account_path=self.tharsis_service_account_path,
        )

    @property
    def resource_path(self) -> str:
        """Path the remote service will assign on create."""
        return f"{self.group_path}/{self.name}"


# =============================================================================
# Remote Entities
# =============================================================================


class ResourceMetadata(BaseModel):
    """Server-side metadata common to all remote entities."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str
    created_at: datetime | None = Field(None, alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")
    version: str | None = None


class UserRef(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    username: str
    email: str | None = None


class ServiceAccountRef(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    resource_path: str = Field(..., alias="resourcePath")


class TeamRef(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str


class RemoteAccessRule(BaseModel):
    """Access rule as returned by the remote service."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    metadata: ResourceMetadata
    type: AccessRuleType = AccessRuleType.ELIGIBLE_PRINCIPALS
    run_stage: RunStage = Field(..., alias="runStage")
    managed_identity_id: str | None = Field(None, alias="managedIdentityId")
    allowed_users: list[UserRef] = Field(default_factory=list, alias="allowedUsers")
    allowed_service_accounts: list[ServiceAccountRef] = Field(
        default_factory=list, alias="allowedServiceAccounts"
    )
    allowed_teams: list[TeamRef] = Field(default_factory=list, alias="allowedTeams")
    module_attestation_policies: list[ModuleAttestationPolicy] = Field(
        default_factory=list, alias="moduleAttestationPolicies"
    )


class RemoteManagedIdentity(BaseModel):
    """Managed identity as returned by the remote service.

    access_rules is only trustworthy on reads; the create endpoint does
    not echo the rules it persisted.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    metadata: ResourceMetadata
    type: ManagedIdentityType
    resource_path: str = Field(..., alias="resourcePath")
    name: str
    description: str = ""
    data: str
    access_rules: list[RemoteAccessRule] = Field(default_factory=list, alias="accessRules")


# =============================================================================
# State Records
# =============================================================================


class AccessRuleState(_AccessRuleContent):
    """Remote-confirmed access rule."""

    id: str
    managed_identity_id: str = Field(..., alias="managedIdentityId")

    @classmethod
    def from_remote(
        cls, remote: RemoteAccessRule, managed_identity_id: str | None = None
    ) -> AccessRuleState:
        """Project a remote access rule, resolving principals to identifiers."""
        return cls(
            id=remote.metadata.id,
            type=remote.type,
            run_stage=remote.run_stage,
            managed_identity_id=remote.managed_identity_id or managed_identity_id or "",
            allowed_users=[u.username for u in remote.allowed_users],
            allowed_service_accounts=[sa.resource_path for sa in remote.allowed_service_accounts],
            allowed_teams=[t.name for t in remote.allowed_teams],
            module_attestation_policies=remote.module_attestation_policies,
        )


class ManagedIdentityState(BaseModel):
    """Remote-confirmed managed identity, persisted for drift detection."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str
    type: ManagedIdentityType
    resource_path: str = Field(..., alias="resourcePath")
    name: str
    group_path: str = Field(..., alias="groupPath")
    description: str = ""

    aws_role: str | None = Field(None, alias="awsRole")
    azure_client_id: str | None = Field(None, alias="azureClientId")
    azure_tenant_id: str | None = Field(None, alias="azureTenantId")
    tharsis_service_account_path: str | None = Field(None, alias="tharsisServiceAccountPath")
    subject: str | None = None

    access_rules: list[AccessRuleState] = Field(default_factory=list, alias="accessRules")
    last_updated: str = Field(..., alias="lastUpdated")
