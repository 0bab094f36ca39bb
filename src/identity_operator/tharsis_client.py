"""Tharsis GraphQL implementation of the Remote Call Port.

Built on the azure-core pipeline: headers, user agent, transport retries,
bearer authentication and network trace logging are pipeline policies, the
same way the Azure SDK clients are assembled.

Error mapping:
- transport failures and non-2xx responses -> RemoteError
- HTTP 404, GraphQL errors or mutation problems of type NOT_FOUND, and
  null results for by-ID queries -> NotFoundError
- responses the models cannot parse -> RemoteError
"""

from __future__ import annotations

import logging
import time
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import AccessToken
from azure.core.exceptions import AzureError, HttpResponseError
from azure.core.pipeline import policies
from azure.core.rest import HttpRequest
from pydantic import ValidationError as PydanticValidationError

from .config import Config
from .errors import NotFoundError, RemoteError
from .models import AccessRuleSpec, RemoteAccessRule, RemoteManagedIdentity
from .payload_codec import ManagedIdentityType

logger = logging.getLogger(__name__)

USER_AGENT = "tharsis-identity-operator/0.1.0"
GRAPHQL_PATH = "/graphql"

# Static tokens have no expiry of their own
STATIC_TOKEN_LIFETIME_SECONDS = 24 * 3600

NOT_FOUND_CODE = "NOT_FOUND"

ACCESS_RULE_FIELDS = """
fragment AccessRuleFields on ManagedIdentityAccessRule {
  metadata { id createdAt updatedAt version }
  type
  runStage
  managedIdentity { id }
  allowedUsers { username email }
  allowedServiceAccounts { resourcePath }
  allowedTeams { name }
  moduleAttestationPolicies { predicateType publicKey }
}
"""

MANAGED_IDENTITY_FIELDS = (
    """
fragment ManagedIdentityFields on ManagedIdentity {
  metadata { id createdAt updatedAt version }
  type
  resourcePath
  name
  description
  data
  accessRules { ...AccessRuleFields }
}
"""
    + ACCESS_RULE_FIELDS
)

PROBLEMS = "problems { message field type }"

GET_MANAGED_IDENTITY = (
    """
query GetManagedIdentity($id: String!) {
  managedIdentity(id: $id) { ...ManagedIdentityFields }
}
"""
    + MANAGED_IDENTITY_FIELDS
)

GET_ACCESS_RULES = (
    """
query GetManagedIdentityAccessRules($id: String!) {
  managedIdentity(id: $id) { accessRules { ...AccessRuleFields } }
}
"""
    + ACCESS_RULE_FIELDS
)

GET_ACCESS_RULE = (
    """
query GetManagedIdentityAccessRule($id: String!) {
  managedIdentityAccessRule(id: $id) { ...AccessRuleFields }
}
"""
    + ACCESS_RULE_FIELDS
)

CREATE_MANAGED_IDENTITY = (
    f"""
mutation CreateManagedIdentity($input: CreateManagedIdentityInput!) {{
  createManagedIdentity(input: $input) {{
    managedIdentity {{ ...ManagedIdentityFields }}
    {PROBLEMS}
  }}
}}
"""
    + MANAGED_IDENTITY_FIELDS
)

UPDATE_MANAGED_IDENTITY = (
    f"""
mutation UpdateManagedIdentity($input: UpdateManagedIdentityInput!) {{
  updateManagedIdentity(input: $input) {{
    managedIdentity {{ ...ManagedIdentityFields }}
    {PROBLEMS}
  }}
}}
"""
    + MANAGED_IDENTITY_FIELDS
)

DELETE_MANAGED_IDENTITY = f"""
mutation DeleteManagedIdentity($input: DeleteManagedIdentityInput!) {{
  deleteManagedIdentity(input: $input) {{
    {PROBLEMS}
  }}
}}
"""

CREATE_ACCESS_RULE = (
    f"""
mutation CreateManagedIdentityAccessRule($input: CreateManagedIdentityAccessRuleInput!) {{
  createManagedIdentityAccessRule(input: $input) {{
    accessRule {{ ...AccessRuleFields }}
    {PROBLEMS}
  }}
}}
"""
    + ACCESS_RULE_FIELDS
)

UPDATE_ACCESS_RULE = (
    f"""
mutation UpdateManagedIdentityAccessRule($input: UpdateManagedIdentityAccessRuleInput!) {{
  updateManagedIdentityAccessRule(input: $input) {{
    accessRule {{ ...AccessRuleFields }}
    {PROBLEMS}
  }}
}}
"""
    + ACCESS_RULE_FIELDS
)

DELETE_ACCESS_RULE = f"""
mutation DeleteManagedIdentityAccessRule($input: DeleteManagedIdentityAccessRuleInput!) {{
  deleteManagedIdentityAccessRule(input: $input) {{
    {PROBLEMS}
  }}
}}
"""


class StaticTokenCredential:
    """TokenCredential that always returns the configured bearer token."""

    def __init__(self, token: str) -> None:
        if not token:
            raise ValueError("token cannot be empty")
        self._token = token

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        return AccessToken(self._token, int(time.time()) + STATIC_TOKEN_LIFETIME_SECONDS)


def _rule_input(rule: AccessRuleSpec) -> dict[str, Any]:
    """Mutation input shared by rule create and update; the type is create-only."""
    return {
        "runStage": rule.run_stage.value,
        "allowedUsers": list(rule.allowed_users),
        "allowedServiceAccounts": list(rule.allowed_service_accounts),
        "allowedTeams": list(rule.allowed_teams),
        "moduleAttestationPolicies": [
            {"predicateType": p.predicate_type, "publicKey": p.public_key}
            for p in rule.module_attestation_policies
        ],
    }


def _to_access_rule(node: dict[str, Any]) -> RemoteAccessRule:
    node = dict(node)
    parent = node.pop("managedIdentity", None) or {}
    node["managedIdentityId"] = parent.get("id")
    try:
        return RemoteAccessRule.model_validate(node)
    except PydanticValidationError as e:
        raise RemoteError(f"unexpected access rule in response: {e}") from e


def _to_managed_identity(node: dict[str, Any]) -> RemoteManagedIdentity:
    node = dict(node)
    node["accessRules"] = [_to_access_rule(r) for r in node.get("accessRules") or []]
    try:
        return RemoteManagedIdentity.model_validate(node)
    except PydanticValidationError as e:
        raise RemoteError(f"unexpected managed identity in response: {e}") from e


def _require(result: dict[str, Any], key: str) -> dict[str, Any]:
    node = result.get(key)
    if not node:
        raise RemoteError(f"response did not include {key}")
    return node


def _raise_for_problems(problems: list[dict[str, Any]] | None) -> None:
    """Raise the first GraphQL error or mutation problem, if any."""
    if not problems:
        return
    messages = "; ".join(str(p.get("message", "unknown error")) for p in problems)
    for problem in problems:
        code = problem.get("type") or (problem.get("extensions") or {}).get("code")
        if code == NOT_FOUND_CODE:
            raise NotFoundError(messages)
    raise RemoteError(messages)


class TharsisClient:
    """Remote Call Port backed by the Tharsis GraphQL API."""

    def __init__(self, config: Config, *, transport: Any | None = None) -> None:
        """Initialize the client.

        Args:
            config: Validated operator configuration.
            transport: Optional azure-core transport, mainly for testing.
        """
        self._config = config
        self._url = config.endpoint + GRAPHQL_PATH
        pipeline_policies = [
            policies.HeadersPolicy({"Accept": "application/json"}),
            policies.UserAgentPolicy(base_user_agent=USER_AGENT),
            policies.RetryPolicy(retry_total=config.max_retries),
            policies.BearerTokenCredentialPolicy(StaticTokenCredential(config.static_token)),
            policies.NetworkTraceLoggingPolicy(),
        ]
        kwargs: dict[str, Any] = {"policies": pipeline_policies}
        if transport is not None:
            kwargs["transport"] = transport
        self._client: PipelineClient = PipelineClient(base_url=config.endpoint, **kwargs)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TharsisClient:
        return self

    def __exit__(self, *exc_details: Any) -> None:
        self.close()

    def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Execute a GraphQL document and return its data section."""
        request = HttpRequest(
            "POST", self._url, json={"query": query, "variables": variables}
        )
        logger.debug("Sending GraphQL request", extra={"url": self._url})
        try:
            response = self._client.send_request(
                request,
                connection_timeout=self._config.request_timeout_seconds,
                read_timeout=self._config.request_timeout_seconds,
            )
        except AzureError as e:
            raise RemoteError(f"request to {self._url} failed: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(f"{self._url} returned 404")
        try:
            response.raise_for_status()
        except HttpResponseError as e:
            raise RemoteError(f"{self._url} returned {response.status_code}: {e.message}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise RemoteError(f"{self._url} returned a non-JSON body") from e

        _raise_for_problems(payload.get("errors"))
        return payload.get("data") or {}

    def _mutate(self, query: str, field: str, mutation_input: dict[str, Any]) -> dict[str, Any]:
        data = self._graphql(query, {"input": mutation_input})
        result = data.get(field) or {}
        _raise_for_problems(result.get("problems"))
        return result

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
        mutation_input = {
            "type": identity_type.value,
            "name": name,
            "description": description,
            "groupPath": group_path,
            "data": data,
            "accessRules": [
                {"type": rule.type.value, **_rule_input(rule)} for rule in access_rules
            ],
        }
        result = self._mutate(CREATE_MANAGED_IDENTITY, "createManagedIdentity", mutation_input)
        return _to_managed_identity(_require(result, "managedIdentity"))

    def get_managed_identity(self, identity_id: str) -> RemoteManagedIdentity:
        node = self._graphql(GET_MANAGED_IDENTITY, {"id": identity_id}).get("managedIdentity")
        if node is None:
            raise NotFoundError(f"managed identity with ID {identity_id} not found")
        return _to_managed_identity(node)

    def update_managed_identity(
        self, identity_id: str, *, description: str, data: str
    ) -> RemoteManagedIdentity:
        mutation_input = {"id": identity_id, "description": description, "data": data}
        result = self._mutate(UPDATE_MANAGED_IDENTITY, "updateManagedIdentity", mutation_input)
        return _to_managed_identity(_require(result, "managedIdentity"))

    def delete_managed_identity(self, identity_id: str) -> None:
        self._mutate(DELETE_MANAGED_IDENTITY, "deleteManagedIdentity", {"id": identity_id})

    def get_managed_identity_access_rules(self, identity_id: str) -> list[RemoteAccessRule]:
        node = self._graphql(GET_ACCESS_RULES, {"id": identity_id}).get("managedIdentity")
        if node is None:
            raise NotFoundError(f"managed identity with ID {identity_id} not found")
        return [_to_access_rule(r) for r in node.get("accessRules") or []]

    def create_managed_identity_access_rule(
        self, identity_id: str, rule: AccessRuleSpec
    ) -> RemoteAccessRule:
        mutation_input = {
            "managedIdentityId": identity_id,
            "type": rule.type.value,
            **_rule_input(rule),
        }
        result = self._mutate(
            CREATE_ACCESS_RULE, "createManagedIdentityAccessRule", mutation_input
        )
        return _to_access_rule(_require(result, "accessRule"))

    def get_managed_identity_access_rule(self, rule_id: str) -> RemoteAccessRule:
        node = self._graphql(GET_ACCESS_RULE, {"id": rule_id}).get("managedIdentityAccessRule")
        if node is None:
            raise NotFoundError(f"managed identity access rule with ID {rule_id} not found")
        return _to_access_rule(node)

    def update_managed_identity_access_rule(
        self, rule_id: str, rule: AccessRuleSpec
    ) -> RemoteAccessRule:
        mutation_input = {"id": rule_id, **_rule_input(rule)}
        result = self._mutate(
            UPDATE_ACCESS_RULE, "updateManagedIdentityAccessRule", mutation_input
        )
        return _to_access_rule(_require(result, "accessRule"))

    def delete_managed_identity_access_rule(self, rule_id: str) -> None:
        self._mutate(DELETE_ACCESS_RULE, "deleteManagedIdentityAccessRule", {"id": rule_id})
