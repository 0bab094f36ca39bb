"""Codec for the opaque managed identity credential payload.

The remote service persists all vendor-specific credential fields in one
string: base64 of a compact JSON object whose keys are omitted when empty.
Already-persisted remote data depends on that exact shape, so key names,
key order and the omission rule must not change.

Inside this package credentials are handled as a tagged variant
(AWSCredentials, AzureCredentials, TharsisCredentials). The flattened
string form exists only at this module's boundary.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from enum import Enum

from .errors import DecodeError, UnsupportedTypeError, ValidationError


class ManagedIdentityType(str, Enum):
    """Supported managed identity types (wire values)."""

    AWS_FEDERATED = "aws_federated"
    AZURE_FEDERATED = "azure_federated"
    THARSIS_FEDERATED = "tharsis_federated"

    @classmethod
    def _missing_(cls, value: object) -> ManagedIdentityType | None:
        # Accept "aws-federated", "AWS_FEDERATED" and similar spellings
        if isinstance(value, str):
            normalized = value.strip().lower().replace("-", "_")
            for member in cls:
                if member.value == normalized:
                    return member
        return None


# JSON keys in serialization order
ROLE_KEY = "role"
CLIENT_ID_KEY = "clientId"
TENANT_ID_KEY = "tenantId"
SERVICE_ACCOUNT_PATH_KEY = "serviceAccountPath"
SUBJECT_KEY = "subject"


@dataclass(frozen=True)
class CredentialFields:
    """Flattened credential field set.

    None means the field is absent. An empty string is a present but
    empty value, which only ever comes back from decode.
    """

    role: str | None = None
    client_id: str | None = None
    tenant_id: str | None = None
    service_account_path: str | None = None
    subject: str | None = None


@dataclass(frozen=True)
class AWSCredentials:
    role: str


@dataclass(frozen=True)
class AzureCredentials:
    client_id: str
    tenant_id: str


@dataclass(frozen=True)
class TharsisCredentials:
    service_account_path: str


Credentials = AWSCredentials | AzureCredentials | TharsisCredentials


def _require(value: str | None, message: str, field: str) -> str:
    if not value:
        raise ValidationError(message, field=field)
    return value


def _forbid(value: str | None, message: str, field: str) -> None:
    if value:
        raise ValidationError(message, field=field)


def parse_identity_type(identity_type: ManagedIdentityType | str) -> ManagedIdentityType:
    """Resolve a type string to the enumeration.

    Raises:
        UnsupportedTypeError: If the type is not one of the supported values.
    """
    if isinstance(identity_type, ManagedIdentityType):
        return identity_type
    try:
        return ManagedIdentityType(identity_type)
    except ValueError as e:
        raise UnsupportedTypeError(str(identity_type)) from e


def to_credentials(
    identity_type: ManagedIdentityType | str, fields: CredentialFields
) -> Credentials:
    """Validate a field set against its type and build the tagged variant.

    Args:
        identity_type: Managed identity type.
        fields: Candidate values for every vendor-specific field; None and
            "" are both treated as empty.

    Returns:
        The credentials variant for the type.

    Raises:
        ValidationError: Naming the first offending field.
        UnsupportedTypeError: If the type is not supported.
    """
    kind = parse_identity_type(identity_type)

    if kind is ManagedIdentityType.AWS_FEDERATED:
        role = _require(
            fields.role, "non-empty role is required for AWS managed identity", "role"
        )
        _forbid(
            fields.client_id,
            "non-empty client ID is not allowed for AWS managed identity",
            "clientId",
        )
        _forbid(
            fields.tenant_id,
            "non-empty tenant ID is not allowed for AWS managed identity",
            "tenantId",
        )
        _forbid(
            fields.service_account_path,
            "non-empty service account path is not allowed for AWS managed identity",
            "serviceAccountPath",
        )
        return AWSCredentials(role=role)

    if kind is ManagedIdentityType.AZURE_FEDERATED:
        _forbid(fields.role, "non-empty role is not allowed for Azure managed identity", "role")
        client_id = _require(
            fields.client_id,
            "non-empty client ID is required for Azure managed identity",
            "clientId",
        )
        tenant_id = _require(
            fields.tenant_id,
            "non-empty tenant ID is required for Azure managed identity",
            "tenantId",
        )
        _forbid(
            fields.service_account_path,
            "non-empty service account path is not allowed for Azure managed identity",
            "serviceAccountPath",
        )
        return AzureCredentials(client_id=client_id, tenant_id=tenant_id)

    if kind is ManagedIdentityType.THARSIS_FEDERATED:
        _forbid(fields.role, "non-empty role is not allowed for Tharsis managed identity", "role")
        _forbid(
            fields.client_id,
            "non-empty client ID is not allowed for Tharsis managed identity",
            "clientId",
        )
        _forbid(
            fields.tenant_id,
            "non-empty tenant ID is not allowed for Tharsis managed identity",
            "tenantId",
        )
        service_account_path = _require(
            fields.service_account_path,
            "non-empty service account path is required for Tharsis managed identity",
            "serviceAccountPath",
        )
        return TharsisCredentials(service_account_path=service_account_path)

    raise UnsupportedTypeError(kind.value)


def _credentials_to_json(credentials: Credentials) -> dict[str, str]:
    if isinstance(credentials, AWSCredentials):
        return {ROLE_KEY: credentials.role}
    if isinstance(credentials, AzureCredentials):
        return {CLIENT_ID_KEY: credentials.client_id, TENANT_ID_KEY: credentials.tenant_id}
    return {SERVICE_ACCOUNT_PATH_KEY: credentials.service_account_path}


def encode_credentials(credentials: Credentials) -> str:
    """Serialize an already-validated credentials variant."""
    raw = json.dumps(_credentials_to_json(credentials), separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def encode_payload(identity_type: ManagedIdentityType | str, fields: CredentialFields) -> str:
    """Validate and encode credential fields into the opaque payload string.

    Raises:
        ValidationError: If the fields do not match the type.
        UnsupportedTypeError: If the type is not supported.
    """
    return encode_credentials(to_credentials(identity_type, fields))


def decode_payload(encoded: str) -> CredentialFields:
    """Decode an opaque payload string back into a field set.

    Fields missing from the payload come back as None.

    Raises:
        DecodeError: If the base64 or JSON layer is malformed.
    """
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecodeError(f"managed identity data is not valid base64: {e}") from e

    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"managed identity data is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise DecodeError("managed identity data must be a JSON object")

    def get(key: str) -> str | None:
        value = data.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise DecodeError(f"managed identity data field '{key}' must be a string")
        return value

    return CredentialFields(
        role=get(ROLE_KEY),
        client_id=get(CLIENT_ID_KEY),
        tenant_id=get(TENANT_ID_KEY),
        service_account_path=get(SERVICE_ACCOUNT_PATH_KEY),
        subject=get(SUBJECT_KEY),
    )
