"""Tests for the managed identity credential payload codec."""

import base64
import json

import pytest

from identity_operator.errors import DecodeError, UnsupportedTypeError, ValidationError
from identity_operator.payload_codec import (
    AWSCredentials,
    AzureCredentials,
    CredentialFields,
    ManagedIdentityType,
    TharsisCredentials,
    decode_payload,
    encode_payload,
    parse_identity_type,
    to_credentials,
)


def _raw(encoded: str) -> str:
    return base64.b64decode(encoded).decode("utf-8")


def _encode_json(value: object) -> str:
    return base64.b64encode(json.dumps(value).encode("utf-8")).decode("ascii")


class TestManagedIdentityType:
    """Tests for type parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("aws_federated", ManagedIdentityType.AWS_FEDERATED),
            ("aws-federated", ManagedIdentityType.AWS_FEDERATED),
            ("AZURE_FEDERATED", ManagedIdentityType.AZURE_FEDERATED),
            ("tharsis-federated", ManagedIdentityType.THARSIS_FEDERATED),
        ],
    )
    def test_accepted_spellings(self, value: str, expected: ManagedIdentityType) -> None:
        assert parse_identity_type(value) is expected

    def test_unknown_type_names_the_type(self) -> None:
        with pytest.raises(UnsupportedTypeError) as exc_info:
            parse_identity_type("gcp-federated")

        assert exc_info.value.identity_type == "gcp-federated"
        assert "gcp-federated" in str(exc_info.value)
        assert exc_info.value.field == "type"

    def test_unsupported_type_is_a_validation_error(self) -> None:
        with pytest.raises(ValidationError):
            encode_payload("kubernetes", CredentialFields(role="r"))


class TestEncode:
    """Tests for payload encoding."""

    def test_aws_role_round_trip(self) -> None:
        encoded = encode_payload("aws-federated", CredentialFields(role="some-iam-role"))

        decoded = decode_payload(encoded)
        assert decoded.role == "some-iam-role"
        assert decoded.client_id is None
        assert decoded.tenant_id is None
        assert decoded.subject is None

    def test_aws_role_empty_with_client_id_fails_on_role(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            encode_payload("aws-federated", CredentialFields(role="", client_id="x"))

        assert exc_info.value.field == "role"
        assert "role is required" in str(exc_info.value)

    def test_azure_exact_json(self) -> None:
        encoded = encode_payload(
            ManagedIdentityType.AZURE_FEDERATED,
            CredentialFields(client_id="c", tenant_id="t"),
        )

        assert _raw(encoded) == '{"clientId":"c","tenantId":"t"}'

    def test_aws_exact_json(self) -> None:
        encoded = encode_payload("aws_federated", CredentialFields(role="arn:aws:iam::1:role/x"))

        assert _raw(encoded) == '{"role":"arn:aws:iam::1:role/x"}'

    def test_tharsis_exact_json(self) -> None:
        encoded = encode_payload(
            "tharsis_federated", CredentialFields(service_account_path="group/sa")
        )

        assert _raw(encoded) == '{"serviceAccountPath":"group/sa"}'

    def test_subject_is_never_encoded(self) -> None:
        encoded = encode_payload("aws_federated", CredentialFields(role="r", subject="s"))

        assert "subject" not in _raw(encoded)

    @pytest.mark.parametrize(
        "identity_type,fields,bad_field",
        [
            ("aws_federated", CredentialFields(role="r", tenant_id="t"), "tenantId"),
            (
                "aws_federated",
                CredentialFields(role="r", service_account_path="p"),
                "serviceAccountPath",
            ),
            ("azure_federated", CredentialFields(role="r", client_id="c", tenant_id="t"), "role"),
            ("azure_federated", CredentialFields(client_id="c"), "tenantId"),
            ("azure_federated", CredentialFields(tenant_id="t"), "clientId"),
            ("tharsis_federated", CredentialFields(), "serviceAccountPath"),
            (
                "tharsis_federated",
                CredentialFields(service_account_path="p", client_id="c"),
                "clientId",
            ),
        ],
    )
    def test_field_mismatch_names_field(
        self, identity_type: str, fields: CredentialFields, bad_field: str
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            encode_payload(identity_type, fields)

        assert exc_info.value.field == bad_field


class TestToCredentials:
    """Tests for the tagged credentials variant."""

    def test_variants(self) -> None:
        assert to_credentials("aws_federated", CredentialFields(role="r")) == AWSCredentials(
            role="r"
        )
        assert to_credentials(
            "azure_federated", CredentialFields(client_id="c", tenant_id="t")
        ) == AzureCredentials(client_id="c", tenant_id="t")
        assert to_credentials(
            "tharsis_federated", CredentialFields(service_account_path="g/sa")
        ) == TharsisCredentials(service_account_path="g/sa")


class TestDecode:
    """Tests for payload decoding."""

    def test_decodes_server_subject(self) -> None:
        encoded = _encode_json({"clientId": "c", "tenantId": "t", "subject": "sub"})

        decoded = decode_payload(encoded)
        assert decoded == CredentialFields(client_id="c", tenant_id="t", subject="sub")

    def test_unknown_keys_ignored(self) -> None:
        decoded = decode_payload(_encode_json({"role": "r", "extra": 1}))

        assert decoded.role == "r"

    def test_invalid_base64(self) -> None:
        with pytest.raises(DecodeError):
            decode_payload("not base64!!")

    def test_invalid_json(self) -> None:
        with pytest.raises(DecodeError):
            decode_payload(base64.b64encode(b"{not json").decode("ascii"))

    def test_non_object_json(self) -> None:
        with pytest.raises(DecodeError):
            decode_payload(_encode_json(["role"]))

    def test_non_string_value(self) -> None:
        with pytest.raises(DecodeError) as exc_info:
            decode_payload(_encode_json({"role": 42}))

        assert "role" in str(exc_info.value)
