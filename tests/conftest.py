"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for tharsis_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from identity_operator.models import AccessRuleSpec, ManagedIdentitySpec  # noqa: E402
from identity_operator.payload_codec import ManagedIdentityType  # noqa: E402
from tharsis_mock import MockTharsisAPI  # noqa: E402


@pytest.fixture
def api() -> MockTharsisAPI:
    """Fresh in-memory Tharsis API with structured not-found errors."""
    return MockTharsisAPI()


@pytest.fixture
def azure_spec() -> ManagedIdentitySpec:
    """Azure managed identity with one plan-stage rule."""
    return ManagedIdentitySpec(
        type=ManagedIdentityType.AZURE_FEDERATED,
        name="n",
        group_path="g",
        description="deployer",
        azure_client_id="c",
        azure_tenant_id="t",
        access_rules=[
            AccessRuleSpec(run_stage="plan", allowed_users=["alice", "bob"]),
        ],
    )


@pytest.fixture
def aws_spec() -> ManagedIdentitySpec:
    """AWS managed identity with plan and apply rules."""
    return ManagedIdentitySpec(
        type=ManagedIdentityType.AWS_FEDERATED,
        name="aws-deployer",
        group_path="platform/prod",
        aws_role="arn:aws:iam::123456789012:role/deployer",
        access_rules=[
            AccessRuleSpec(run_stage="plan", allowed_teams=["platform"]),
            AccessRuleSpec(
                run_stage="apply",
                allowed_users=["alice"],
                allowed_service_accounts=["platform/ci"],
            ),
        ],
    )
