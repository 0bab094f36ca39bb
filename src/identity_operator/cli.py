"""Managed Identity Operator CLI (mio).

Usage:
    mio apply spec.yaml --state state.json       # Create/update/replace the identity
    mio apply spec.yaml --state s.json --dry-run # Plan only
    mio refresh --state state.json               # Re-read remote state
    mio import <id> --state state.json           # Track an existing identity
    mio destroy --state state.json               # Delete the tracked identity
    mio payload encode --type aws_federated --role arn:aws:iam::...
    mio payload decode <data>
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from . import main as entry
from .config import Config, ConfigurationError
from .errors import ReconcileError
from .payload_codec import CredentialFields, ManagedIdentityType, decode_payload, encode_payload

DEFAULT_STATE_FILE = "managed-identity.state.json"

state_option = click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_STATE_FILE,
    show_default=True,
    help="State file written after each run.",
)


def load_config() -> Config:
    """Load configuration and configure logging, exiting with code 2 on errors."""
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        sys.exit(entry.EXIT_CONFIG_ERROR)

    entry.setup_logging(config.logging_level, config.enable_json_logging)
    return config


@click.group()
@click.version_option("0.1.0", prog_name="mio")
def cli() -> None:
    """Managed Identity Operator CLI."""


@cli.command()
@click.argument("spec_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@state_option
@click.option("--dry-run", is_flag=True, help="Plan only, do not change anything.")
def apply(spec_path: Path, state_path: Path, dry_run: bool) -> None:
    """Reconcile the managed identity described in SPEC_PATH."""
    config = load_config()
    sys.exit(entry.apply(config, spec_path, state_path, dry_run=dry_run))


@cli.command()
@state_option
def refresh(state_path: Path) -> None:
    """Re-read the tracked managed identity into the state file."""
    config = load_config()
    sys.exit(entry.refresh(config, state_path))


@cli.command("import")
@click.argument("identity_id")
@state_option
def import_(identity_id: str, state_path: Path) -> None:
    """Start tracking an existing managed identity by IDENTITY_ID."""
    config = load_config()
    sys.exit(entry.import_identity(config, identity_id, state_path))


@cli.command()
@state_option
@click.option("--dry-run", is_flag=True, help="Plan only, do not change anything.")
def destroy(state_path: Path, dry_run: bool) -> None:
    """Delete the tracked managed identity."""
    config = load_config()
    sys.exit(entry.destroy(config, state_path, dry_run=dry_run))


# =============================================================================
# Payload Commands
# =============================================================================


@cli.group()
def payload() -> None:
    """Encode and decode managed identity credential payloads."""


@payload.command()
@click.option(
    "--type",
    "identity_type",
    required=True,
    type=click.Choice([t.value for t in ManagedIdentityType]),
    help="Managed identity type.",
)
@click.option("--role", default=None, help="AWS IAM role (aws_federated).")
@click.option("--client-id", default=None, help="Azure client ID (azure_federated).")
@click.option("--tenant-id", default=None, help="Azure tenant ID (azure_federated).")
@click.option(
    "--service-account-path",
    default=None,
    help="Tharsis service account path (tharsis_federated).",
)
def encode(
    identity_type: str,
    role: str | None,
    client_id: str | None,
    tenant_id: str | None,
    service_account_path: str | None,
) -> None:
    """Print the opaque payload for a set of credential fields."""
    fields = CredentialFields(
        role=role,
        client_id=client_id,
        tenant_id=tenant_id,
        service_account_path=service_account_path,
    )
    try:
        click.echo(encode_payload(identity_type, fields))
    except ReconcileError as e:
        raise click.ClickException(str(e)) from e


@payload.command()
@click.argument("data")
def decode(data: str) -> None:
    """Print the credential fields of an opaque payload as JSON."""
    try:
        fields = decode_payload(data)
    except ReconcileError as e:
        raise click.ClickException(str(e)) from e

    decoded = {
        "role": fields.role,
        "clientId": fields.client_id,
        "tenantId": fields.tenant_id,
        "serviceAccountPath": fields.service_account_path,
        "subject": fields.subject,
    }
    click.echo(json.dumps({k: v for k, v in decoded.items() if v is not None}, indent=2))


if __name__ == "__main__":
    cli()
