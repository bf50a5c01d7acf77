"""
Admin CLI for MobileTester.

Manages users and API keys, and gives operators a read-only view of the
device catalog and of jobs across all users.
"""

import asyncio
import json
import os
import re
import sys
import uuid
from datetime import UTC, datetime

import click

from mt_common.devices import DeviceCatalog
from mt_common.models import JOB_STATUSES, APIKey, User
from mt_persistence.sqlite_repository import SQLiteJobRepository
from mt_server.auth import generate_api_key, hash_api_key


def get_db_path() -> str:
    return os.environ.get("MT_DB_PATH", "mobiletester.db")


def get_repository() -> SQLiteJobRepository:
    return SQLiteJobRepository(get_db_path())


def validate_email(email: str) -> bool:
    pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
    return re.match(pattern, email) is not None


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


@click.group()
def cli():
    """MobileTester Admin - Manage users, API keys and jobs."""


@cli.group()
def user():
    """Manage users."""


@cli.group()
def key():
    """Manage API keys."""


# ============================================================================
# User Commands
# ============================================================================


@user.command("create")
@click.option("--name", required=True, help="User's display name")
@click.option("--email", required=True, help="User's email address")
def user_create(name: str, email: str):
    """Create a new user."""
    if not validate_email(email):
        click.echo(f"Error: Invalid email format: {email}", err=True)
        sys.exit(1)

    async def create():
        repo = get_repository()
        await repo.initialize()

        try:
            if await repo.get_user_by_email(email):
                click.echo(f"Error: User with email {email} already exists", err=True)
                sys.exit(1)

            user_obj = User(
                id=str(uuid.uuid4()),
                name=name,
                email=email,
                created_at=datetime.now(UTC),
            )
            await repo.create_user(user_obj)

            click.echo("✓ User created successfully")
            click.echo(f"  ID:    {user_obj.id}")
            click.echo(f"  Name:  {user_obj.name}")
            click.echo(f"  Email: {user_obj.email}")

        finally:
            await repo.close()

    run_async(create())


@user.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def user_list(json_output: bool):
    """List all users."""

    async def list_users():
        repo = get_repository()
        await repo.initialize()

        try:
            users = await repo.list_users()

            if json_output:
                click.echo(json.dumps([u.to_dict() for u in users], indent=2))
                return

            if not users:
                click.echo("No users found.")
                return

            click.echo(f"\n{'ID':<38} {'Name':<20} {'Email':<30} {'Status':<10}")
            click.echo("-" * 100)
            for u in users:
                status = "Active" if u.is_active else "Inactive"
                click.echo(f"{u.id:<38} {u.name:<20} {u.email:<30} {status:<10}")
            click.echo()

        finally:
            await repo.close()

    run_async(list_users())


def _set_user_active(user_id: str, is_active: bool) -> None:
    async def update():
        repo = get_repository()
        await repo.initialize()

        try:
            user_obj = await repo.get_user(user_id)
            if not user_obj:
                click.echo(f"Error: User not found: {user_id}", err=True)
                sys.exit(1)

            await repo.update_user_active_status(user_id, is_active)

            action = "activated" if is_active else "deactivated"
            click.echo(f"✓ User {action}: {user_obj.email}")

        finally:
            await repo.close()

    run_async(update())


@user.command("deactivate")
@click.argument("user_id")
def user_deactivate(user_id: str):
    """Deactivate a user."""
    _set_user_active(user_id, False)


@user.command("activate")
@click.argument("user_id")
def user_activate(user_id: str):
    """Activate a user."""
    _set_user_active(user_id, True)


# ============================================================================
# API Key Commands
# ============================================================================


@key.command("create")
@click.option("--email", required=True, help="Email of the user who owns the key")
@click.option("--name", required=True, help="Descriptive name for this API key")
def key_create(email: str, name: str):
    """Create a new API key for a user."""

    async def create():
        repo = get_repository()
        await repo.initialize()

        try:
            user_obj = await repo.get_user_by_email(email)
            if not user_obj:
                click.echo(f"Error: User not found with email: {email}", err=True)
                sys.exit(1)

            api_key_plaintext = generate_api_key()
            api_key_obj = APIKey(
                id=str(uuid.uuid4()),
                user_id=user_obj.id,
                key_hash=hash_api_key(api_key_plaintext),
                name=name,
                created_at=datetime.now(UTC),
            )
            await repo.create_api_key(api_key_obj)

            click.echo("\n✓ API key created successfully")
            click.echo(f"\n  API Key: {api_key_plaintext}")
            click.echo(f"  Key ID:  {api_key_obj.id}")
            click.echo(f"  Name:    {name}")
            click.echo(f"  User:    {user_obj.email}")
            click.echo("\n  ⚠️  IMPORTANT: This is the only time you'll see this key!")
            click.echo("     Save it securely now.\n")

        finally:
            await repo.close()

    run_async(create())


@key.command("revoke")
@click.argument("key_id")
def key_revoke(key_id: str):
    """Revoke an API key."""

    async def revoke():
        repo = get_repository()
        await repo.initialize()

        try:
            await repo.revoke_api_key(key_id)
        except KeyError:
            click.echo(f"Error: API key not found: {key_id}", err=True)
            sys.exit(1)
        finally:
            await repo.close()

        click.echo(f"✓ API key revoked: {key_id}")

    run_async(revoke())


# ============================================================================
# Catalog and Job Commands
# ============================================================================


@cli.command("devices")
@click.option("--manufacturer", help="Only show devices from this manufacturer")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def devices(manufacturer: str | None, json_output: bool):
    """List the device catalog."""
    catalog = DeviceCatalog()
    entries = catalog.by_manufacturer(manufacturer) if manufacturer else catalog.list_all()
    defaults = set(catalog.list_default())

    if json_output:
        click.echo(json.dumps([d.to_dict() for d in entries], indent=2))
        return

    click.echo(f"\n{'ID':<28} {'Name':<28} {'Android':<9} {'API':<5} {'Default':<8}")
    click.echo("-" * 80)
    for d in entries:
        default = "yes" if d.id in defaults else ""
        click.echo(
            f"{d.id:<28} {d.name:<28} {d.android_version:<9} {d.api_level:<5} {default:<8}"
        )
    click.echo()


@cli.command("jobs")
@click.option(
    "--status", type=click.Choice(JOB_STATUSES), help="Only show jobs in this status"
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def jobs(status: str | None, json_output: bool):
    """List jobs of all users."""

    async def list_jobs():
        repo = get_repository()
        await repo.initialize()

        try:
            job_list = await repo.list_jobs((status,) if status else None)

            if json_output:
                click.echo(json.dumps([j.to_summary_dict() for j in job_list], indent=2))
                return

            if not job_list:
                click.echo("No jobs found.")
                return

            click.echo(f"\n{'ID':<38} {'Status':<10} {'Devices':<8} {'Created':<26}")
            click.echo("-" * 85)
            for j in job_list:
                created = j.created_at.isoformat() if j.created_at else ""
                click.echo(
                    f"{j.id:<38} {j.status:<10} {len(j.device_selection):<8} {created:<26}"
                )
            click.echo()

        finally:
            await repo.close()

    run_async(list_jobs())


if __name__ == "__main__":
    cli()
