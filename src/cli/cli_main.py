import traceback
from typing import Optional

import click

from src.cli.tools.role_seed import seed
from src.interfaces.lms_api.app import build_services, create_app
from src.utils.config_service import ConfigValidationError, load_app_config
from src.utils.logging import get_logger, setup_cli_logging
from src.utils.postgres_service_factory import PostgresServiceFactory
from src.utils.rbac.audit import AuditContext, log_authentication_event
from src.utils.rbac.errors import RBACError
from src.utils.rbac.registry import RBACConfigError, load_registry

logger = get_logger(__name__)


def _open_services(config_path: Optional[str], *, require_secret: bool = True):
    try:
        config = load_app_config(config_path, require_secret=require_secret)
    except ConfigValidationError as e:
        raise click.ClickException(f"Invalid configuration: {e}")
    factory = PostgresServiceFactory.from_app_config(config)
    return config, factory


def _lookup_role_id(services, role: str) -> str:
    """Accept either a role id or a role name."""
    found = services.store.get_role(role) or services.store.get_role_by_name(role)
    if found is None:
        raise click.ClickException(f"Role '{role}' not found")
    return found.id


@click.group()
def cli():
    pass


@click.command(name='seed-roles')
@click.option('--catalog', '-r', 'roles_path', type=str, help="Path to auth_roles.yaml (defaults to built-in catalog)")
@click.option('--config', '-c', 'config_path', type=str, help="Path to lms.yaml")
@click.option('--verbosity', '-v', type=int, default=3, help="Logging verbosity level (0-4)")
def seed_roles(roles_path: str, config_path: str, verbosity: int):
    """Create or refresh the role catalog in the database."""
    setup_cli_logging(verbosity=verbosity)
    try:
        registry = load_registry(roles_path)
    except RBACConfigError as e:
        raise click.ClickException(str(e))

    _, factory = _open_services(config_path, require_secret=False)
    try:
        summary = seed(registry, factory.rbac_store)
    except RBACError as e:
        raise click.ClickException(f"Role seeding failed: {e}")
    finally:
        factory.close()

    click.echo(f"Created: {', '.join(summary['created']) or '-'}")
    click.echo(f"Updated: {', '.join(summary['updated']) or '-'}")


@click.command(name='create-user')
@click.option('--email', '-e', type=str, required=True, help="Email of the new identity")
@click.option('--name', '-n', 'display_name', type=str, help="Display name")
@click.option('--role', '-r', type=str, help="Role id or name to grant (defaults to the catalog default role)")
@click.option('--config', '-c', 'config_path', type=str, help="Path to lms.yaml")
@click.option('--verbosity', '-v', type=int, default=3, help="Logging verbosity level (0-4)")
def create_user(email: str, display_name: str, role: str, config_path: str, verbosity: int):
    """Create an identity and grant it its first role."""
    setup_cli_logging(verbosity=verbosity)
    config, factory = _open_services(config_path)
    try:
        services = build_services(config, factory)
        role_name = role or load_registry(config.roles_path).default_role
        role_id = _lookup_role_id(services, role_name)
        identity = services.store.create_identity(email=email, display_name=display_name)
        result = services.roles.assign_role(identity.id, role_id, context=AuditContext())
        if not result.ok:
            raise click.ClickException(f"User created but role grant failed: {result.message}")
    except (RBACError, RBACConfigError) as e:
        raise click.ClickException(str(e))
    finally:
        factory.close()

    click.echo(identity.id)


@click.command(name='assign-role')
@click.argument('identity_id')
@click.argument('role')
@click.option('--config', '-c', 'config_path', type=str, help="Path to lms.yaml")
@click.option('--verbosity', '-v', type=int, default=3, help="Logging verbosity level (0-4)")
def assign_role(identity_id: str, role: str, config_path: str, verbosity: int):
    """Grant ROLE (id or name) to IDENTITY_ID as a system action."""
    setup_cli_logging(verbosity=verbosity)
    config, factory = _open_services(config_path)
    try:
        services = build_services(config, factory)
        result = services.roles.assign_role(identity_id, _lookup_role_id(services, role), context=AuditContext())
    except RBACError as e:
        raise click.ClickException(str(e))
    finally:
        factory.close()

    if not result.ok:
        raise click.ClickException(result.message)
    click.echo(result.message)


@click.command(name='revoke-role')
@click.argument('identity_id')
@click.argument('role')
@click.option('--config', '-c', 'config_path', type=str, help="Path to lms.yaml")
@click.option('--verbosity', '-v', type=int, default=3, help="Logging verbosity level (0-4)")
def revoke_role(identity_id: str, role: str, config_path: str, verbosity: int):
    """Revoke ROLE (id or name) from IDENTITY_ID as a system action."""
    setup_cli_logging(verbosity=verbosity)
    config, factory = _open_services(config_path)
    try:
        services = build_services(config, factory)
        result = services.roles.revoke_role(identity_id, _lookup_role_id(services, role), context=AuditContext())
    except RBACError as e:
        raise click.ClickException(str(e))
    finally:
        factory.close()

    if not result.ok:
        raise click.ClickException(result.message)
    click.echo(result.message)
    if result.active_role_cleared:
        click.echo("Active role cleared; the next sign-in selects the first held role")


def _change_role_status(role: str, is_active: bool, config_path: Optional[str], verbosity: int) -> None:
    setup_cli_logging(verbosity=verbosity)
    config, factory = _open_services(config_path)
    try:
        services = build_services(config, factory)
        result = services.roles.set_role_status(_lookup_role_id(services, role), is_active, context=AuditContext())
    except RBACError as e:
        raise click.ClickException(str(e))
    finally:
        factory.close()

    if not result.ok:
        raise click.ClickException(result.message)
    click.echo(result.message)


@click.command(name='enable-role')
@click.argument('role')
@click.option('--config', '-c', 'config_path', type=str, help="Path to lms.yaml")
@click.option('--verbosity', '-v', type=int, default=3, help="Logging verbosity level (0-4)")
def enable_role(role: str, config_path: str, verbosity: int):
    """Re-enable a disabled ROLE (id or name)."""
    _change_role_status(role, True, config_path, verbosity)


@click.command(name='disable-role')
@click.argument('role')
@click.option('--config', '-c', 'config_path', type=str, help="Path to lms.yaml")
@click.option('--verbosity', '-v', type=int, default=3, help="Logging verbosity level (0-4)")
def disable_role(role: str, config_path: str, verbosity: int):
    """Soft-disable ROLE (id or name); its assignments are kept."""
    _change_role_status(role, False, config_path, verbosity)


@click.command(name='set-role-permissions')
@click.argument('role')
@click.argument('permissions', nargs=-1)
@click.option('--config', '-c', 'config_path', type=str, help="Path to lms.yaml")
@click.option('--verbosity', '-v', type=int, default=3, help="Logging verbosity level (0-4)")
def set_role_permissions(role: str, permissions, config_path: str, verbosity: int):
    """Replace the permissions of ROLE (id or name) with PERMISSIONS."""
    setup_cli_logging(verbosity=verbosity)
    config, factory = _open_services(config_path)
    try:
        services = build_services(config, factory)
        result = services.roles.update_role_permissions(
            _lookup_role_id(services, role), list(permissions), context=AuditContext()
        )
    except RBACError as e:
        raise click.ClickException(str(e))
    finally:
        factory.close()

    if not result.ok:
        raise click.ClickException(result.message)
    click.echo(result.message)


@click.command(name='issue-token')
@click.argument('identity_id')
@click.option('--config', '-c', 'config_path', type=str, help="Path to lms.yaml")
@click.option('--verbosity', '-v', type=int, default=2, help="Logging verbosity level (0-4)")
def issue_token(identity_id: str, config_path: str, verbosity: int):
    """Print a bearer token for IDENTITY_ID (runs the first sign-in role selection)."""
    setup_cli_logging(verbosity=verbosity)
    config, factory = _open_services(config_path)
    try:
        services = build_services(config, factory)
        identity = services.store.get_identity(identity_id)
        if identity is None:
            log_authentication_event(identity_id, 'token_issued', False, 'cli', 'unknown identity')
            raise click.ClickException(f"User {identity_id} not found")
        grants = services.store.list_grants(identity.id)
        active_role_id = services.roles.ensure_active_role(identity, grants)
        token = services.tokens.issue_token(identity.id, active_role_id)
    except RBACError as e:
        raise click.ClickException(str(e))
    finally:
        factory.close()

    log_authentication_event(identity_id, 'token_issued', True, 'cli')
    click.echo(token)


@click.command()
@click.option('--config', '-c', 'config_path', type=str, help="Path to lms.yaml")
@click.option('--host', type=str, help="Bind address (overrides config)")
@click.option('--port', type=int, help="Port (overrides config)")
@click.option('--verbosity', '-v', type=int, help="Logging verbosity level (0-4)")
def serve(config_path: str, host: str, port: int, verbosity: int):
    """Run the access-control API."""
    try:
        config = load_app_config(config_path)
    except ConfigValidationError as e:
        raise click.ClickException(f"Invalid configuration: {e}")
    setup_cli_logging(verbosity=verbosity if verbosity is not None else config.verbosity)

    try:
        app = create_app(config)
        app.run(host=host or config.host, port=port or config.port, debug=config.debug)
    except Exception as e:
        if config.verbosity >= 4:
            traceback.print_exc()
        raise click.ClickException(f"Failed due to the following exception: {e}")


def main():
    """
    Entrypoint for the lms-access cli tool implemented using Click.
    """
    cli.add_command(seed_roles)
    cli.add_command(create_user)
    cli.add_command(assign_role)
    cli.add_command(revoke_role)
    cli.add_command(enable_role)
    cli.add_command(disable_role)
    cli.add_command(set_role_permissions)
    cli.add_command(issue_token)
    cli.add_command(serve)
    cli()
