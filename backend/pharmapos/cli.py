# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/pharmapos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to "pharmapos:create_app" (PowerShell: $env:FLASK_APP="pharmapos:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that don't exist yet (use `flask db upgrade` for migrations).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo [--password "Password123!"]
#   Create a demo tenant with one user per role and a few products.
#
# Tenant management (MULTI-TENANT):
# - python -m flask tenants list
#   List all tenants with branch and user counts.
# - python -m flask tenants create --name "City Pharmacy" --owner-email owner@city.local --owner-password "Password123!"
#   Create a tenant, its owner and its first branch.
#
# Branch management:
# - python -m flask branches list --tenant-id 1
# - python -m flask branches create --tenant-id 1 --name "Kampala Road" --code "KLA"
#
# User inspection/bootstrap:
# - python -m flask users list [--tenant-id 1]
# - python -m flask users create --tenant-id 1 --branch-id 1 --email cashier@city.local --password "Password123!" --role cashier
# - python -m flask users set-subscription --email owner@city.local --status expired
#
# Maintenance:
# - python -m flask maintenance cleanup-sessions
#   Delete expired and revoked sessions older than the retention window.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Branch, Product, Tenant, User, ROLES, SUBSCRIPTION_STATUSES
from .services import branch_service, session_service
from .services.auth_service import create_tenant, create_user, PasswordValidationError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Database tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


DEMO_PRODUCTS = (
    # name, sku, price, cost_price, quantity
    ("Paracetamol 500mg", "PCM-500", 500, 300, 200),
    ("Amoxicillin 250mg", "AMX-250", 1500, 900, 80),
    ("ORS Sachet", "ORS-001", 800, 450, 5),
)


@system_group.command('seed-demo')
@click.option('--name', default='Demo Pharmacy', show_default=True, help='Tenant name')
@click.option('--password', default='Password123!', show_default=True, help='Password for every demo user')
@with_appcontext
def seed_demo(name, password):
    """
    Create a demo tenant: owner, manager, cashier and staff users plus a few products.

    SECURITY: Demo passwords are shared. Never run this against production.
    """
    slug = name.lower().replace(" ", "")
    try:
        tenant, owner, branch = create_tenant(name, f"owner@{slug}.local", password)
    except (ValueError, PasswordValidationError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created tenant {tenant.name} (ID: {tenant.id}) with branch {branch.name}")
    click.echo(f"  owner    {owner.email}")

    for role in ("manager", "cashier", "staff"):
        user = create_user(
            f"{role}@{slug}.local",
            password,
            tenant.id,
            role=role,
            branch_id=branch.id,
            first_name=role.title(),
            last_name="Demo",
        )
        click.echo(f"  {role:<8} {user.email}")

    for product_name, sku, price, cost_price, quantity in DEMO_PRODUCTS:
        db.session.add(Product(
            tenant_id=tenant.id,
            branch_id=branch.id,
            name=product_name,
            sku=sku,
            price=price,
            cost_price=cost_price,
            quantity=quantity,
            min_stock_level=10,
        ))
    db.session.commit()
    click.echo(f"PASS Added {len(DEMO_PRODUCTS)} products")


@click.group('tenants')
def tenants_group():
    """Tenant management commands."""


@tenants_group.command('list')
@with_appcontext
def list_tenants():
    """List all tenants."""
    tenants = db.session.query(Tenant).order_by(Tenant.id).all()

    if not tenants:
        click.echo("No tenants found.")
        return

    click.echo("\n" + "=" * 80)
    click.echo(f"{'ID':<5} {'Name':<30} {'Code':<15} {'Active':<8} {'Branches':<9} {'Users'}")
    click.echo("=" * 80)

    for tenant in tenants:
        branch_count = db.session.query(Branch).filter_by(tenant_id=tenant.id).count()
        user_count = db.session.query(User).filter_by(tenant_id=tenant.id).count()
        active_str = "Yes" if tenant.is_active else "No"
        click.echo(
            f"{tenant.id:<5} {tenant.name:<30} {tenant.code or '-':<15} {active_str:<8} {branch_count:<9} {user_count}"
        )

    click.echo("=" * 80 + "\n")


@tenants_group.command('create')
@click.option('--name', required=True, help='Tenant (business) name')
@click.option('--code', default=None, help='Optional unique tenant code')
@click.option('--owner-email', required=True)
@click.option('--owner-password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--branch-name', default='Main Branch', show_default=True)
@with_appcontext
def create_tenant_cli(name, code, owner_email, owner_password, branch_name):
    """Create a tenant with its owner and first branch (one transaction)."""
    try:
        tenant, owner, branch = create_tenant(
            name, owner_email, owner_password, code=code, branch_name=branch_name
        )
    except PasswordValidationError as e:
        raise click.ClickException(f"Weak password: {e}")
    except ValueError as e:
        raise click.ClickException(str(e))

    click.echo(f"PASS Created tenant {tenant.name} (ID: {tenant.id})")
    click.echo(f"  Owner:  {owner.email} (ID: {owner.id})")
    click.echo(f"  Branch: {branch.name} (ID: {branch.id})")


@click.group('branches')
def branches_group():
    """Branch management commands."""


@branches_group.command('list')
@click.option('--tenant-id', type=int, required=True)
@with_appcontext
def list_branches(tenant_id):
    branches = db.session.query(Branch).filter_by(tenant_id=tenant_id).order_by(Branch.id).all()
    if not branches:
        click.echo("No branches found.")
        return
    for branch in branches:
        status = "active" if branch.is_active else "inactive"
        click.echo(f"{branch.id:<5} {branch.name:<30} {branch.code or '-':<10} {status}")


@branches_group.command('create')
@click.option('--tenant-id', type=int, required=True)
@click.option('--name', required=True)
@click.option('--code', default=None)
@click.option('--address', default=None)
@click.option('--phone', default=None)
@with_appcontext
def create_branch(tenant_id, name, code, address, phone):
    """Create a branch inside an existing tenant."""
    if db.session.get(Tenant, tenant_id) is None:
        raise click.ClickException(f"Tenant {tenant_id} not found")

    try:
        branch = branch_service.create_branch(
            tenant_id, {"name": name, "code": code, "address": address, "phone": phone}
        )
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created branch {branch.name} (ID: {branch.id})")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('list')
@click.option('--tenant-id', type=int, default=None, help='Filter by tenant')
@with_appcontext
def list_users(tenant_id):
    """List users with role, branch and subscription status."""
    query = db.session.query(User)
    if tenant_id is not None:
        query = query.filter_by(tenant_id=tenant_id)
    users = query.order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo(f"{'ID':<5} {'Email':<35} {'Role':<9} {'Tenant':<7} {'Branch':<7} {'Subscription':<13} {'Active'}")
    for user in users:
        click.echo(
            f"{user.id:<5} {user.email:<35} {user.role:<9} {user.tenant_id or '-':<7} "
            f"{user.branch_id or '-':<7} {user.subscription_status:<13} {'Yes' if user.is_active else 'No'}"
        )


@users_group.command('create')
@click.option('--tenant-id', type=int, required=True)
@click.option('--branch-id', type=int, default=None, help='Required for every role except owner')
@click.option('--email', required=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--role', type=click.Choice(ROLES), default='staff', show_default=True)
@click.option('--first-name', default=None)
@click.option('--last-name', default=None)
@with_appcontext
def create_user_cli(tenant_id, branch_id, email, password, role, first_name, last_name):
    try:
        user = create_user(
            email,
            password,
            tenant_id,
            role=role,
            branch_id=branch_id,
            first_name=first_name,
            last_name=last_name,
        )
    except PasswordValidationError as e:
        raise click.ClickException(f"Weak password: {e}")
    except ValueError as e:
        raise click.ClickException(str(e))

    click.echo(f"PASS Created {user.role} {user.email} (ID: {user.id})")


@users_group.command('set-subscription')
@click.option('--email', required=True)
@click.option('--status', type=click.Choice(SUBSCRIPTION_STATUSES), required=True)
@with_appcontext
def set_subscription(email, status):
    """Change a user's subscription status (expired users are redirected on every screen)."""
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if user is None:
        raise click.ClickException(f"User {email} not found")
    user.subscription_status = status
    db.session.commit()
    click.echo(f"PASS {user.email} subscription is now {status}")


@click.group('maintenance')
def maintenance_group():
    """Maintenance and cleanup commands."""


@maintenance_group.command('cleanup-sessions')
@with_appcontext
def cleanup_sessions_cli():
    """Delete expired and revoked sessions older than the retention window."""
    deleted = session_service.cleanup_expired_sessions()
    click.echo(f"Deleted {deleted} expired or revoked sessions.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(tenants_group)  # Multi-tenant management
    app.cli.add_command(branches_group)
    app.cli.add_command(users_group)
    app.cli.add_command(maintenance_group)
