# Overview: Flask CLI command groups for bootstrap, catalog seeding and key administration.

# backend/keyshop/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py.
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use `flask db upgrade` for migrations).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users / sessions:
# - python -m flask users create --email admin@keyshop.local --name Admin --role admin
# - python -m flask users token --email admin@keyshop.local
#   Issue a bearer token (printed once; only its hash is stored).
# - python -m flask users revoke --token <token>
#
# Catalog:
# - python -m flask products create --name "Script Key" --price 50.00 --type key --expire-days 7D
#
# Keys:
# - python -m flask keys deactivate ABCD-EFGH-IJKL-MNOP
# - python -m flask keys activate ABCD-EFGH-IJKL-MNOP

import click
from flask.cli import with_appcontext

from .errors import StorefrontError
from .extensions import db
from .models import Product, User
from .models.auth import ROLE_ADMIN, ROLE_USER
from .models.catalog import VALID_PRODUCT_TYPES, PRODUCT_TYPE_KEY
from .services import key_service, session_service
from .services.key_codec import calculate_expire_date
from .time_utils import to_utc_z, utcnow
from .validation import to_minor_units


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Database tables created")


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
    click.echo("PASS Database reset complete")


@click.group('users')
def users_group():
    """User and session bootstrap."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--name', default=None, help='Display name')
@click.option('--role', type=click.Choice([ROLE_USER, ROLE_ADMIN]), default=ROLE_USER, help='Role')
@with_appcontext
def create_user_cli(email, name, role):
    """Create a storefront user."""
    email = email.strip().lower()
    if db.session.query(User).filter_by(email=email).first():
        click.echo(f"FAIL User {email} already exists")
        return

    user = User(email=email, name=name, role=role, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user {user.email} (ID: {user.id}, role: {user.role})")


@users_group.command('token')
@click.option('--email', prompt=True, help='Email address')
@with_appcontext
def issue_token_cli(email):
    """Issue a bearer session token for a user."""
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if not user:
        click.echo(f"FAIL User {email} not found")
        return

    try:
        session, token = session_service.create_session(user.id)
    except ValueError as exc:
        click.echo(f"FAIL {exc}")
        return

    click.echo(f"PASS Token for {user.email} (expires {to_utc_z(session.expires_at)}):")
    click.echo(token)


@users_group.command('revoke')
@click.option('--token', prompt=True, hide_input=True, help='Bearer token to revoke')
@with_appcontext
def revoke_token_cli(token):
    """Revoke a bearer session token."""
    if session_service.revoke_session(token.strip()):
        click.echo("PASS Token revoked")
    else:
        click.echo("FAIL Token not found or already revoked")


@click.group('products')
def products_group():
    """Catalog seeding."""


@products_group.command('create')
@click.option('--name', prompt=True, help='Product name')
@click.option('--price', prompt=True, help='Unit price in THB, e.g. 50.00')
@click.option('--type', 'product_type', type=click.Choice(VALID_PRODUCT_TYPES), default=PRODUCT_TYPE_KEY)
@click.option('--stock', type=int, default=0, help='Stock for non-key products')
@click.option('--expire-days', default=None, help='Key expiry policy: "<N>D" or "Never"')
@click.option('--source-code', default=None, help='Inline payload or raw GitHub URL')
@with_appcontext
def create_product_cli(name, price, product_type, stock, expire_days, source_code):
    """Create a catalog product."""
    try:
        price_satang = to_minor_units(price, "price")
        if expire_days:
            # Reject unparseable policies before they reach a customer's key
            calculate_expire_date(expire_days, utcnow())
    except StorefrontError as exc:
        click.echo(f"FAIL {exc.message}")
        return

    product = Product(
        name=name,
        price_satang=price_satang,
        type=product_type,
        stock=stock if product_type != PRODUCT_TYPE_KEY else 0,
        expire_days=expire_days if product_type == PRODUCT_TYPE_KEY else None,
        source_code=source_code if product_type == PRODUCT_TYPE_KEY else None,
        is_active=True,
    )
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product {product.name} (ID: {product.id})")


@click.group('keys')
def keys_group():
    """Key administration."""


@keys_group.command('deactivate')
@click.argument('code')
@with_appcontext
def deactivate_key_cli(code):
    """Block a key from verifying."""
    try:
        key = key_service.set_key_active(code, False)
    except StorefrontError as exc:
        click.echo(f"FAIL {exc.message}")
        return
    click.echo(f"PASS Key {key.code} deactivated")


@keys_group.command('activate')
@click.argument('code')
@with_appcontext
def activate_key_cli(code):
    """Re-enable a deactivated key."""
    try:
        key = key_service.set_key_active(code, True)
    except StorefrontError as exc:
        click.echo(f"FAIL {exc.message}")
        return
    click.echo(f"PASS Key {key.code} reactivated")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(products_group)
    app.cli.add_command(keys_group)
