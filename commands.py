"""
Flask CLI commands: `flask --app app:create_app <command>`.
"""
import json
import logging

import click
from flask import current_app
from passlib.hash import pbkdf2_sha256

from models import db, User

logger = logging.getLogger(__name__)


def _resolve_user(username):
    if not username:
        return None
    user = User.query.filter_by(username=username).first()
    if user is None:
        raise click.ClickException(f'No user named {username!r}')
    return user


def register_commands(app):

    @app.cli.command('init-db')
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo('Database tables created.')

    @app.cli.command('create-admin')
    @click.argument('username')
    @click.password_option()
    def create_admin(username, password):
        """Create an Admin account."""
        if User.query.filter_by(username=username).first():
            raise click.ClickException(f'User {username!r} already exists')
        if len(password) < 6:
            raise click.ClickException('Password must be at least 6 characters')
        db.session.add(User(username=username, password_hash=pbkdf2_sha256.hash(password), role='Admin'))
        db.session.commit()
        click.echo(f'Admin {username} created.')

    @app.cli.command('seed')
    @click.option('--user', 'username', help='Seed for this user (default: first admin).')
    def seed(username):
        """Seed default categories, suppliers and expense categories."""
        from app import seed_essential_data
        if seed_essential_data(current_app, _resolve_user(username)):
            click.echo('Default data seeded.')
        else:
            click.echo('Nothing seeded.')

    @app.cli.command('check-stock')
    @click.option('--user', 'username', help='Only check this user\'s products.')
    def check_stock(username):
        """Create low-stock notifications (once per product per day)."""
        from routes.alert_utils import run_stock_alerts
        user = _resolve_user(username)
        created = run_stock_alerts(user_id=user.id if user else None)
        db.session.commit()
        click.echo(f'{len(created)} stock alert(s) created.')

    @app.cli.command('check-payments')
    @click.option('--user', 'username', help='Only check this user\'s transactions.')
    @click.option('--days', type=int, default=None, help='Look-ahead window in days.')
    def check_payments(username, days):
        """Create payment-due notifications for open transactions."""
        from routes.alert_utils import run_payment_due_checks
        user = _resolve_user(username)
        created = run_payment_due_checks(user_id=user.id if user else None, window_days=days)
        db.session.commit()
        click.echo(f'{len(created)} payment-due notification(s) created.')

    @app.cli.command('reconcile')
    @click.option('--user', 'username', help='Only reconcile this user\'s records.')
    @click.option('--fix', is_flag=True, help='Write the recomputed balances back.')
    def reconcile(username, fix):
        """Recompute transaction and party balances and report drift."""
        from routes.balance_utils import reconcile_balances
        user = _resolve_user(username)
        drifts = reconcile_balances(user_id=user.id if user else None, fix=fix)
        if fix:
            db.session.commit()
        else:
            db.session.rollback()
        if not drifts:
            click.echo('All balances reconcile.')
            return
        for d in drifts:
            click.echo(json.dumps(d))
        click.echo(f'{len(drifts)} drift(s){" fixed" if fix else " found"}.')
        if not fix:
            raise SystemExit(1)
