"""
logoforge/cli.py

Operator commands, registered on the Flask CLI:

    flask billing init-db               Create tables
    flask billing retry-events          Re-drive pending/failed webhook events
    flask billing catalog               Print the price catalog
    flask billing reconcile USER_ID     Compare stored balance with the log
"""

import click
from flask.cli import AppGroup

from logoforge.config import print_catalog_report
from logoforge.extensions import get_services

billing_cli = AppGroup('billing', help='Credit ledger and payment commands.')


@billing_cli.command('init-db')
def init_db_command():
    """Create all billing tables."""
    get_services().database.create_all()
    click.echo('Billing tables created.')


@billing_cli.command('retry-events')
@click.option('--limit', default=100, show_default=True, help='Max events to re-drive.')
def retry_events_command(limit):
    """Re-process webhook events left pending or failed."""
    resolved = get_services().ingestor.retry_pending(limit=limit)
    click.echo(f'Resolved {resolved} event(s).')


@billing_cli.command('catalog')
def catalog_command():
    """Print the price catalog and fallback tiers."""
    print_catalog_report()


@billing_cli.command('reconcile')
@click.argument('user_id')
def reconcile_command(user_id):
    """Check a user's balance against their transaction log."""
    store = get_services().store
    balance = store.get_balance(user_id)
    computed = store.ledger_balance(user_id)
    if store.reconcile(user_id):
        click.echo(f'{user_id}: OK (balance {balance})')
    else:
        click.echo(f'{user_id}: MISMATCH (account {balance}, log {computed})')
        raise SystemExit(1)
