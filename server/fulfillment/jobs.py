# Periodic jobs for the fulfillment service.
#
# Commands (after `pip install -e .`):
# - fulfillment-jobs mature-earnings
#   Make pending earnings whose hold has elapsed available. Safe to run concurrently.
# - fulfillment-jobs dispatch-notifications [--limit 100]
#   Deliver pending outbox events through the logging sender.
# - fulfillment-jobs seed-settings
#   Insert default delivery settings that are missing.
# - fulfillment-jobs low-stock [--seller-id 7]
#   List products at or below their low-stock threshold.

import logging

import click

from fulfillment import config
from fulfillment.db import SessionLocal
from fulfillment.delivery_settings.service import seed_default_settings
from fulfillment.notifications.service import LoggingNotificationSender, dispatch_pending_notifications
from fulfillment.settlement.service import mature_earnings
from fulfillment.stock.service import get_low_stock_products
from fulfillment.transactions import run_in_transaction


def _open_session(ctx: click.Context):
    factory = (ctx.obj or {}).get("session_factory", SessionLocal)
    return factory()


@click.group()
@click.pass_context
def cli(ctx: click.Context):
    """Fulfillment maintenance jobs."""
    ctx.ensure_object(dict)
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@cli.command("mature-earnings")
@click.pass_context
def mature_earnings_command(ctx: click.Context):
    db = _open_session(ctx)
    try:
        count = run_in_transaction(db, lambda: mature_earnings(db))
    finally:
        db.close()
    click.echo(f"Matured {count} earnings.")


@cli.command("dispatch-notifications")
@click.option("--limit", default=100, show_default=True, type=click.IntRange(min=1))
@click.pass_context
def dispatch_notifications_command(ctx: click.Context, limit: int):
    db = _open_session(ctx)
    sender = ctx.obj.get("notification_sender") or LoggingNotificationSender()
    try:
        result = run_in_transaction(db, lambda: dispatch_pending_notifications(db, sender, limit=limit))
    finally:
        db.close()
    click.echo(f"Sent {result.sent}, retrying {result.retried}, failed {result.failed}.")


@cli.command("seed-settings")
@click.pass_context
def seed_settings_command(ctx: click.Context):
    db = _open_session(ctx)
    try:
        created = run_in_transaction(db, lambda: seed_default_settings(db))
    finally:
        db.close()
    click.echo(f"Created {created} delivery settings.")


@cli.command("low-stock")
@click.option("--seller-id", type=int, default=None)
@click.pass_context
def low_stock_command(ctx: click.Context, seller_id):
    db = _open_session(ctx)
    try:
        products = get_low_stock_products(db, seller_id=seller_id)
        if not products:
            click.echo("No low-stock products.")
            return
        for product in products:
            click.echo(
                f"{product.id}\t{product.name}\tstock={product.stock_quantity}\t"
                f"reserved={product.reserved_stock}\tthreshold={product.low_stock_threshold}"
            )
    finally:
        db.close()


if __name__ == "__main__":
    cli()
