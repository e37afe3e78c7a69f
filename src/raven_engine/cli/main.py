from __future__ import annotations

import json
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import click
import httpx

from raven_engine import constants
from raven_engine.cli import formatters
from raven_engine.clients.database import init_db
from raven_engine.utils.logging import setup_logging
from raven_engine.utils.pathing import ensure_runtime_directories


def _request(
    method: str,
    path: str,
    payload: Optional[Dict[str, Any]] = None,
    actor: Optional[str] = None,
) -> Any:
    url = f"{constants.API_BASE}{path}"
    headers = {constants.ACTOR_HEADER: actor} if actor else {}
    with httpx.Client(timeout=60) as client:
        response = client.request(method, url, json=payload, headers=headers)
    if response.status_code >= 400:
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        raise click.ClickException(f"API error {response.status_code}: {detail}")
    if response.content:
        return response.json()
    return None


def _actor(ctx: click.Context) -> str:
    actor = ctx.obj.get("actor") if ctx.obj else None
    if not actor:
        raise click.ClickException(f"An actor is required: pass --actor or set {constants.ACTOR_ENV_VAR}.")
    return actor


def _echo_json(result: Any) -> None:
    click.echo(json.dumps(result, indent=2))


@click.group(help="Raven matching and escrow engine command-line interface.")
@click.option("--actor", envvar=constants.ACTOR_ENV_VAR, help="User id to act as.")
@click.pass_context
def cli(ctx: click.Context, actor: Optional[str]) -> None:
    """Root command for the Raven engine."""
    setup_logging()
    ctx.ensure_object(dict)
    ctx.obj["actor"] = actor


@cli.command()
def init() -> None:
    """Initialize local directories and database."""
    ensure_runtime_directories()
    init_db()
    click.echo("Raven engine environment initialized.")


@cli.group()
def shipment() -> None:
    """Shipment commands."""


@shipment.command("create")
@click.option("--from", "origin", required=True, help="Origin as CITY,COUNTRY.")
@click.option("--to", "destination", required=True, help="Destination as CITY,COUNTRY.")
@click.option("--content", required=True, help="What is being shipped.")
@click.option("--weight", type=float, required=True, help="Weight in kilograms.")
@click.option("--price", required=True, help="Offered price.")
@click.option("--currency", default=constants.DEFAULT_CURRENCY, show_default=True)
@click.option("--window-start", required=True, help="ISO-8601 start of the delivery window.")
@click.option("--window-end", required=True, help="ISO-8601 end of the delivery window.")
@click.option("--package-type", help="Optional package type label.")
@click.pass_context
def create_shipment(
    ctx: click.Context,
    origin: str,
    destination: str,
    content: str,
    weight: float,
    price: str,
    currency: str,
    window_start: str,
    window_end: str,
    package_type: Optional[str],
) -> None:
    """Post a new delivery request."""
    try:
        origin_city, origin_country = (part.strip() for part in origin.split(",", 1))
        destination_city, destination_country = (part.strip() for part in destination.split(",", 1))
    except ValueError as exc:
        raise click.ClickException("Locations must be given as CITY,COUNTRY.") from exc
    payload = {
        "origin_city": origin_city,
        "origin_country": origin_country,
        "destination_city": destination_city,
        "destination_country": destination_country,
        "content": content,
        "weight": weight,
        "price": price,
        "currency": currency,
        "window_start": window_start,
        "window_end": window_end,
        "package_type": package_type,
    }
    _echo_json(_request("POST", "/shipments", payload, actor=_actor(ctx)))


@shipment.command("list")
@click.option(
    "--status",
    type=click.Choice(["OPEN", "MATCHED", "IN_TRANSIT", "DELIVERED", "CANCELLED"]),
    help="Optional status filter.",
)
@click.option("--origin", help="Origin country filter.")
@click.option("--destination", help="Destination country filter.")
@click.option("--min-price", help="Lowest price to include.")
@click.option("--max-price", help="Highest price to include.")
def list_shipments(
    status: Optional[str],
    origin: Optional[str],
    destination: Optional[str],
    min_price: Optional[str],
    max_price: Optional[str],
) -> None:
    """List shipments."""
    params = {
        "status_filter": status,
        "origin_country": origin,
        "destination_country": destination,
        "min_price": min_price,
        "max_price": max_price,
    }
    query = urlencode({key: value for key, value in params.items() if value})
    result = _request("GET", f"/shipments{'?' + query if query else ''}")
    headers = ["ID", "STATUS", "ROUTE", "PRICE", "COURIER"]
    click.echo(formatters.table(headers, formatters.shipment_rows(result), max_widths={2: 48}))


@shipment.command("show")
@click.argument("shipment_id")
def show_shipment(shipment_id: str) -> None:
    """Show a shipment with its offers."""
    _echo_json(_request("GET", f"/shipments/{shipment_id}"))


@cli.command()
@click.argument("shipment_id")
@click.option("--price", help="Proposed price; defaults to the shipment price.")
@click.option("--message", help="Note to the sender (at least 10 characters).")
@click.pass_context
def offer(ctx: click.Context, shipment_id: str, price: Optional[str], message: Optional[str]) -> None:
    """Make an offer on an open shipment."""
    payload = {"proposed_price": price, "message": message}
    _echo_json(_request("POST", f"/shipments/{shipment_id}/offers", payload, actor=_actor(ctx)))


@cli.command()
@click.argument("shipment_id")
@click.argument("offer_id")
@click.option("--expected-version", type=int, help="Shipment version the decision was based on.")
@click.pass_context
def accept(ctx: click.Context, shipment_id: str, offer_id: str, expected_version: Optional[int]) -> None:
    """Accept an offer and hold the payment in escrow."""
    payload = {"offer_id": offer_id, "expected_version": expected_version}
    result = _request("POST", f"/shipments/{shipment_id}/match", payload, actor=_actor(ctx))
    transaction = result["transaction"]
    click.echo(
        f"Matched with {result['offer']['courier_id']}; "
        f"{formatters.money(transaction['amount'], transaction['currency'])} held in escrow."
    )


@cli.command()
@click.argument("shipment_id")
@click.pass_context
def transit(ctx: click.Context, shipment_id: str) -> None:
    """Mark a matched shipment as picked up."""
    result = _request("POST", f"/shipments/{shipment_id}/transit", actor=_actor(ctx))
    click.echo(f"Shipment {shipment_id} is {result['status']}.")


@cli.command()
@click.argument("shipment_id")
@click.pass_context
def deliver(ctx: click.Context, shipment_id: str) -> None:
    """Confirm delivery and release the payment to the courier."""
    result = _request("POST", f"/shipments/{shipment_id}/deliver", actor=_actor(ctx))
    click.echo(
        f"Payment {result['status']}: "
        f"{formatters.money(result['payout_amount'], result['currency'])} to {result['payee_id']}."
    )


@cli.command()
@click.argument("shipment_id")
@click.pass_context
def cancel(ctx: click.Context, shipment_id: str) -> None:
    """Cancel a matched shipment and refund the sender."""
    result = _request("POST", f"/shipments/{shipment_id}/cancel", actor=_actor(ctx))
    click.echo(f"Payment {result['status']}: {formatters.money(result['amount'], result['currency'])}.")


@cli.command()
@click.argument("shipment_id")
@click.pass_context
def withdraw(ctx: click.Context, shipment_id: str) -> None:
    """Withdraw an unmatched shipment."""
    _request("POST", f"/shipments/{shipment_id}/withdraw", actor=_actor(ctx))
    click.echo("Shipment withdrawn.")


@cli.group()
def message() -> None:
    """Conversation commands."""


@message.command("open")
@click.argument("shipment_id")
@click.option("--to", "recipient", help="Counterpart user id (required for the shipment owner).")
@click.option("--text", help="Optional first message.")
@click.pass_context
def open_conversation(ctx: click.Context, shipment_id: str, recipient: Optional[str], text: Optional[str]) -> None:
    """Open a conversation about a shipment."""
    payload = {"shipment_id": shipment_id, "recipient_id": recipient, "initial_message": text}
    _echo_json(_request("POST", "/conversations", payload, actor=_actor(ctx)))


@message.command("send")
@click.argument("conversation_id")
@click.option("--text", prompt=True, help="Message body.")
@click.pass_context
def send_message(ctx: click.Context, conversation_id: str, text: str) -> None:
    """Send a message in a conversation."""
    payload = {"content": text, "type": "TEXT"}
    _request("POST", f"/conversations/{conversation_id}/messages", payload, actor=_actor(ctx))
    click.echo("Message sent.")


@message.command("list")
@click.argument("conversation_id")
@click.pass_context
def list_messages(ctx: click.Context, conversation_id: str) -> None:
    """Show the messages of a conversation."""
    result = _request("GET", f"/conversations/{conversation_id}/messages", actor=_actor(ctx))
    rows = [[item["sender_id"], item["type"], item["status"], item["content"]] for item in result]
    click.echo(formatters.table(["FROM", "TYPE", "STATUS", "CONTENT"], rows, max_widths={3: 60}))


@message.command("read")
@click.argument("conversation_id")
@click.pass_context
def read(ctx: click.Context, conversation_id: str) -> None:
    """Mark a conversation as read."""
    _request("POST", f"/conversations/{conversation_id}/read", actor=_actor(ctx))
    click.echo("Conversation marked as read.")


@cli.command()
@click.pass_context
def inbox(ctx: click.Context) -> None:
    """List your conversations with unread counts."""
    actor = _actor(ctx)
    result = _request("GET", f"/users/{actor}/conversations", actor=actor)
    headers = ["ID", "SHIPMENT", "WITH", "STATUS", "UNREAD", "LAST MESSAGE"]
    click.echo(formatters.table(headers, formatters.inbox_rows(result), max_widths={5: 40}))


@cli.command()
@click.pass_context
def transactions(ctx: click.Context) -> None:
    """List your escrow transactions."""
    actor = _actor(ctx)
    result = _request("GET", f"/users/{actor}/transactions", actor=actor)
    headers = ["SHIPMENT", "ROLE", "WITH", "AMOUNT", "PAYOUT", "STATUS"]
    click.echo(formatters.table(headers, formatters.transaction_rows(result)))


@cli.command()
@click.option("--stale-after", type=int, default=constants.RECONCILE_STALE_AFTER_SECONDS, show_default=True)
@click.pass_context
def reconcile(ctx: click.Context, stale_after: int) -> None:
    """Resolve unfinished settlements and reopen stuck matches (admin only)."""
    result = _request("POST", f"/admin/reconcile?stale_after_seconds={stale_after}", actor=_actor(ctx))
    click.echo(
        f"Resolved {len(result['settlements'])} settlement(s); "
        f"reopened {len(result['reverted_shipment_ids'])} shipment(s)."
    )


if __name__ == "__main__":
    cli()
