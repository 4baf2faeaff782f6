"""CLI: consultline quote, consultline balance"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import click
from rich.console import Console
from rich.table import Table

from consultline.billing import accrued_cost
from consultline.errors import ConsultError, InsufficientBalance
from consultline.models.billing import CostUpdate
from consultline.models.session import Modality, Session, SessionRequest

console = Console()


def _get_engine(**kwargs):
    from consultline.cli.main import _get_engine
    return _get_engine(**kwargs)


def _run(coro):
    from consultline.cli.main import _run
    return _run(coro)


@click.command("quote")
@click.option("--rate", type=Decimal, required=True, help="Price per minute.")
@click.option("--balance", type=Decimal, required=True, help="Customer balance.")
@click.option("--seconds", type=int, default=0, help="Connected seconds to price.")
@click.option("--json-output", "--json", is_flag=True)
def quote_cmd(rate: Decimal, balance: Decimal, seconds: int, json_output: bool):
    """Check the minimum balance and project cost for a session."""

    async def _quote():
        engine = _get_engine()
        try:
            billing = engine.billing
            minimum = billing.minimum_required(rate)
            shortfall = Decimal(0)
            try:
                billing.validate_minimum(balance, rate)
            except InsufficientBalance as e:
                shortfall = e.shortfall
            request = SessionRequest(
                customer_id="quote", advisor_id="quote", modality=Modality.CHAT,
                rate=rate, requested_at=datetime.now(timezone.utc),
            )
            session = Session(id="quote", request=request, accrued_seconds=seconds)
            cost = CostUpdate(accrued_seconds=seconds, cost=accrued_cost(seconds, rate))
            seconds_left = billing.project_exhaustion(session, balance)
        finally:
            await engine.close()

        result = {
            "rate": str(rate),
            "balance": str(balance),
            "minimum_required": str(minimum),
            "shortfall": str(shortfall),
            "seconds": cost.accrued_seconds,
            "cost": str(cost.cost.quantize(Decimal("0.01"))),
            "seconds_until_exhaustion": seconds_left,
        }
        if json_output:
            click.echo(json.dumps(result, indent=2))
            return
        table = Table(title="Session quote")
        table.add_column("Item", style="bold")
        table.add_column("Value")
        table.add_row("Rate / min", result["rate"])
        table.add_row("Balance", result["balance"])
        table.add_row("Minimum required", result["minimum_required"])
        table.add_row("Cost", f"{result['cost']} for {cost.accrued_seconds}s")
        table.add_row("Time left", "unlimited" if seconds_left == float("inf") else f"{seconds_left:.0f}s")
        console.print(table)
        if shortfall > 0:
            console.print(f"[red]Insufficient balance: {shortfall} short of the minimum.[/red]")
        else:
            console.print("[green]Balance covers the minimum session.[/green]")

    _run(_quote())


@click.command("balance")
@click.argument("customer_id")
def balance_cmd(customer_id: str):
    """Read a customer's balance from the ledger."""

    async def _balance():
        engine = _get_engine()
        try:
            with console.status("Fetching balance..."):
                amount = await engine.ledger.get_balance(customer_id)
        except ConsultError as e:
            console.print(f"[red]{e}[/red]")
            raise SystemExit(1)
        finally:
            await engine.close()
        console.print(f"[green]{customer_id}[/green]: {amount}")

    _run(_balance())
