"""CLI: consultline session"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from consultline.errors import ConsultError, RateLimited
from consultline.lifecycle import SessionCallbacks
from consultline.models.billing import CostUpdate
from consultline.models.events import PeerMessage
from consultline.models.notification import Notification, NotificationKind
from consultline.models.session import (
    Modality,
    SessionRequest,
    SessionState,
    SessionSummary,
)

console = Console()

STYLES = {
    NotificationKind.INFO: "cyan",
    NotificationKind.WARNING: "yellow",
    NotificationKind.CONTINUATION_PROMPT: "magenta",
    NotificationKind.TERMINATION: "red",
    NotificationKind.SUMMARY: "green",
}


def _get_engine(**kwargs):
    from consultline.cli.main import _get_engine
    return _get_engine(**kwargs)


def _run(coro):
    from consultline.cli.main import _run
    return _run(coro)


class ConsoleNotificationSink:
    def notify(self, notification: Notification) -> None:
        if notification.kind == NotificationKind.SUMMARY:
            return
        style = STYLES.get(notification.kind, "white")
        console.print(f"[{style}]{notification.title}:[/{style}] {notification.message}")


def _print_summary(summary: SessionSummary) -> None:
    table = Table(title="Session summary")
    table.add_column("Item", style="bold")
    table.add_column("Value")
    minutes, seconds = divmod(summary.duration_seconds, 60)
    table.add_row("Duration", f"{minutes}m {seconds:02d}s")
    table.add_row("Total cost", str(summary.total_cost))
    if summary.remaining_balance is not None:
        table.add_row("Remaining balance", str(summary.remaining_balance))
    table.add_row("Ended because", summary.termination_reason.value.replace("_", " "))
    if summary.settlement_pending:
        table.add_row("Settlement", "[yellow]pending[/yellow]")
    console.print(table)


async def _prompt(label: str) -> str:
    return await asyncio.to_thread(click.prompt, label, prompt_suffix=": ", default="", show_default=False)


@click.command("session")
@click.argument("advisor_id")
@click.option("--customer", "customer_id", required=True)
@click.option("--rate", type=Decimal, required=True, help="Price per minute.")
@click.option("--modality", type=click.Choice(["chat", "call"]), default="chat")
@click.option("--name", "display_name", default=None)
def session_cmd(advisor_id: str, customer_id: str, rate: Decimal, modality: str, display_name: Optional[str]):
    """Run a live session with an advisor."""

    async def _session():
        engine = _get_engine(notifier=ConsoleNotificationSink())

        def on_state(state: SessionState) -> None:
            console.print(f"[dim][state: {state.value}][/dim]")
            if state == SessionState.QUEUED:
                console.print("[cyan]Waiting for the advisor. /end to leave the queue[/cyan]")
            elif state == SessionState.ACTIVE:
                console.print("[cyan]Connected. /end to finish (Ctrl+C to exit)[/cyan]\n")

        def on_cost(update: CostUpdate) -> None:
            if update.accrued_seconds and update.accrued_seconds % 30 == 0:
                console.print(f"[dim]{update.accrued_seconds}s, {update.cost.quantize(Decimal('0.01'))}[/dim]")

        def on_queue(position: int, eta: float) -> None:
            console.print(f"[cyan]Queue position {position}, about {eta / 60:.0f} min[/cyan]")

        def on_message(message: PeerMessage) -> None:
            console.print(f"[green]{message.sender_name or 'Advisor'}:[/green] {message.text}")

        callbacks = SessionCallbacks(
            on_state_changed=on_state,
            on_cost_updated=on_cost,
            on_queue_updated=on_queue,
            on_summary_ready=_print_summary,
            on_message=on_message,
            on_participant_count=lambda n: console.print(f"[dim]{n} in room[/dim]"),
            on_continuation_prompt=lambda: console.print("[magenta]Type /continue to keep chatting[/magenta]"),
        )
        request = SessionRequest(
            customer_id=customer_id,
            advisor_id=advisor_id,
            modality=Modality(modality),
            rate=rate,
            requested_at=datetime.now(timezone.utc),
            display_name=display_name,
        )
        machine = engine.create_session(request, callbacks)
        try:
            try:
                await engine.watch_advisor(advisor_id, customer_id)
            except ConsultError as e:
                console.print(f"[yellow]Presence unavailable: {e}[/yellow]")
            try:
                with console.status("Requesting session..."):
                    await machine.request_session()
            except ConsultError as e:
                console.print(f"[red]{e}[/red]")
                raise SystemExit(1)
            terminal = asyncio.ensure_future(machine.wait_terminal())
            while not terminal.done():
                line = asyncio.ensure_future(_prompt("You"))
                await asyncio.wait({line, terminal}, return_when=asyncio.FIRST_COMPLETED)
                if terminal.done():
                    break
                text = line.result().strip()
                if text in ("/end", "/quit", "/exit"):
                    await machine.end_session()
                elif machine.state != SessionState.ACTIVE:
                    if text:
                        console.print("[dim]Not connected yet[/dim]")
                elif text == "/continue":
                    await machine.continue_session()
                elif text and modality == "chat":
                    try:
                        await machine.send_message(text)
                    except RateLimited as e:
                        console.print(f"[yellow]Slow down, retry in {e.retry_after:g}s[/yellow]")
                    except ConsultError as e:
                        console.print(f"[red]{e}[/red]")

            if machine.state == SessionState.SUMMARY and machine.request.modality == Modality.CHAT:
                score = await asyncio.to_thread(click.prompt, "Rate this session 1-5 (0 to skip)", type=click.IntRange(0, 5), default=0)
                if score:
                    comment = await _prompt("Comment (optional)")
                    await machine.submit_rating(score, comment or None)
                    console.print("[green]Thanks for your feedback.[/green]")
                else:
                    machine.skip_rating()
        except (KeyboardInterrupt, EOFError, click.Abort):
            pass
        finally:
            await engine.close()

    _run(_session())
