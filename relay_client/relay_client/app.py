"""posrelay CLI -- developer tooling for the relay.

``listen`` tails the invalidation stream and prints each notice.  ``sign``
builds an ``x-signature`` header for a webhook body so receivers can be
exercised locally.  Human-readable output goes to *stderr* via Rich; the
signature header goes to *stdout* so it composes with ``curl``.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from relay_api.services.signature_verifier import build_signature_header
from relay_core.invalidation import InvalidationNotice
from rich.console import Console

from relay_client.cache import QueryCache
from relay_client.invalidation_client import InvalidationClient

app = typer.Typer(
    name="posrelay",
    help="posrelay - webhook signing and invalidation stream tooling",
    no_args_is_help=True,
)
console = Console(stderr=True)

_OPERATION_COLOURS: dict[str, str] = {
    "INSERT": "green",
    "UPDATE": "yellow",
    "DELETE": "red",
}


def _print_notice(notice: InvalidationNotice) -> None:
    colour = _OPERATION_COLOURS.get(notice.operation, "white")
    entity = notice.id or "-"
    console.print(
        f"[dim]#{notice.cursor}[/dim] [{colour}]{notice.operation:<6}[/{colour}] "
        f"[bold]{notice.table.value}[/bold] {entity}"
    )


async def _listen(client: InvalidationClient) -> None:
    try:
        await client.run()
    finally:
        await client.close()


# ---------------------------------------------------------------------------
# listen
# ---------------------------------------------------------------------------


@app.command()
def listen(
    api_url: str = typer.Option(
        "http://localhost:8000",
        "--api-url",
        envvar="POSRELAY_API_URL",
        help="Root URL of the posrelay API.",
    ),
    token: str | None = typer.Option(
        None,
        "--token",
        envvar="POSRELAY_SESSION_TOKEN",
        help="Session token sent as a Bearer header.",
    ),
    last_event_id: str | None = typer.Option(
        None,
        "--last-event-id",
        help="Resume after this event id instead of the end of the log.",
    ),
) -> None:
    """Tail the invalidation stream and print every notice."""
    headers: dict[str, str] = {}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    client = InvalidationClient(
        api_url,
        QueryCache(),
        headers=headers,
        last_event_id=last_event_id,
        on_notice=_print_notice,
    )
    console.print(f"Listening on [bold]{api_url}[/bold] (Ctrl+C to stop)")
    try:
        asyncio.run(_listen(client))
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")
        raise typer.Exit(code=0) from None


# ---------------------------------------------------------------------------
# sign
# ---------------------------------------------------------------------------


@app.command()
def sign(
    body_file: Path | None = typer.Argument(
        None,
        help="File holding the exact request body. Omit when signing by --data-id only.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    secret: str | None = typer.Option(
        None,
        "--secret",
        envvar="POSRELAY_WEBHOOK_SECRET",
        help="Webhook shared secret.",
    ),
    request_id: str = typer.Option("", "--request-id", help="Value sent as x-request-id."),
    data_id: str = typer.Option(
        "",
        "--data-id",
        help="Resource id for the canonical manifest (payment notifications).",
    ),
    ts: str | None = typer.Option(None, "--ts", help="Timestamp in ms. Defaults to now."),
) -> None:
    """Print an x-signature header value for a webhook delivery."""
    if not secret:
        console.print("[red]A secret is required (--secret or POSRELAY_WEBHOOK_SECRET).[/red]")
        raise typer.Exit(code=3)
    if body_file is None and not data_id:
        console.print("[red]Provide a body file or --data-id.[/red]")
        raise typer.Exit(code=3)

    raw_body = body_file.read_bytes().decode("utf-8") if body_file is not None and not data_id else ""
    header = build_signature_header(
        secret,
        request_id=request_id,
        raw_body=raw_body,
        canonical_id=data_id,
        ts=ts,
    )
    typer.echo(header)
    manifest_kind = "canonical" if data_id else "body"
    console.print(f"[dim]Signed {manifest_kind} manifest[/dim]")
