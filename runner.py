"""
CLI entrypoint for the contact relay.
"""
import typer
import asyncio

from relay_shared.config import settings
from relay_shared.route_utils import configure_logging

app = typer.Typer(help="Contact relay: PostgreSQL notifications to WebSocket subscribers")

@app.command()
def server():
    """Start the relay (PostgreSQL listener + WebSocket server) under uvicorn."""
    from relay_server.serve import serve
    configure_logging(settings.LOG_LEVEL)
    typer.echo(f"Starting relay on ws://{settings.HOST}:{settings.PORT}{settings.WS_PATH}")
    code = serve(settings)
    if code:
        raise typer.Exit(code)

@app.command()
def health(url: str = typer.Option(None, help="Relay base URL (default: local relay)")):
    """Query the relay's liveness probe."""
    import httpx
    base_url = url or f"http://127.0.0.1:{settings.PORT}"
    resp = httpx.get(f"{base_url}/health")
    typer.echo(resp.json())

@app.command()
def stats(url: str = typer.Option(None, help="Relay base URL (default: local relay)")):
    """Query the relay for live counters."""
    import httpx
    base_url = url or f"http://127.0.0.1:{settings.PORT}"
    resp = httpx.get(f"{base_url}/stats")
    typer.echo(resp.json())

@app.command()
def token(
    email: str = typer.Option(..., help="Email claim"),
    name: str = typer.Option(None, help="Name claim"),
    sid: str = typer.Option(None, help="Session id claim"),
    secret: str = typer.Option("secret", help="HS256 signing secret (the relay does not check it)"),
):
    """Mint a development token for `tail`."""
    import jwt
    claims = {"email": email}
    if name:
        claims["name"] = name
    if sid:
        claims["sid"] = sid
    typer.echo(jwt.encode(claims, secret, algorithm="HS256"))

@app.command()
def tail(
    token: str = typer.Option(..., help="Bearer token passed as ?token="),
    url: str = typer.Option(None, help="Relay base URL (default: local relay)"),
    duration: float = typer.Option(None, help="Stop after this many seconds"),
):
    """Subscribe to the relay and print every frame."""
    from rich.console import Console
    from relay_client.websocket_client import WebSocketRelayClient
    from relay_shared.errors import AuthenticationError

    configure_logging(settings.LOG_LEVEL)
    console = Console()
    client = WebSocketRelayClient(url or f"http://127.0.0.1:{settings.PORT}", token, path=settings.WS_PATH)

    async def print_frame(frame: dict):
        if "channel" in frame:
            console.print(f"[bold cyan]{frame['channel']}[/] [dim]{frame.get('timestamp')}[/]")
            console.print_json(data=frame.get("payload"))
        else:
            console.print(f"[green]{frame.get('type')}[/] {frame}")

    async def print_status(status: str):
        console.print(f"[yellow]{status}[/]")

    client.set_callbacks(print_frame, print_status)
    try:
        asyncio.run(client.run(duration))
    except AuthenticationError as e:
        console.print(f"[red]Rejected by relay:[/] {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        pass
    console.print(f"{client.frames_received} frame(s), {client.reconnect_count} reconnect(s)")

if __name__ == "__main__":
    app()
