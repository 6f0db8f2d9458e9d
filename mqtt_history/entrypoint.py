from __future__ import annotations

import click

from mqtt_history.cli import cli as cli_group


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context) -> None:
    """MQTT message history: recorder, query CLI, web API and MCP server."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@main.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True, help="Host to bind to.")
@click.option("--port", "-p", default=8080, show_default=True, help="Port to bind to.")
@click.option(
    "--db-path",
    default=None,
    help="SQLite DB path (defaults to $MQTT_HISTORY_DB or ~/.mqtt_history/history.sqlite).",
)
def serve_command(host: str, port: int, db_path: str | None) -> None:
    """Start the JSON web API server."""
    try:
        from mqtt_history.web.server import run_server
    except ImportError:
        raise click.ClickException(
            "Web API dependencies not installed. Install with: pip install fastapi uvicorn"
        ) from None

    click.echo(f"Starting MQTT History API at http://{host}:{port}")
    click.echo("Press Ctrl+C to stop.")
    run_server(host=host, port=port, db_path=db_path)


@main.command("mcp")
def mcp_command() -> None:
    """Run the MCP tool server on stdio."""
    from mqtt_history.mcp_server import main as server_main

    server_main()


main.add_command(cli_group, name="cli")
