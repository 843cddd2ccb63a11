"""Palaver CLI bootstrap."""

from __future__ import annotations

import typer

from palaver.plugins.console import build_echo_app


def create_cli_app() -> typer.Typer:
    app = typer.Typer(name="palaver", help="Activity routing and streaming for chat bots", add_completion=False)
    palaver = build_echo_app()
    palaver.register_cli_commands(app)

    if not app.registered_commands:

        @app.command("help")
        def _help() -> None:
            typer.echo("No CLI commands registered. Add a plugin implementing register_cli_commands.")

    return app


app = create_cli_app()

if __name__ == "__main__":
    app()
