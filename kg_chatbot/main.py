"""Main entry point for kg-chatbot."""

import sys

import typer

from kg_chatbot.config import Config, set_config
from kg_chatbot.logging import configure_logging, log

app = typer.Typer(help="kg-chatbot - agentic streaming chat over a Neo4j knowledge graph")


@app.command()
def serve(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    host: str = typer.Option("", "--host", help="Override bind host"),
    port: int = typer.Option(0, "-p", "--port", help="Override bind port"),
    backend: str = typer.Option("", "-b", "--backend", help="Override model backend (api or cli)"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run the chat server."""
    cfg = Config.load(config or None)
    if host:
        cfg.web.host = host
    if port:
        cfg.web.port = port
    if backend:
        if backend not in ("api", "cli"):
            raise typer.BadParameter("backend must be 'api' or 'cli'", param_hint="--backend")
        cfg.model.backend = backend
    if verbose:
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    configure_logging()

    from kg_chatbot.web_server import run_web_server

    try:
        run_web_server(cfg)
    except Exception as e:
        log.error("Fatal error", error=str(e))
        print(f"Fatal error: {e}")
        sys.exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from kg_chatbot import __version__

    print(f"kg-chatbot v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
