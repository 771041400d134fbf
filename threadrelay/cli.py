import click


@click.group()
def main() -> None:
    """threadrelay - Bridge chat threads to a tool-using agent runtime."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from RELAY_HOST or 127.0.0.1).")
@click.option("--port", default=None, type=int, help="Bind port (default: from RELAY_PORT or 8000).")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload for development.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the bridge service and its control API."""
    import uvicorn

    from threadrelay.bridge.settings import RelaySettings

    settings = RelaySettings()

    uvicorn.run(
        "threadrelay.bridge.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
        timeout_graceful_shutdown=int(settings.shutdown_timeout_seconds) + 5,
    )


# ---------------------------------------------------------------------------
# Durable session records
# ---------------------------------------------------------------------------


def _store():
    from threadrelay.bridge.settings import RelaySettings
    from threadrelay.bridge.store.local import JsonSessionStore

    return JsonSessionStore(RelaySettings().data_root)


@main.group()
def sessions() -> None:
    """Inspect and manage persisted thread sessions."""


@sessions.command("list")
def list_sessions() -> None:
    """List every persisted thread session."""
    import asyncio

    records = asyncio.run(_store().all())
    if not records:
        click.echo("No sessions.")
        return
    for thread_id, record in sorted(records.items()):
        click.echo(f"{thread_id}  {record.remote_session_id}  ${record.cost:.4f}  {record.working_dir or '-'}")


@sessions.command()
@click.argument("thread_id")
def forget(thread_id: str) -> None:
    """Drop the persisted session of THREAD_ID."""
    import asyncio

    store = _store()

    async def _forget() -> bool:
        if await store.get(thread_id) is None:
            return False
        await store.remove(thread_id)
        return True

    if not asyncio.run(_forget()):
        raise click.ClickException(f"No session for thread {thread_id}.")
    click.echo(f"Forgot session for thread {thread_id}.")


@sessions.command()
def cost() -> None:
    """Show total spend across all persisted sessions."""
    import asyncio

    total = asyncio.run(_store().total_cost())
    click.echo(f"All sessions: ${total:.4f}")


if __name__ == "__main__":
    main()
