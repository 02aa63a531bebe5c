"""
Main CLI interface for chatflow.

Provides commands: start, stop, restart, status, logs, serve, config,
models, auth-url, sync, chat
"""

import asyncio
import base64
import json
import os

import aiohttp
import click
from rich.console import Console
from rich.json import JSON
from rich.panel import Panel

from chatflow import __version__
from chatflow.config import Config
from chatflow.server import GatewayProcess, show_status_rich
from chatflow.store import Session, load_state, now_ms, save_state
from chatflow.utils import (
    get_config_path,
    get_fallback_antigravity_models,
    get_gemini_cli_models,
    get_provider_presets,
    get_state_path,
)

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="chatflow")
def cli():
    """chatflow - branching chat over OpenAI-compatible, Gemini CLI and Antigravity models"""
    pass


@cli.command()
def start():
    """Start the gateway in the background."""
    config = Config()
    server = GatewayProcess(config)

    running, pid = server.is_running()
    if running:
        console.print(f"[yellow]Gateway already running (PID: {pid})[/yellow]")
        return

    success, message = server.start()
    if success:
        console.print(f"[green]✓ {message}[/green]")
        console.print(f"[dim]Gateway running at: {config.gateway_url}[/dim]")
        console.print(f"[dim]Logs: {server.log_path}[/dim]")
    else:
        console.print(f"[red]✗ {message}[/red]")
        raise click.ClickException(message)


@cli.command()
def stop():
    """Stop the gateway."""
    server = GatewayProcess()

    running, _ = server.is_running()
    if not running:
        console.print("[yellow]Gateway is not running[/yellow]")
        return

    success, message = server.stop()
    if success:
        console.print(f"[green]✓ {message}[/green]")
    else:
        console.print(f"[red]✗ {message}[/red]")
        raise click.ClickException(message)


@cli.command()
def restart():
    """Restart the gateway."""
    config = Config()
    server = GatewayProcess(config)

    success, message = server.restart()
    if success:
        console.print(f"[green]✓ {message}[/green]")
        console.print(f"[dim]Gateway running at: {config.gateway_url}[/dim]")
    else:
        console.print(f"[red]✗ {message}[/red]")
        raise click.ClickException(message)


@cli.command()
@click.option("--watch", "-w", is_flag=True, help="Watch status in real-time")
def status(watch):
    """Show gateway status."""
    from time import sleep

    server = GatewayProcess()

    if watch:
        try:
            while True:
                console.clear()
                show_status_rich(console, server.get_status())
                sleep(1)
        except KeyboardInterrupt:
            console.print("\n[dim]Status monitoring stopped[/dim]")
    else:
        show_status_rich(console, server.get_status())


@cli.command()
@click.option("--follow", "-f", is_flag=True, help="Follow log output")
@click.option("--lines", "-n", default=50, help="Number of lines to show")
def logs(follow, lines):
    """Show gateway logs."""
    server = GatewayProcess()

    if follow:
        import subprocess

        if not server.log_path.exists():
            console.print(f"[yellow]Log file not found: {server.log_path}[/yellow]")
            return

        console.print(f"[dim]Following logs: {server.log_path}[/dim]")
        console.print("[dim]Press Ctrl+C to stop[/dim]")
        console.print()
        try:
            subprocess.run(["tail", "-f", str(server.log_path)])
        except KeyboardInterrupt:
            console.print("\n[dim]Log monitoring stopped[/dim]")
    else:
        for line in server.tail_logs(lines):
            console.print(line, end="", markup=False)


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
def serve(host, port):
    """Run the gateway in the foreground."""
    from chatflow.proxy.server import main as run_gateway

    config = Config()
    os.environ.setdefault("LOG_LEVEL", config.log_level)
    run_gateway(host or config.gateway_host, port or config.gateway_port)


@cli.command("config")
@click.option("--host", default=None, help="Set the gateway bind address")
@click.option("--port", type=int, default=None, help="Set the gateway port")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              default=None, help="Set the gateway log level")
def show_config(host, port, log_level):
    """View or edit configuration."""
    config = Config()

    if host or port or log_level:
        if host:
            config.gateway_host = host
        if port:
            config.gateway_port = port
        if log_level:
            config.log_level = log_level.upper()
        config.save()
        console.print("[green]✓ Configuration saved[/green]")
        console.print("[dim]Restart the gateway to apply: chatflow restart[/dim]")

    console.print()
    console.print(Panel(JSON(json.dumps(config.to_dict(), indent=2)), title="[bold]Configuration[/bold]"))
    console.print()
    console.print("[dim]Config file:[/dim]", get_config_path())


@cli.command("models")
@click.option("--live", is_flag=True, help="Ask the running gateway for the Antigravity list")
def list_models(live):
    """List providers and OAuth-backed models."""
    console.print()
    console.print("[bold]Providers:[/bold]")
    for preset in get_provider_presets():
        console.print(f"- {preset['name']}  [dim]{preset['id']} → {preset['baseUrl'] or '(custom)'}[/dim]")

    console.print()
    console.print("[bold]Gemini CLI models[/bold] [dim](model id prefix gemini-cli/ optional)[/dim]")
    for model in get_gemini_cli_models():
        console.print(f"- {model['name']}  [dim]{model['id']}[/dim]")

    antigravity_models = get_fallback_antigravity_models()
    if live:
        antigravity_config = load_state(get_state_path()).provider_configs.get("antigravity")
        refresh_token = antigravity_config.api_key if antigravity_config else ""
        antigravity_models = asyncio.run(_fetch_antigravity_models(Config().gateway_url, refresh_token))

    console.print()
    console.print("[bold]Antigravity models[/bold] [dim](model id prefix antigravity/)[/dim]")
    for model in antigravity_models:
        line = f"- {model['name']}  [dim]{model['id']}[/dim]"
        if model.get("quotaPercent") is not None:
            line += f"  [cyan]{model['quotaPercent']}% quota left[/cyan]"
        console.print(line)


async def _fetch_antigravity_models(gateway_url: str, refresh_token: str = "") -> list[dict]:
    headers = {"x-api-key": refresh_token} if refresh_token else {}
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{gateway_url}/api/antigravity/models", headers=headers) as response:
                data = await response.json()
    except aiohttp.ClientError as e:
        console.print(f"[yellow]⚠ Gateway not reachable, showing fallback list: {e}[/yellow]")
        return get_fallback_antigravity_models()

    if data.get("error"):
        console.print(f"[yellow]⚠ {data['error']}[/yellow]")
    return data.get("models") or []


@cli.command("auth-url")
@click.argument("provider", type=click.Choice(["gemini", "antigravity"]))
@click.option("--redirect-uri", default="http://localhost", show_default=True)
@click.option("--exchange/--no-exchange", default=True, help="Prompt for the code and exchange it")
def auth_url(provider, redirect_uri, exchange):
    """Print the Google consent URL for a provider and exchange the code."""
    import questionary
    from chatflow.proxy.errors import OAuthConfigError
    from chatflow.proxy.oauth import ANTIGRAVITY_SCOPES, GEMINI_SCOPES, build_authorization_url
    from chatflow.proxy.token_manager import antigravity_token_manager, gemini_token_manager

    token_manager = gemini_token_manager if provider == "gemini" else antigravity_token_manager
    scopes = GEMINI_SCOPES if provider == "gemini" else ANTIGRAVITY_SCOPES

    try:
        url = build_authorization_url(token_manager.client_id, scopes, redirect_uri=redirect_uri)
    except OAuthConfigError as e:
        raise click.ClickException(str(e))

    console.print()
    console.print(Panel.fit(
        f"[bold yellow]🔐 Authorize chatflow with Google[/bold yellow]\n\n{url}",
        border_style="yellow",
    ))

    if not exchange:
        return

    code = questionary.text("Paste the code parameter from the redirect URL:").ask()
    if not code:
        console.print("[dim]Cancelled.[/dim]")
        return

    result = asyncio.run(_exchange_code(Config().gateway_url, provider, code.strip(), redirect_uri))
    if "refresh_token" not in result:
        raise click.ClickException(result.get("error", "Token exchange failed"))

    state_path = get_state_path()
    store = load_state(state_path)
    store.update_provider_config(provider, api_key=result["refresh_token"],
                                 base_url=next(p["baseUrl"] for p in get_provider_presets() if p["id"] == provider))
    save_state(store, state_path)
    console.print(f"[green]✓ Refresh token saved to the {provider} provider settings[/green]")


async def _exchange_code(gateway_url: str, provider: str, code: str, redirect_uri: str) -> dict:
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{gateway_url}/api/{provider}/auth",
                                    json={"code": code, "redirect_uri": redirect_uri}) as response:
                return await response.json(content_type=None)
    except aiohttp.ClientError as e:
        return {"error": f"Gateway not reachable ({e}). Start it with: chatflow start"}


@cli.command()
@click.argument("direction", type=click.Choice(["push", "pull"]))
def sync(direction):
    """Push sessions to, or pull them from, R2 through the gateway."""
    state_path = get_state_path()
    store = load_state(state_path)

    result = asyncio.run(_sync_sessions(Config().gateway_url, store, direction))
    if "error" in result:
        raise click.ClickException(result["error"])

    if direction == "push":
        store.last_synced_at = result.get("timestamp") or now_ms()
        console.print(f"[green]✓ Pushed {len(store.sessions)} sessions[/green]")
    else:
        sessions = [Session.from_dict(s) for s in result.get("sessions") or []]
        if not sessions:
            console.print("[yellow]No remote sessions found[/yellow]")
            return
        store.replace_sessions(sessions)
        store.last_synced_at = now_ms()
        console.print(f"[green]✓ Pulled {len(sessions)} sessions[/green]")

    save_state(store, state_path)


async def _sync_sessions(gateway_url: str, store, direction: str) -> dict:
    url = f"{gateway_url}/api/storage/sync"
    try:
        async with aiohttp.ClientSession() as session:
            if direction == "push":
                body = {"sessions": store.to_dict()["sessions"], "storageConfig": store.storage_config}
                async with session.post(url, json=body) as response:
                    return await response.json(content_type=None)

            creds = base64.b64encode(json.dumps(store.storage_config).encode("utf-8")).decode("ascii")
            async with session.get(url, params={"creds": creds}) as response:
                return await response.json(content_type=None)
    except aiohttp.ClientError as e:
        return {"error": f"Gateway not reachable ({e}). Start it with: chatflow start"}


@cli.command()
@click.option("--provider", default=None, help="Provider id to use (openai, openrouter, gemini, ...)")
@click.option("--model", default=None, help="Model id for the provider")
@click.option("--api-key", default=None, help="API key or OAuth refresh token for the provider")
def chat(provider, model, api_key):
    """Open the terminal chat view."""
    from chatflow.chat import GATEWAY_TIMEOUT, ChatRunner
    from chatflow.terminal import ChatView

    state_path = get_state_path()
    store = load_state(state_path)

    if provider:
        store.set_active_provider(provider)
        preset = next((p for p in get_provider_presets() if p["id"] == provider), None)
        if preset and provider not in store.provider_configs:
            store.update_provider_config(provider, base_url=preset["baseUrl"])
    if model:
        store.update_provider_config(store.active_provider_id, selected_model_id=model)
    if api_key:
        store.update_provider_config(store.active_provider_id, api_key=api_key)

    gateway_url = Config().gateway_url

    async def run():
        async with aiohttp.ClientSession(timeout=GATEWAY_TIMEOUT) as session:
            view = ChatView(store, ChatRunner(session, gateway_url), console=console, state_path=state_path)
            await view.run()

    asyncio.run(run())


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
