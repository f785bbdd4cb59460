"""CLI entry point for the Integrate SDK."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from pathlib import Path
from typing import Any, NoReturn

import click

from . import __version__
from .client import IntegrateClient
from .config import Config, ConfigError, load_config
from .environment import DesktopEnvironment
from .errors import IntegrateSDKError
from .output import OutputHandler
from .storage import EncryptedFileStorage, KeyValueStorage

# Logger for CLI
logger = logging.getLogger("integrate")


def create_storage() -> KeyValueStorage:
    """Persistent storage used by the command line."""
    return EncryptedFileStorage()


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Path to integrate.json")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, config_path: str | None, env_path: str | None, verbose: bool) -> None:
    """Integrate - authorize providers and manage their tokens."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_config(ctx: click.Context) -> Config | NoReturn:
    """Get config from context, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_config(ctx.obj["config_path"], ctx.obj["env_path"])
    except ConfigError as e:
        output.error(e, help_text="Check integrate.json for syntax errors and required keys.")
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


def build_client(ctx: click.Context, config: Config, **flow_overrides: Any) -> tuple[IntegrateClient, DesktopEnvironment]:
    """Create a client backed by encrypted local storage and the system browser."""
    output: OutputHandler = ctx.obj["output"]
    try:
        environment = DesktopEnvironment(storage=create_storage())
        client_config = config.to_client_config(environment)
    except (ConfigError, IntegrateSDKError) as e:
        output.error(e)
        raise SystemExit(1)  # Never reached due to sys.exit in output.error

    overrides = {k: v for k, v in flow_overrides.items() if v is not None}
    if overrides:
        try:
            client_config.flow = dataclasses.replace(client_config.flow, **overrides)
        except ValueError as e:
            output.error(e)

    return IntegrateClient(client_config), environment


def _require_provider(output: OutputHandler, client: IntegrateClient, provider: str) -> None:
    if provider not in client.providers:
        configured = ", ".join(client.providers) or "none"
        output.error(
            IntegrateSDKError(f"Unknown provider: {provider}"),
            help_text=f"Configured providers: {configured}",
        )


@main.command()
@click.argument("provider")
@click.option("--mode", type=click.Choice(["popup", "redirect"]), default=None, help="Authorization window mode")
@click.option("--return-url", default=None, help="URL bound into the state and reported on completion")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for the browser callback")
@click.pass_context
def authorize(ctx: click.Context, provider: str, mode: str | None, return_url: str | None, timeout: float | None) -> None:
    """Authorize PROVIDER in the browser and store its token."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    client, environment = build_client(ctx, config, mode=mode, callback_timeout=timeout)
    _require_provider(output, client, provider)

    async def run() -> dict[str, Any]:
        async with environment:
            async with client:
                if not output.json_mode:
                    click.echo(f"Opening browser to authorize {provider}...", err=True)

                token = await client.authorize(provider, return_url=return_url)
                if token is None:
                    token = await client.complete_redirect_flow(timeout)

                return {
                    "provider": provider,
                    "scopes": token.scopes,
                    "expires_at": token.expires_at.isoformat() if token.expires_at else None,
                    "return_url": return_url,
                }

    try:
        result = asyncio.run(run())
    except IntegrateSDKError as e:
        output.error(e)
        return

    output.success(result, human_message=f"Authorized {provider}")


@main.command()
@click.argument("provider", required=False)
@click.pass_context
def status(ctx: click.Context, provider: str | None) -> None:
    """Show authorization status for PROVIDER (or all providers)."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    client, _ = build_client(ctx, config)

    if provider:
        _require_provider(output, client, provider)
    providers = [provider] if provider else client.providers

    async def run() -> list[dict[str, Any]]:
        async with client:
            return [(await client.get_authorization_status(p)).to_dict() for p in providers]

    try:
        statuses = asyncio.run(run())
    except IntegrateSDKError as e:
        output.error(e)
        return

    if output.json_mode:
        output.success(statuses)
        return

    if not statuses:
        click.echo("No OAuth providers configured.")
        return

    rows = [
        [
            s["provider"],
            "yes" if s["authorized"] else ("expired" if s["expired"] else "no"),
            " ".join(s["scopes"] or []),
            s["expires_in_human"] or "-",
        ]
        for s in statuses
    ]
    output.table(["Provider", "Authorized", "Scopes", "Expires in"], rows)


@main.command()
@click.argument("provider")
@click.pass_context
def disconnect(ctx: click.Context, provider: str) -> None:
    """Revoke and forget PROVIDER's authorization."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    client, _ = build_client(ctx, config)
    _require_provider(output, client, provider)

    async def run() -> None:
        async with client:
            await client.disconnect_provider(provider)

    try:
        asyncio.run(run())
    except IntegrateSDKError as e:
        output.error(e)
        return

    output.success({"provider": provider, "disconnected": True}, human_message=f"Disconnected {provider}")


@main.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Forget every provider token and pending authorization."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    client, _ = build_client(ctx, config)

    async def run() -> None:
        async with client:
            await client.logout()

    try:
        asyncio.run(run())
    except IntegrateSDKError as e:
        output.error(e)
        return

    output.success({"providers": client.providers, "logged_out": True}, human_message="Logged out of all providers")


@main.command()
@click.pass_context
def providers(ctx: click.Context) -> None:
    """List configured integrations."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)

    rows = []
    for name, settings in config.integrations.items():
        integration = settings.to_integration()
        rows.append(
            [
                name,
                integration.provider or "-",
                " ".join(integration.oauth.scopes) if integration.oauth else "-",
                str(len(integration.tools)),
            ]
        )

    if not rows and not output.json_mode:
        click.echo("No integrations configured.")
        return

    output.table(["Integration", "Provider", "Scopes", "Tools"], rows)


if __name__ == "__main__":
    main()
