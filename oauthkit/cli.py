"""CLI entry point for oauthkit.

Drives an authorization by hand, which is handy when registering a new
client or debugging a provider:

    oauthkit authorize github --callback https://app.example.com/cb
    # open the printed URL, approve, copy the redirect URL
    oauthkit complete github --url 'https://app.example.com/cb?code=...&state=...' \\
        --state <state printed by authorize>
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, NoReturn, TypeVar
from urllib.parse import parse_qsl, urlsplit

import click

from . import __version__
from .config import OAuthConfig, load_config
from .errors import (
    CallbackError,
    ConfigurationError,
    OAuthError,
    StateMismatchError,
    TokenDecryptionError,
    UnknownProviderError,
)
from .manager import OAuth
from .output import OutputHandler
from .store import EncryptedFileTokenStore
from .tokens import AccessToken

# Logger for CLI
logger = logging.getLogger("oauthkit")

# Out-of-band callback (RFC 5849 Section 2.1) when none is configured
OOB_CALLBACK = "oob"

T = TypeVar("T")


def build_oauth(config: OAuthConfig) -> OAuth:
    """Create the facade used by every command.

    Tokens go to the encrypted file store so that a request token issued by
    `authorize` is still there when `complete` runs in a new process.
    """
    return OAuth(
        config,
        store=EncryptedFileTokenStore(config.store_dir),
        current_url=lambda: OOB_CALLBACK,
    )


def run_async(oauth: OAuth, action: Callable[[], Awaitable[T]]) -> T:
    """Run one engine call and close the HTTP client afterwards."""

    async def runner() -> T:
        async with oauth:
            return await action()

    return asyncio.run(runner())


def _token_summary(name: str, token: AccessToken) -> dict[str, Any]:
    """Describe a token without revealing it."""
    return {
        "provider": name,
        "token_type": token.token_type,
        "token": f"{token.token[:4]}..." if len(token.token) > 8 else "***",
        "scope": token.scope,
        "expires_at": token.expires_at.isoformat() if token.expires_at else None,
        "expired": token.is_expired(buffer_seconds=0),
        "refresh_token": token.has_refresh_token(),
    }


def _parse_params(url: str | None, params: tuple[str, ...]) -> dict[str, str]:
    """Collect callback parameters from a redirect URL and/or key=value pairs."""
    result: dict[str, str] = {}
    if url:
        result.update(parse_qsl(urlsplit(url).query, keep_blank_values=True))
    for item in params:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected key=value, got {item!r}", param_hint="--param")
        result[key] = value
    return result


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Path to oauth config file")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, config_path: str | None, env_path: str | None, verbose: bool) -> None:
    """oauthkit - Run OAuth1/OAuth2 authorization flows from the command line."""
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


def get_config(ctx: click.Context) -> OAuthConfig | NoReturn:
    """Get config from context, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_config(ctx.obj["config_path"], ctx.obj["env_path"])
    except FileNotFoundError as e:
        output.error(e, help_text=str(e))
        raise SystemExit(1)  # Never reached due to sys.exit in output.error
    except json.JSONDecodeError as e:
        output.error(
            e,
            error_type="ConfigParseError",
            help_text="The config file contains invalid JSON. Check for syntax errors.",
        )
        raise SystemExit(1)
    except ConfigurationError as e:
        output.error(e, help_text="Check the structure of your oauth config file.")
        raise SystemExit(1)


def get_oauth(ctx: click.Context, config: OAuthConfig | None = None) -> OAuth | NoReturn:
    """Build the facade from the loaded config, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    if config is None:
        config = get_config(ctx)
    try:
        return build_oauth(config)
    except TokenDecryptionError as e:
        output.error(e, help_text="Delete the token file and authorize again.")
        raise SystemExit(1)
    except OAuthError as e:
        output.error(e)
        raise SystemExit(1)


def _help_for(error: OAuthError) -> str | None:
    if isinstance(error, UnknownProviderError):
        return "Run 'oauthkit providers' to see registered providers."
    if isinstance(error, ConfigurationError):
        return "Add client_id and client_secret for this provider to your oauth config file."
    if isinstance(error, StateMismatchError):
        return "The callback does not belong to the pending authorization. Run 'authorize' again."
    if isinstance(error, CallbackError):
        return "Pass the full redirect URL with --url, or the parameters with --param."
    return None


@main.command()
@click.pass_context
def providers(ctx: click.Context) -> None:
    """List registered providers and whether they are configured."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    oauth = get_oauth(ctx, config)

    rows = []
    for name in oauth.registry.names():
        descriptor = oauth.registry.lookup(name)
        configured = name in config.providers
        authorized = configured and oauth.has_access_token(name)
        rows.append([
            name,
            f"OAuth{int(descriptor.version)}",
            "yes" if configured else "no",
            "yes" if authorized else "no",
        ])

    output.table(["provider", "version", "configured", "authorized"], rows)


@main.command()
@click.argument("provider")
@click.option("--callback", "callback_url", help="Callback/redirect URL (default: configured callback)")
@click.option("--scope", "scopes", multiple=True, help="Scope to request (repeatable)")
@click.option("--owner", help="User or session id the tokens belong to")
@click.pass_context
def authorize(
    ctx: click.Context, provider: str, callback_url: str | None, scopes: tuple[str, ...], owner: str | None
) -> None:
    """Start authorization and print the URL to open."""
    output: OutputHandler = ctx.obj["output"]
    oauth = get_oauth(ctx)

    try:
        handle = oauth.provider(provider, callback_url=callback_url, scope=list(scopes) or None, owner=owner)
        url = run_async(oauth, lambda: oauth.authorization_url(handle))
    except OAuthError as e:
        output.error(e, help_text=_help_for(e))
        return

    pending = handle.pending
    data = {
        "provider": handle.name,
        "url": url,
        "state": pending.state if pending else None,
        "code_verifier": pending.code_verifier if pending else None,
    }

    if ctx.obj["json_mode"]:
        output.success(data)
        return

    click.secho(f"Open this URL to authorize {handle.name}:", bold=True)
    click.echo(f"  {url}")
    if data["state"]:
        click.echo()
        click.echo("Then run 'oauthkit complete' with:")
        click.secho(f"  --state {data['state']}", fg="cyan")
        if data["code_verifier"]:
            click.secho(f"  --code-verifier {data['code_verifier']}", fg="cyan")


@main.command()
@click.argument("provider")
@click.option("--url", "callback", help="Full redirect URL the provider sent you to")
@click.option("--param", "params", multiple=True, help="Callback parameter as key=value (repeatable)")
@click.option("--state", "expected_state", help="State printed by 'authorize' (OAuth2)")
@click.option("--code-verifier", help="PKCE verifier printed by 'authorize'")
@click.option("--callback", "callback_url", help="Callback URL used for 'authorize'")
@click.option("--owner", help="User or session id the tokens belong to")
@click.pass_context
def complete(
    ctx: click.Context,
    provider: str,
    callback: str | None,
    params: tuple[str, ...],
    expected_state: str | None,
    code_verifier: str | None,
    callback_url: str | None,
    owner: str | None,
) -> None:
    """Finish authorization with the provider's callback parameters."""
    output: OutputHandler = ctx.obj["output"]
    callback_params = _parse_params(callback, params)
    if not OAuth.has_access_input(callback_params):
        error = CallbackError("No authorization response in the given parameters")
        output.error(error, help_text=_help_for(error))
        return

    oauth = get_oauth(ctx)
    try:
        handle = oauth.provider(provider, callback_url=callback_url, owner=owner)
        token = run_async(
            oauth,
            lambda: oauth.complete_authorization(
                handle, callback_params, expected_state=expected_state, code_verifier=code_verifier
            ),
        )
    except OAuthError as e:
        output.error(e, help_text=_help_for(e))
        return

    output.success(
        _token_summary(handle.name, token),
        human_message=click.style(f"Authorized {handle.name}", fg="green"),
    )


@main.command()
@click.argument("provider")
@click.option("--owner", help="User or session id the tokens belong to")
@click.pass_context
def status(ctx: click.Context, provider: str, owner: str | None) -> None:
    """Show the stored token for a provider."""
    output: OutputHandler = ctx.obj["output"]
    oauth = get_oauth(ctx)

    try:
        name = oauth.registry.lookup(provider).name
        token = oauth.access_token(name, owner)
    except OAuthError as e:
        output.error(e, help_text=_help_for(e))
        return

    if token is None:
        output.fields({"provider": name, "authorized": False})
        return

    output.fields({"authorized": True, **_token_summary(name, token)}, title=name)


@main.command()
@click.argument("provider")
@click.option("--owner", help="User or session id the tokens belong to")
@click.pass_context
def logout(ctx: click.Context, provider: str, owner: str | None) -> None:
    """Revoke (where supported) and forget the stored token."""
    output: OutputHandler = ctx.obj["output"]
    oauth = get_oauth(ctx)

    try:
        handle = oauth.provider(provider, owner=owner)
        removed = run_async(oauth, lambda: oauth.logout(handle))
    except OAuthError as e:
        output.error(e, help_text=_help_for(e))
        return

    message = f"Logged out from {handle.name}" if removed else f"No token stored for {handle.name}"
    output.success({"provider": handle.name, "removed": removed}, human_message=message)


if __name__ == "__main__":
    main()
