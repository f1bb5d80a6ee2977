"""Command-line interface for appauth configuration and sessions."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import time

from pathlib import Path
from typing import TYPE_CHECKING, Any

from .exceptions import AppAuthException


if TYPE_CHECKING:
    from .config import AuthSettings
    from .types import Claims


def main(argv: list[str] | None = None) -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="appauth",
        description="appauth configuration and session tools",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or export configuration",
    )
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_group.add_argument(
        "--env",
        action="store_true",
        help="Export configuration as environment variables",
    )
    config_group.add_argument(
        "--sources",
        action="store_true",
        help="Show configuration file sources",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output file path (default: stdout)",
    )

    # login command
    login_parser = subparsers.add_parser(
        "login",
        help="Log in with the configured provider",
    )
    login_parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the authorization URL instead of opening a browser",
    )

    subparsers.add_parser("logout", help="Discard the stored credentials")
    subparsers.add_parser("status", help="Show the stored credentials' status")

    args = parser.parse_args(argv)

    if args.command == "config":
        return handle_config(args)
    if args.command == "login":
        return handle_login(args)
    if args.command == "logout":
        return handle_logout(args)
    if args.command == "status":
        return handle_status(args)
    parser.print_help()
    return 0


def handle_config(args: argparse.Namespace) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import AppAuthSettings

    if args.sources:
        return show_config_sources()

    settings = AppAuthSettings()

    if args.toml:
        output = settings.to_toml()
    elif args.env:
        output = settings.to_env()
    else:
        output = settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)

    return 0


def show_config_sources() -> int:
    """Show configuration file sources and their status.

    Returns
    -------
    int
        Exit code.
    """
    sources = [
        ("pyproject.toml [tool.appauth]", "pyproject.toml"),
        ("./appauth.toml", "appauth.toml"),
        ("~/.config/appauth/config.toml", str(Path.home() / ".config" / "appauth" / "config.toml")),
        ("APPAUTH_CONFIG_FILE", os.environ.get("APPAUTH_CONFIG_FILE", "")),
    ]

    print("Configuration Sources (in order of precedence):\n")
    print(f"{'Source':<40} {'Status':<15} {'Path'}")
    print("-" * 80)
    print(f"{'Built-in defaults':<40} {'Active':<15}")

    for name, path_str in sources:
        path = Path(path_str).expanduser() if path_str else None
        status = "Found" if path is not None and path.exists() else "Not found"
        print(f"{name:<40} {status:<15} {path or ''}")

    env_vars = sorted(k for k in os.environ if k.startswith("APPAUTH_"))
    if env_vars:
        shown = ", ".join(env_vars[:3]) + ("..." if len(env_vars) > 3 else "")
        print(f"{'Environment variables':<40} {f'{len(env_vars)} vars':<15} {shown}")
    else:
        print(f"{'Environment variables':<40} {'No vars':<15}")

    print("\nNote: Later sources override earlier ones.")
    return 0


def _load_auth_settings() -> AuthSettings | None:
    from .config import get_settings
    from .log import configure

    settings = get_settings()
    configure(settings.log.level, settings.log.format)
    if settings.auth is None:
        print("No auth configuration found. Set APPAUTH_AUTH__CLIENT_ID or add an [auth] section.")
        return None
    return settings.auth


def _create_user(claims: Claims) -> dict[str, Any]:
    return dict(claims)


async def _login(settings: AuthSettings, open_browser: bool) -> bool:
    from .auth.flow import LoginFlowListener, resolve_platform, select_login_flow
    from .service import AuthController, configure_auth

    flow = select_login_flow(
        resolve_platform(settings.platform.name),
        timeout=settings.timeout,
        open_browser=open_browser,
    )
    listener = LoginFlowListener(on_open_authorization=lambda url: print(f"Open this URL to log in:\n  {url}"))
    kwargs = {"flow": flow} if settings.provider == "oauth2" else {}
    service = configure_auth(AuthController(on_create_user=_create_user), settings=settings, **kwargs)
    try:
        return await service.login(listener)
    finally:
        await service.aclose()


def handle_login(args: argparse.Namespace) -> int:
    """Handle the login command.

    Returns
    -------
    int
        Exit code (0 when logged in).
    """
    settings = _load_auth_settings()
    if settings is None:
        return 1
    try:
        logged_in = asyncio.run(_login(settings, open_browser=not args.no_browser))
    except AppAuthException as exc:
        print(f"Login failed: {exc}")
        return 1
    except KeyboardInterrupt:
        print("Login cancelled")
        return 1
    print("Logged in" if logged_in else "Login was not completed")
    return 0 if logged_in else 1


def _credential_store(settings: AuthSettings) -> Any:
    from .auth.credentials_store import SecureCredentialStore
    from .auth.storage import create_secure_storage

    return SecureCredentialStore(create_secure_storage(settings.storage))


def handle_logout(_args: argparse.Namespace) -> int:
    """Handle the logout command.

    Returns
    -------
    int
        Exit code.
    """
    settings = _load_auth_settings()
    if settings is None:
        return 1
    try:
        asyncio.run(_credential_store(settings).clear())
    except AppAuthException as exc:
        print(f"Logout failed: {exc}")
        return 1
    print("Stored credentials cleared")
    return 0


def handle_status(_args: argparse.Namespace) -> int:
    """Handle the status command.

    Returns
    -------
    int
        Exit code (0 when usable credentials are stored).
    """
    settings = _load_auth_settings()
    if settings is None:
        return 1
    try:
        credentials = asyncio.run(_credential_store(settings).restore())
    except AppAuthException as exc:
        print(f"Could not read stored credentials: {exc}")
        return 1

    if credentials is None:
        print("Not logged in")
        return 1

    print("Stored credentials found")
    print(f"  token endpoint : {credentials.token_endpoint}")
    print(f"  scopes         : {' '.join(credentials.scopes) or '-'}")
    print(f"  can refresh    : {'yes' if credentials.can_refresh else 'no'}")
    if credentials.expiration is not None:
        state = "expired" if credentials.is_expired else "valid"
        print(f"  expires        : {time.ctime(credentials.expiration)} ({state})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
