"""
Command-line interface for uchelper.

Provides commands for managing platform API keys, per-tool credentials,
and validated execution of external tools.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, NoReturn

from uchelper import __version__
from uchelper.config.credentials import (
    CredentialError,
    SecureCredentialStore,
    StorageType,
)
from uchelper.config.settings import (
    SUPPORTED_PLATFORMS,
    ConfigurationError,
    Settings,
    get_api_key,
    get_config_path,
    get_endpoint,
    get_state_dir,
    load_config,
    revoke_api_key,
    save_config,
    set_api_key,
    set_master_password,
    verify_master_password,
)
from uchelper.security.command_validator import CommandValidator
from uchelper.security.crypto import DECRYPT_FAILED_MESSAGE, DecryptionError

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_verbose(message: str, level: int = 1) -> None:
    """Print a verbose message only if verbosity is high enough."""
    if _verbose_level >= level and not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def mask_secret(value: str) -> str:
    """Show only the last four characters of a secret."""
    if len(value) <= 8:
        return "*" * len(value)
    return "*" * (len(value) - 4) + value[-4:]


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for uchelper CLI."""
    parser = argparse.ArgumentParser(
        prog="uchelper",
        description="Unified credential and endpoint configuration for AI coding assistants",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"uchelper {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.unified-coding-helper/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show configuration paths and status",
        description="Display version, paths, active platform, and credential store status.",
    )
    info_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    info_parser.set_defaults(func=cmd_info)

    # auth command group
    auth_parser = subparsers.add_parser(
        "auth",
        help="Manage encrypted platform API keys",
        description="Store, show, or revoke platform API keys in config.yaml.",
    )
    auth_sub = auth_parser.add_subparsers(dest="auth_command", metavar="<action>")
    auth_sub.required = True

    set_key_parser = auth_sub.add_parser("set-key", help="Encrypt and store an API key")
    set_key_parser.add_argument("platform", choices=SUPPORTED_PLATFORMS)
    set_key_parser.set_defaults(func=cmd_auth_set_key)

    show_key_parser = auth_sub.add_parser("show", help="Show a stored API key")
    show_key_parser.add_argument("platform", choices=SUPPORTED_PLATFORMS)
    show_key_parser.add_argument(
        "--reveal",
        action="store_true",
        help="Print the full key instead of a masked one",
    )
    show_key_parser.set_defaults(func=cmd_auth_show)

    revoke_parser = auth_sub.add_parser("revoke", help="Remove a stored API key")
    revoke_parser.add_argument("platform", choices=SUPPORTED_PLATFORMS)
    revoke_parser.set_defaults(func=cmd_auth_revoke)

    # credentials command group
    creds_parser = subparsers.add_parser(
        "credentials",
        help="Manage per-tool credentials",
        description="Store tool credentials in the encrypted credential store.",
    )
    creds_sub = creds_parser.add_subparsers(dest="credentials_command", metavar="<action>")
    creds_sub.required = True

    cred_set_parser = creds_sub.add_parser("set", help="Store a credential")
    _add_credential_identity(cred_set_parser)
    cred_set_parser.add_argument(
        "--storage",
        choices=[s.value for s in StorageType],
        help="Storage strategy (default: credential_storage.type from config)",
    )
    cred_set_parser.add_argument(
        "--value-stdin",
        action="store_true",
        dest="value_stdin",
        help="Read the value from stdin instead of prompting",
    )
    cred_set_parser.set_defaults(func=cmd_credentials_set)

    cred_get_parser = creds_sub.add_parser("get", help="Show a credential")
    _add_credential_identity(cred_get_parser)
    cred_get_parser.add_argument(
        "--reveal",
        action="store_true",
        help="Print the full value instead of a masked one",
    )
    cred_get_parser.set_defaults(func=cmd_credentials_get)

    cred_remove_parser = creds_sub.add_parser("remove", help="Remove a credential")
    _add_credential_identity(cred_remove_parser)
    cred_remove_parser.add_argument(
        "--unset-env",
        action="store_true",
        dest="unset_env",
        help="Also drop the variable from the current process environment",
    )
    cred_remove_parser.set_defaults(func=cmd_credentials_remove)

    cred_list_parser = creds_sub.add_parser("list", help="List stored credentials (no values)")
    cred_list_parser.add_argument("--platform", metavar="ID", help="Filter by platform")
    cred_list_parser.add_argument("--tool", metavar="ID", help="Filter by tool")
    cred_list_parser.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format (default: table)",
    )
    cred_list_parser.set_defaults(func=cmd_credentials_list)

    cred_export_parser = creds_sub.add_parser(
        "export-env",
        help="Write all credentials to a NAME=value file (plaintext!)",
    )
    cred_export_parser.add_argument("path", metavar="PATH")
    cred_export_parser.set_defaults(func=cmd_credentials_export_env)

    cred_env_parser = creds_sub.add_parser(
        "env",
        help="Print shell assignments for a platform/tool pair",
        description="Used by generated wrapper scripts: eval \"$(uchelper credentials env ...)\"",
    )
    cred_env_parser.add_argument("--platform", metavar="ID", required=True)
    cred_env_parser.add_argument("--tool", metavar="ID", required=True)
    cred_env_parser.add_argument(
        "--format",
        choices=["sh", "bat"],
        default="sh",
        help="Shell syntax (default: sh)",
    )
    cred_env_parser.set_defaults(func=cmd_credentials_env)

    cred_clear_parser = creds_sub.add_parser("clear", help="Remove every credential")
    cred_clear_parser.add_argument(
        "--yes",
        action="store_true",
        help="Do not ask for confirmation",
    )
    cred_clear_parser.set_defaults(func=cmd_credentials_clear)

    # validate-command command
    validate_parser = subparsers.add_parser(
        "validate-command",
        help="Check whether a command is safe to execute",
        description="Run the command validator and show the parsed program and arguments.",
    )
    validate_parser.add_argument("command_string", metavar="COMMAND")
    validate_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    validate_parser.set_defaults(func=cmd_validate_command)

    # exec command
    exec_parser = subparsers.add_parser(
        "exec",
        help="Run a tool with its credentials, without a shell",
        description=(
            "Validate COMMAND and run it with credentials added to the child "
            "environment. The current environment is never modified."
        ),
    )
    exec_parser.add_argument("--platform", metavar="ID", help="Add this platform's credentials")
    exec_parser.add_argument("--tool", metavar="ID", help="Add this tool's credentials")
    exec_parser.add_argument(
        "--timeout",
        type=float,
        metavar="SECONDS",
        help="Kill the command after this many seconds",
    )
    exec_parser.add_argument("command_args", nargs=argparse.REMAINDER, metavar="COMMAND")
    exec_parser.set_defaults(func=cmd_exec)

    return parser


def _add_credential_identity(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("platform", metavar="PLATFORM")
    parser.add_argument("tool", metavar="TOOL")
    parser.add_argument("key", metavar="KEY")


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _config_path(args: argparse.Namespace) -> Path:
    return Path(args.config) if getattr(args, "config", None) else get_config_path()


def _load_settings(args: argparse.Namespace) -> Settings:
    return load_config(_config_path(args))


def _open_credential_store() -> SecureCredentialStore:
    """
    Build the process's credential store.

    The CLI never exports into its own environment: a variable set here
    would vanish when the command exits.
    """
    return SecureCredentialStore(get_state_dir(), apply_env=False)


def _prompt_password(settings: Settings, confirm: bool) -> str | None:
    """
    Ask for the master password.

    When a master password is already set, the answer is checked against
    the stored verifier. Otherwise it is confirmed and becomes the master
    password.
    """
    password = getpass.getpass("Master password: ")
    if not password:
        output_error("Error: Password cannot be empty.")
        return None

    if settings.master_password_hash:
        if not verify_master_password(settings, password):
            output_error(f"Error: {DECRYPT_FAILED_MESSAGE}")
            return None
        return password

    if confirm:
        again = getpass.getpass("Confirm master password: ")
        if password != again:
            output_error("Error: Passwords do not match.")
            return None
        set_master_password(settings, password)

    return password


def cmd_info(args: argparse.Namespace) -> int:
    """Show configuration paths and status."""
    import platform as platform_module

    state_dir = get_state_dir()
    info: dict[str, Any] = {
        "version": __version__,
        "python_version": platform_module.python_version(),
        "platform": platform_module.platform(),
        "config_file": str(_config_path(args)),
        "state_dir": str(state_dir),
        "active_platform": None,
        "endpoint": None,
        "api_keys": {},
        "credential_store": None,
    }

    try:
        settings = _load_settings(args)
        info["active_platform"] = settings.active_platform
        info["endpoint"] = get_endpoint(settings)
        for name in SUPPORTED_PLATFORMS:
            config = getattr(settings, name)
            if config.encrypted_api_key:
                info["api_keys"][name] = "encrypted"
            elif config.api_key:
                info["api_keys"][name] = "plaintext"
            else:
                info["api_keys"][name] = "not set"
    except ConfigurationError as e:
        info["config_error"] = str(e)

    try:
        store = _open_credential_store()
        info["credential_store"] = {
            "path": str(store.store_path),
            "credentials": store.get_credential_count(),
        }
    except CredentialError as e:
        info["credential_store"] = {"error": str(e)}

    if args.json:
        output(json.dumps(info, indent=2, default=str), force=True)
        return 0

    output("uchelper System Information")
    output("=" * 60)
    output()
    output(f"Version: {info['version']}")
    output(f"Python: {info['python_version']}")
    output(f"Platform: {info['platform']}")
    output()
    output("Paths:")
    output(f"  Config file: {info['config_file']}")
    output(f"  State directory: {info['state_dir']}")
    output()
    if "config_error" in info:
        output(f"Configuration error: {info['config_error']}")
    else:
        output(f"Active platform: {info['active_platform']}")
        output(f"Endpoint: {info['endpoint']}")
        output("API keys:")
        for name, status in info["api_keys"].items():
            output(f"  {name}: {status}")
            if status == "plaintext":
                output(f"    Run 'uchelper auth set-key {name}' to encrypt it")
    output()
    store_info = info["credential_store"]
    if "error" in store_info:
        output(f"Credential store: ERROR - {store_info['error']}")
    else:
        output(f"Credential store: {store_info['credentials']} credential(s)")

    return 0


def cmd_auth_set_key(args: argparse.Namespace) -> int:
    """Encrypt and store a platform API key."""
    settings = _load_settings(args)

    api_key = getpass.getpass(f"{args.platform} API key: ").strip()
    if not api_key:
        output_error("Error: API key cannot be empty.")
        return 1

    password = _prompt_password(settings, confirm=True)
    if password is None:
        return 1

    set_api_key(settings, args.platform, api_key, password)
    settings.platform = args.platform
    settings.active_platform = args.platform
    save_config(settings, _config_path(args))

    output(f"Saved encrypted API key for {args.platform}.")
    return 0


def cmd_auth_show(args: argparse.Namespace) -> int:
    """Show a stored platform API key."""
    settings = _load_settings(args)

    password = getpass.getpass("Master password (Enter to read a legacy plaintext key): ")
    api_key = get_api_key(settings, args.platform, password or None)

    if api_key is None:
        output_error(f"No API key stored for {args.platform}.")
        return 1

    output(api_key if args.reveal else mask_secret(api_key), force=True)
    return 0


def cmd_auth_revoke(args: argparse.Namespace) -> int:
    """Remove a platform API key."""
    settings = _load_settings(args)
    revoke_api_key(settings, args.platform)
    save_config(settings, _config_path(args))
    output(f"Revoked API key for {args.platform}.")
    return 0


def cmd_credentials_set(args: argparse.Namespace) -> int:
    """Store a credential in the encrypted store."""
    storage = args.storage
    if storage is None:
        storage = _load_settings(args).credential_storage.type

    if args.value_stdin:
        value = sys.stdin.readline().rstrip("\r\n")
    else:
        value = getpass.getpass(f"Value for {args.key}: ")

    if not value:
        output_error("Error: Value cannot be empty.")
        return 1

    store = _open_credential_store()
    try:
        ok = store.set_credential(args.platform, args.tool, args.key, value, storage)
    except ValueError as e:
        output_error(f"Error: {e}")
        return 1

    if not ok:
        output_error("Error: Failed to store credential. See log for details.")
        return 1

    output(f"Stored {args.platform}:{args.tool}:{args.key} ({storage}).")
    if storage == StorageType.WRAPPER.value:
        script = store.get_wrapper_script_path(args.platform, args.tool)
        output(f"Source the wrapper before starting the tool: {script}")
    elif storage == StorageType.ENV.value:
        output(
            "Load into a shell with: "
            f"eval \"$(uchelper credentials env --platform {args.platform} --tool {args.tool})\""
        )
    else:
        output("Note: keychain storage has no OS backend; the value is kept in the encrypted store.")
    return 0


def cmd_credentials_get(args: argparse.Namespace) -> int:
    """Show a credential."""
    store = _open_credential_store()
    value = store.get_credential(args.platform, args.tool, args.key)

    if value is None:
        output_error(f"No credential {args.platform}:{args.tool}:{args.key}.")
        return 1

    output(value if args.reveal else mask_secret(value), force=True)
    return 0


def cmd_credentials_remove(args: argparse.Namespace) -> int:
    """Remove a credential."""
    store = _open_credential_store()
    if not store.remove_credential(args.platform, args.tool, args.key, unset_env=args.unset_env):
        output_error("Error: Failed to remove credential. See log for details.")
        return 1

    output(f"Removed {args.platform}:{args.tool}:{args.key}.")
    return 0


def cmd_credentials_list(args: argparse.Namespace) -> int:
    """List credentials without their values."""
    store = _open_credential_store()

    entries = store.list_all_credentials()
    if args.platform:
        entries = [e for e in entries if e.platform_id == args.platform]
    if args.tool:
        entries = [e for e in entries if e.tool_id == args.tool]

    rows = [
        {
            "platform": e.platform_id,
            "tool": e.tool_id,
            "key": e.key,
            "storage": e.storage_type.value,
            "env_var": e.env_var_name,
            "updated_at": e.updated_at,
        }
        for e in sorted(entries, key=lambda e: e.composite_key)
    ]

    if args.format == "json":
        output(json.dumps(rows, indent=2), force=True)
        return 0

    if not rows:
        output("No credentials stored.")
        return 0

    output(f"{'PLATFORM':<12} {'TOOL':<16} {'KEY':<16} {'STORAGE':<10} ENV VAR")
    output("-" * 80)
    for row in rows:
        output(
            f"{row['platform']:<12} {row['tool']:<16} {row['key']:<16} "
            f"{row['storage']:<10} {row['env_var']}"
        )
    return 0


def cmd_credentials_export_env(args: argparse.Namespace) -> int:
    """Export all credentials to an env file."""
    store = _open_credential_store()
    if not store.export_to_env_file(args.path):
        output_error("Error: Failed to write env file. See log for details.")
        return 1

    output(f"Wrote {store.get_credential_count()} credential(s) to {args.path}")
    output("Warning: this file contains plaintext secrets.")
    return 0


def cmd_credentials_env(args: argparse.Namespace) -> int:
    """Print shell assignments for a platform/tool pair."""
    store = _open_credential_store()
    sys.stdout.write(store.shell_exports(args.platform, args.tool, args.format))
    return 0


def cmd_credentials_clear(args: argparse.Namespace) -> int:
    """Remove every credential."""
    if not args.yes:
        answer = input("Remove ALL stored credentials? (y/N): ").strip().lower()
        if answer != "y":
            output("Cancelled.")
            return 0

    store = _open_credential_store()
    if not store.clear_all_credentials():
        output_error("Error: Failed to clear credentials. See log for details.")
        return 1

    output("All credentials removed.")
    return 0


def cmd_validate_command(args: argparse.Namespace) -> int:
    """Validate a command string."""
    result = CommandValidator().validate(args.command_string)

    if args.json:
        output(json.dumps({
            "is_valid": result.is_valid,
            "command": result.command,
            "args": result.args,
            "error": result.error,
            "warnings": result.warnings,
        }, indent=2), force=True)
    elif result.is_valid:
        output(f"OK: {result.command} {result.args}")
        for warning in result.warnings:
            output(f"  warning: {warning}")
    else:
        output_error(f"Rejected: {result.error}")

    return 0 if result.is_valid else 1


def cmd_exec(args: argparse.Namespace) -> int:
    """Run a validated command with credentials in the child environment."""
    command_args = list(args.command_args)
    if command_args and command_args[0] == "--":
        command_args = command_args[1:]
    command_string = " ".join(command_args)

    store = _open_credential_store()
    if args.platform or args.tool:
        credentials = store.env_credentials(args.platform, args.tool, storage_types=None)
    else:
        credentials = store.env_credentials()

    child_env = dict(os.environ)
    child_env.update(credentials)
    output_verbose(f"Adding {len(credentials)} credential variable(s) to the environment")

    result = CommandValidator().run(command_string, env=child_env, timeout=args.timeout)

    if result.stdout:
        sys.stdout.write(result.stdout)
    if result.stderr:
        sys.stderr.write(result.stderr)

    if not result.success:
        if result.returncode is None:
            output_error(f"Error: {result.error}")
            return 1
        return result.returncode

    return 0


def main() -> NoReturn:
    """Main entry point for uchelper CLI."""
    parser = create_parser()
    args = parser.parse_args()

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except DecryptionError:
        output_error(f"Error: {DECRYPT_FAILED_MESSAGE}")
        sys.exit(2)
    except CredentialError as e:
        output_error(f"Credential error: {e}")
        sys.exit(2)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
