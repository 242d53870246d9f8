"""
Preflight checks run before commands that talk to Google Calendar.
"""

import json
import logging
import sqlite3
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from hebbirthday_sync.models import SyncConfig

logger = logging.getLogger(__name__)

Issue = tuple[str, str, str]  # (label, detail, hint)

_RECONNECT = "Run: hebbirthday-sync connect"


def _identity_issues(cfg: SyncConfig) -> list[Issue]:
    if cfg.user_id and cfg.tenant_id:
        return []
    return [
        (
            "Configuration",
            "user_id and tenant_id are required",
            "Set them in the [hebbirthday-sync] section of the config file",
        )
    ]


def _secrets_issues(secrets: Path | None) -> list[Issue]:
    if secrets is not None and secrets.exists():
        return []
    logger.error(f"OAuth client secrets file missing: {secrets}")
    detail = f"not found: {secrets}" if secrets else "client_secrets_file is not set"
    return [
        (
            "Client secrets",
            detail,
            "Download an OAuth desktop client JSON from the Google Cloud Console",
        )
    ]


def _token_issues(token: Path) -> list[Issue]:
    """A stored token must exist, parse, and carry a refresh token."""
    if not token.exists():
        return [("Google token", f"not found: {token}", _RECONNECT)]
    try:
        data = json.loads(token.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error(f"Token file {token} unreadable: {e}")
        return [("Google token", f"{token}: {e}", _RECONNECT)]
    if not data.get("refresh_token"):
        return [("Google token", "token has no refresh_token and will expire", _RECONNECT)]
    return []


def _state_db_issues(db_path: Path) -> list[Issue]:
    hint = f"Make {db_path.parent} writable for the current user"
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create {db_path.parent}: {e}")
        return [("State database", str(e), hint)]

    if not db_path.exists():
        return []
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("SELECT 1 FROM sqlite_master LIMIT 1")
        # A write lock needs a journal file next to the database.
        conn.execute("BEGIN IMMEDIATE")
        conn.execute("ROLLBACK")
    except sqlite3.Error as e:
        logger.error(f"State DB {db_path} is not usable: {e}")
        return [("State database", f"{db_path}: {e}", hint)]
    finally:
        conn.close()
    return []


def run_preflight_checks(cfg: SyncConfig, console: Console, connecting: bool = False) -> bool:
    """Return True if the command may proceed; print issues and return False otherwise.

    ``connecting`` checks for the OAuth client secrets instead of a stored token,
    since ``connect`` is the command that creates the token.
    """
    issues = _identity_issues(cfg)
    if connecting:
        issues += _secrets_issues(cfg.client_secrets_file)
    else:
        issues += _token_issues(cfg.token_file)
    issues += _state_db_issues(cfg.state_db_path)

    if issues:
        _print_issues(issues, console)
    return not issues


def _print_issues(issues: list[Issue], console: Console) -> None:
    lines = Text()
    for label, detail, hint in issues:
        if lines:
            lines.append("\n")
        lines.append(f"  ✗  {label}: {detail}", style="bold red")
        lines.append(f"\n       → {hint}", style="yellow")
    console.print(Panel(lines, title="[bold red]Preflight checks failed[/bold red]"))
