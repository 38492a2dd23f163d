#!/usr/bin/env python3
"""
TOTP CLI - a local command-line TOTP authenticator
Usage:
    totp list [--secret]
    totp path
    totp add <name> <secret>
    totp remove <name> [--force]
    totp clean [--force]
    totp get [<name>] [--no-copy]
    totp export <name>
"""

import argparse
import base64
import bisect
import enum
import hashlib
import hmac
import json
import logging
import os
import struct
import sys
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from urllib.parse import quote

import pyperclip
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

__version__ = "1.0.0"

PERIOD = 30
DIGITS = 6

STORAGE_DIR_NAME = ".totp"
STORAGE_FILE_NAME = "secrets.json"

logger = logging.getLogger("totpcli")


def debug_log(message: str):
    """Log a debug message (enabled with --debug or OTP_DEBUG=1)"""
    logger.debug(message)


# ==================== TOTP Implementation ====================

def hotp(key: bytes, counter: int) -> str:
    """Generate HOTP code (RFC 4226)"""
    # Counter as 8-byte big-endian
    counter_bytes = struct.pack(">Q", counter)

    # HMAC-SHA1
    hmac_hash = hmac.new(key, counter_bytes, hashlib.sha1).digest()

    # Dynamic truncation
    offset = hmac_hash[-1] & 0x0F
    truncated = struct.unpack(">I", hmac_hash[offset:offset + 4])[0] & 0x7FFFFFFF

    otp = truncated % (10 ** DIGITS)
    return str(otp).zfill(DIGITS)


def generate(key: bytes, unix_seconds: int) -> str:
    """Generate TOTP code (RFC 6238) for the 30 second step containing unix_seconds"""
    return hotp(key, int(unix_seconds) // PERIOD)


def seconds_remaining(unix_seconds: int) -> int:
    """Get seconds remaining until next TOTP rotation, always in [1, 30]"""
    return PERIOD - (int(unix_seconds) % PERIOD)


# ==================== Errors ====================

class OtpError(Exception):
    """Base class for errors reported to the user"""
    exit_code = 1


class InvalidSecret(OtpError, ValueError):
    def __init__(self, secret: str):
        super().__init__(f"Invalid secret: {secret}")
        self.secret = secret


class InvalidName(OtpError, ValueError):
    def __init__(self):
        super().__init__("Account name must not be empty")


class DuplicateAccount(OtpError):
    def __init__(self, name: str):
        super().__init__(f"Account {name} already existed, please remove it first.")
        self.name = name


class AccountNotFound(OtpError):
    def __init__(self, name: str):
        super().__init__(f"Cannot find account with name: {name}")
        self.name = name


class InvalidIndex(OtpError):
    def __init__(self, selection: str):
        super().__init__(f"Invalid ID: {selection!r}")
        self.selection = selection


class CorruptStore(OtpError):
    def __init__(self, path: Path, reason: str):
        super().__init__(
            f"JSON file is corrupted ({reason}): {path}\n"
            "Backup your secrets immediately!"
        )
        self.path = path


class ClipboardUnavailable(OtpError):
    def __init__(self):
        super().__init__("Unable to copy to clipboard.")


# ==================== Base32 ====================

def decode_secret(secret: str) -> bytes:
    """Decode a base32 secret (RFC 4648 alphabet, uppercase, padded to 8)"""
    try:
        key = base64.b32decode(secret)
    except ValueError as e:
        # binascii.Error (bad digit or padding) is a ValueError, so is non-ASCII input
        raise InvalidSecret(secret) from e

    # b32decode ignores non-zero trailing bits; only the canonical encoding is valid
    if base64.b32encode(key).decode() != secret:
        raise InvalidSecret(secret)
    return key


# ==================== Storage ====================

@dataclass
class Account:
    name: str
    secret: str

    def code(self, now: float | None = None) -> tuple[str, int]:
        """Return (code, seconds remaining) at now, defaulting to the wall clock"""
        seconds = int(time.time() if now is None else now)
        return generate(decode_secret(self.secret), seconds), seconds_remaining(seconds)


def get_storage_path() -> Path:
    """Get the path to the storage file"""
    # TOTP_HOME replaces ~/.totp
    storage_dir = os.environ.get("TOTP_HOME")
    if storage_dir:
        return Path(storage_dir) / STORAGE_FILE_NAME
    return Path.home() / STORAGE_DIR_NAME / STORAGE_FILE_NAME


def ensure_storage(json_path: Path):
    """Create the storage directory, and the file holding an empty array, if absent"""
    json_path.parent.mkdir(parents=True, exist_ok=True)
    if not json_path.exists():
        debug_log(f"Creating empty store at {json_path}")
        json_path.write_text("[]", encoding="utf-8")
        os.chmod(json_path, 0o600)


def parse_accounts(data, json_path: Path) -> list[Account]:
    """Turn a deserialized document into accounts, rejecting anything malformed"""
    if not isinstance(data, list):
        raise CorruptStore(json_path, "expected an array of accounts")

    accounts = []
    for position, entry in enumerate(data):
        if (
            not isinstance(entry, dict)
            or not isinstance(entry.get("name"), str)
            or not isinstance(entry.get("secret"), str)
        ):
            raise CorruptStore(json_path, f"malformed entry at position {position}")
        accounts.append(Account(entry["name"], entry["secret"]))
    return accounts


class AccountStore:
    """Accounts kept sorted by name, written back in full after every change"""

    def __init__(self, json_path: Path):
        self.json_path = Path(json_path)
        self.accounts: list[Account] = []

    def path(self) -> Path:
        return self.json_path

    def load(self):
        """Load accounts from the backing file"""
        debug_log(f"Loading store from {self.json_path}")
        try:
            with open(self.json_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptStore(self.json_path, str(e)) from e

        accounts = sorted(parse_accounts(data, self.json_path), key=lambda a: a.name)
        for previous, current in zip(accounts, accounts[1:]):
            if previous.name == current.name:
                raise CorruptStore(self.json_path, f"duplicate account {current.name!r}")

        self.accounts = accounts
        debug_log(f"Loaded {len(self.accounts)} accounts")

    def save(self):
        """Rewrite the backing file with the full account list"""
        with open(self.json_path, "w", encoding="utf-8") as f:
            json.dump([asdict(a) for a in self.accounts], f, indent=2)

        # Set restrictive permissions
        os.chmod(self.json_path, 0o600)
        debug_log(f"Saved {len(self.accounts)} accounts to {self.json_path}")

    def _position(self, name: str) -> int:
        return bisect.bisect_left(self.accounts, name, key=lambda a: a.name)

    def find(self, name: str) -> int | None:
        """Return the index of the account called name, or None"""
        index = self._position(name)
        if index < len(self.accounts) and self.accounts[index].name == name:
            return index
        return None

    def index_of(self, name: str) -> int:
        index = self.find(name)
        if index is None:
            raise AccountNotFound(name)
        return index

    def add(self, name: str, secret: str) -> Account:
        """Validate and insert a new account at its sorted position"""
        if not name:
            raise InvalidName()
        decode_secret(secret)

        index = self._position(name)
        if index < len(self.accounts) and self.accounts[index].name == name:
            raise DuplicateAccount(name)

        account = Account(name, secret)
        self.accounts.insert(index, account)
        self.save()
        return account

    def remove(self, name: str, prompt=None, force: bool = False) -> Account | None:
        """Remove an account once confirmed; returns it, or None when aborted"""
        index = self.index_of(name)
        gate = Confirmation(
            f"Do you wish to delete this account: {name} (yes/[no]): ",
            prompt=prompt,
            force=force,
        )
        if not gate.ask():
            return None

        account = self.accounts.pop(index)
        self.save()
        return account

    def remove_all(self, prompt=None, force: bool = False) -> list[Account] | None:
        """Remove every account once confirmed; returns them, or None when aborted"""
        gate = Confirmation(
            "\nDo you wish to delete all of these accounts? "
            "This action is irreversible. (yes/[no]): ",
            prompt=prompt,
            force=force,
        )
        if not gate.ask():
            return None

        removed, self.accounts = self.accounts, []
        self.save()
        return removed

    def select(self, selection: str) -> Account:
        """Resolve a row ID typed by the user"""
        selection = selection.strip()
        if not selection.isdecimal():
            raise InvalidIndex(selection)
        index = int(selection)
        if index >= len(self.accounts):
            raise InvalidIndex(selection)
        return self.accounts[index]

    def get_code(self, name: str | None = None, prompt=None, now: float | None = None):
        """Resolve an account by name, or by row ID when name is omitted.

        Returns (account, code, seconds remaining).
        """
        if name is None:
            prompt = prompt or input
            try:
                selection = prompt("\nSelect account from ID: ")
            except EOFError:
                selection = ""
            account = self.select(selection)
        else:
            account = self.accounts[self.index_of(name)]

        code, remaining = account.code(now)
        return account, code, remaining

    def rows(self, include_secrets: bool = False) -> list[tuple]:
        """Row-indexed view of the accounts in sorted order"""
        if include_secrets:
            return [(i, a.name, a.secret) for i, a in enumerate(self.accounts)]
        return [(i, a.name) for i, a in enumerate(self.accounts)]


# ==================== Confirmation ====================

class ConfirmationState(enum.Enum):
    REQUESTED = "requested"
    AWAITING = "awaiting"
    COMMITTED = "committed"
    ABORTED = "aborted"


class Confirmation:
    """Blocking yes/no gate in front of a destructive operation.

    Only the exact answer "yes" (surrounding whitespace ignored) commits.
    With force=True the gate commits without asking.
    """

    def __init__(self, question: str, prompt=None, force: bool = False):
        self.question = question
        self.prompt = prompt
        self.force = force
        self.state = ConfirmationState.REQUESTED

    @property
    def committed(self) -> bool:
        return self.state is ConfirmationState.COMMITTED

    def ask(self) -> bool:
        if self.state is not ConfirmationState.REQUESTED:
            return self.committed

        if self.force:
            self.state = ConfirmationState.COMMITTED
            debug_log("Confirmation forced")
            return True

        self.state = ConfirmationState.AWAITING
        prompt = self.prompt or input
        try:
            answer = prompt(self.question)
        except EOFError:
            answer = ""

        if answer.strip() == "yes":
            self.state = ConfirmationState.COMMITTED
        else:
            self.state = ConfirmationState.ABORTED
        debug_log(f"Confirmation {self.state.value}")
        return self.committed


# ==================== Output ====================

BLUE = "rgb(87,170,247)"
GREEN = "rgb(13,188,121)"


def echo(message: str, style: str | None = None, err: bool = False):
    Console(stderr=err, highlight=False, soft_wrap=True).print(message, style=style)


def render_accounts(store: AccountStore, include_secrets: bool = False):
    rows = store.rows(include_secrets)

    table = Table(box=box.ROUNDED)
    table.add_column("ID", style=BLUE, justify="right", no_wrap=True,
                     min_width=len(str(max(len(rows) - 1, 0))))
    table.add_column("Name", style=GREEN, overflow="fold")
    if include_secrets:
        table.add_column("Secret", overflow="fold")

    for row in rows:
        table.add_row(str(row[0]), *(escape(value) for value in row[1:]))

    # Widen past the terminal rather than shortening names or secrets
    console = Console(highlight=False)
    natural = console.measure(table, options=console.options.update_width(10_000)).maximum
    if natural > console.width:
        console = Console(highlight=False, width=natural)
    console.print(table)


def copy_to_clipboard(code: str):
    try:
        pyperclip.copy(code)
    except pyperclip.PyperclipException as e:
        raise ClipboardUnavailable() from e


def provisioning_uri(account: Account) -> str:
    return f"otpauth://totp/{quote(account.name)}?secret={account.secret}"


# ==================== Commands ====================

def cmd_list(args, store: AccountStore):
    """List all stored accounts"""
    if not store.accounts:
        echo("No accounts stored")
        echo("Add one with: totp add <name> <secret>")
        return
    render_accounts(store, include_secrets=args.secret)


def cmd_path(args, store: AccountStore):
    """Print the JSON file path"""
    echo(escape(str(store.path())), style="bright_cyan")


def cmd_add(args, store: AccountStore):
    """Add a new account"""
    try:
        store.add(args.name, args.secret)
    except DuplicateAccount as e:
        echo(f"Account [{GREEN}]{escape(e.name)}[/] already existed, please remove it first.")
        return
    echo(f"Account added: [{GREEN}]{escape(args.name)}[/]")


def cmd_remove(args, store: AccountStore):
    """Remove an account"""
    account = store.remove(args.name, force=args.force)
    if account is None:
        echo("Operation aborted.", style="yellow")
        return
    echo(f"Removed account: [{GREEN}]{escape(account.name)}[/]")
    echo(f"Secret: [{GREEN}]{escape(account.secret)}[/]")


def cmd_clean(args, store: AccountStore):
    """Remove all accounts"""
    render_accounts(store, include_secrets=True)
    if store.remove_all(force=args.force) is None:
        echo("Aborted.", style="yellow")
        return
    echo("Removed all accounts.", style="bright_red")


def cmd_get(args, store: AccountStore):
    """Show the current code for an account"""
    if args.name is None:
        render_accounts(store)
    account, code, remaining = store.get_code(args.name)

    echo(f"[{GREEN}]{escape(account.name)}[/]: [bright_cyan]{code}[/]")
    echo(f"Expires in [{GREEN}]{remaining}[/] second{'s' if remaining > 1 else ''}.")

    if not args.no_copy:
        copy_to_clipboard(code)
        echo("(copied to clipboard)")


def cmd_export(args, store: AccountStore):
    """Export secret for an account (for backup)"""
    account = store.accounts[store.index_of(args.name)]
    echo(f"Secret: {escape(account.secret)}")
    echo(f"URI: {escape(provisioning_uri(account))}")


# ==================== Main ====================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="totp",
        description="TOTP CLI - a local command-line TOTP account manager",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging with timing")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    list_parser = subparsers.add_parser("list", help="List all saved accounts")
    list_parser.add_argument("--secret", action="store_true", help="Include secrets")

    subparsers.add_parser("path", help="Print the JSON file path")

    add_parser = subparsers.add_parser("add", help="Add a new account (ignored if it already exists)")
    add_parser.add_argument("name", help="The account's name")
    add_parser.add_argument("secret", help="The account's base32 secret")

    remove_parser = subparsers.add_parser("remove", help="Remove an account (requires confirmation)")
    remove_parser.add_argument("name", help="The account's name")
    remove_parser.add_argument("--force", "-f", action="store_true", help="Skip confirmation")

    clean_parser = subparsers.add_parser("clean", help="Remove all accounts (requires confirmation)")
    clean_parser.add_argument("--force", "-f", action="store_true", help="Skip confirmation")

    get_parser = subparsers.add_parser("get", help="Show the current code and copy it to the clipboard")
    get_parser.add_argument("name", nargs="?", help="The account's name (omit to pick from a list)")
    get_parser.add_argument("--no-copy", "-n", action="store_true", help="Disable copying to clipboard")

    export_parser = subparsers.add_parser("export", help="Export secret (for backup)")
    export_parser.add_argument("name", help="The account's name")

    return parser


COMMANDS = {
    "list": cmd_list,
    "path": cmd_path,
    "add": cmd_add,
    "remove": cmd_remove,
    "clean": cmd_clean,
    "get": cmd_get,
    "export": cmd_export,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    debug = args.debug or os.environ.get("OTP_DEBUG") == "1"
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if debug else logging.WARNING,
        format="[%(relativeCreated)7.1fms] %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        json_path = get_storage_path()
        ensure_storage(json_path)
        store = AccountStore(json_path)
        store.load()
        COMMANDS[args.command](args, store)
    except OtpError as e:
        echo(f"Error: {escape(str(e))}", style="bright_red", err=True)
        sys.exit(e.exit_code)


if __name__ == "__main__":
    main()
