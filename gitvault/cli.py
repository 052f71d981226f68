"""
Command-line interface for git-vault.

This module wires the orchestrator to the user-facing CLI commands:
- init
- add
- remove
- list
- encrypt
- decrypt
- hooks
- doctor
- version
- help
"""

from __future__ import annotations

import sys
import argparse
import getpass
import logging
from pathlib import Path
from typing import List, Optional

from .config import (
    CIPHERS,
    DEFAULT_CIPHER,
    DEFAULT_LFS_THRESHOLD_MB,
    DEFAULT_STORAGE_MODE,
    STORAGE_MODES,
    TOOL_NAME,
    TOOL_VERSION,
    password_from_env,
)
from .errors import EmptyPassphrase, VaultError
from .git import GitRepo
from .hooks import HookOutcome, raise_for_divergent
from .vault import STATUS_OK, Vault, BulkResult, initialize_vault, open_vault


# ---------------------------------------------------------------------------
# Color output helpers
# ---------------------------------------------------------------------------


class Colors:
    """ANSI color codes for terminal output."""
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


def colored(text: str, color: str) -> str:
    """Return colored text for terminal output."""
    return f"{color}{text}{Colors.RESET}"


def print_error(msg: str) -> None:
    """Print error message to stderr."""
    print(colored(f"✗ Error: {msg}", Colors.RED), file=sys.stderr)


def print_success(msg: str) -> None:
    """Print success message."""
    print(colored(f"✓ {msg}", Colors.GREEN))


def print_warning(msg: str) -> None:
    """Print warning message to stderr."""
    print(colored(f"⚠ Warning: {msg}", Colors.YELLOW), file=sys.stderr)


def print_info(msg: str) -> None:
    """Print info message."""
    print(colored(f"ℹ {msg}", Colors.CYAN))


def configure_logging(verbose: bool, quiet: bool) -> None:
    if verbose:
        level, fmt = logging.DEBUG, "%(levelname)s %(name)s: %(message)s"
    elif quiet:
        level, fmt = logging.WARNING, "%(levelname)s: %(message)s"
    else:
        level, fmt = logging.INFO, "%(message)s"
    logging.basicConfig(level=level, format=fmt, force=True)


# ---------------------------------------------------------------------------
# CLI context
# ---------------------------------------------------------------------------


class CLIContext:
    """Shared context for CLI commands."""

    def __init__(
        self,
        workspace: Optional[str],
        password: Optional[str],
        write: bool,
        verbose: bool,
        quiet: bool,
        yes: bool,
    ):
        self.workspace = Path(workspace) if workspace else Path.cwd()
        self.password = password or password_from_env()
        self.write = write
        self.verbose = verbose
        self.quiet = quiet
        self.yes = yes

        # Lazy-loaded
        self._vault: Optional[Vault] = None

    @property
    def interactive(self) -> bool:
        return sys.stdin is not None and sys.stdin.isatty()

    def vault(self, auto_init: bool = False) -> Vault:
        """Open the repository's vault lazily."""
        if self._vault is None:
            self._vault = open_vault(
                self.workspace, auto_init=auto_init, interactive=self.interactive
            )
        return self._vault

    def ask_password(self, subject: str, confirm: bool = False) -> tuple:
        """
        Return (passphrase, confirmation) for ``subject``.

        A passphrase given via --password or the environment is taken
        as already confirmed.
        """

        if self.password:
            return self.password, None
        if not self.interactive:
            raise EmptyPassphrase(
                f"No password for '{subject}' (use --password or $GV_PASSWORD)"
            )
        passphrase = getpass.getpass(f"Enter password for '{subject}': ")
        if not confirm:
            return passphrase, None
        return passphrase, getpass.getpass("Confirm password: ")

    def confirm(self, question: str) -> bool:
        if self.yes or not self.interactive:
            return True
        response = input(colored(f"{question} [y/N] ", Colors.YELLOW))
        return response.lower() in ["y", "yes"]

    def log(self, msg: str) -> None:
        """Log message if not quiet."""
        if not self.quiet:
            print(msg)

    def success(self, msg: str) -> None:
        if not self.quiet:
            print_success(msg)

    def log_verbose(self, msg: str) -> None:
        """Log message if verbose."""
        if self.verbose:
            print(colored(f"  → {msg}", Colors.BLUE))


# ---------------------------------------------------------------------------
# Command implementations
# ---------------------------------------------------------------------------


def cmd_init(ctx: CLIContext, args: argparse.Namespace) -> int:
    """
    Initialize the vault in the current repository.
    """
    git = GitRepo.discover(ctx.workspace)
    vault = initialize_vault(
        git,
        storage_mode=args.storage,
        lfs_threshold_mb=args.lfs_threshold,
        cipher=args.cipher,
        onepassword_vault=args.vault,
        force=args.force,
        install_hooks=not args.no_hooks,
        interactive=ctx.interactive,
    )
    ctx._vault = vault

    ctx.success(f"Vault initialized in {git.root}")
    ctx.log(f"  Storage:       {vault.config.storage_mode}")
    ctx.log(f"  Cipher:        {vault.config.cipher}")
    ctx.log(f"  LFS threshold: {vault.config.lfs_threshold_mb}MB")
    if vault.config.managed_paths:
        ctx.log(f"  Managed paths: {len(vault.config.managed_paths)} (kept)")
    return 0


def cmd_add(ctx: CLIContext, args: argparse.Namespace) -> int:
    """
    Start managing a file or directory.
    """
    vault = ctx.vault(auto_init=True)
    relative = vault.resolve(args.path, base=ctx.workspace)

    passphrase, confirmation = ctx.ask_password(relative, confirm=True)
    result = vault.add(args.path, passphrase, confirmation, base=ctx.workspace)

    ctx.success(f"Added '{result.entry.path}' to vault (hash: {result.entry.hash})")
    ctx.log_verbose(f"Archive: {vault.layout.relative(result.archive)}")
    if result.resumed:
        print_info("Reused the password record left by an interrupted add")
    if result.tiering.warning:
        print_warning(result.tiering.warning)
    elif result.tiering.registered:
        print_info(f"Archive ({result.tiering.size_mb:.2f}MB) is tracked with Git LFS")
    if not result.staged:
        print_warning("Changes could not be staged; run 'git add' manually")
    return 0


def cmd_remove(ctx: CLIContext, args: argparse.Namespace) -> int:
    """
    Stop managing a file or directory.
    """
    vault = ctx.vault()
    if not ctx.confirm(f"Remove '{args.path}' from the vault?"):
        ctx.log("Aborted")
        return 0

    result = vault.remove(
        args.path,
        passphrase=ctx.password,
        prune_ignore=args.prune_ignore,
        base=ctx.workspace,
    )

    ctx.success(f"Removed '{result.entry.path}' from vault")
    if result.removed_record is not None:
        ctx.log_verbose(f"Password file kept as {result.removed_record.name}")
    ctx.log(f"  The plaintext of '{result.entry.path}' is still in your working tree.")
    if not args.prune_ignore:
        ctx.log("  It is still listed in .gitignore (use --prune-ignore to drop it).")
    return 0


def cmd_list(ctx: CLIContext, args: argparse.Namespace) -> int:
    """
    List managed paths and their state.
    """
    vault = ctx.vault()
    entries = vault.list_entries()

    if not entries:
        ctx.log(colored("No paths are managed yet", Colors.YELLOW))
        return 0

    print(colored("Managed paths", Colors.BOLD))
    print("")
    for status in entries:
        mark = colored("✓", Colors.GREEN) if status.status == STATUS_OK else colored("✗", Colors.RED)
        size = f"{status.size_mb:.2f}MB" if status.size_mb else "-"
        print(f"  {mark} {status.hash}  {status.path}")
        print(f"      archive: {status.archive.name} ({size})  secret: {status.backend or '-'}  status: {status.status}")
    print("")
    return 0


def _report_bulk(ctx: CLIContext, verb: str, result: BulkResult) -> None:
    for path in result.processed:
        ctx.log_verbose(f"{verb}: {path}")
    for path in result.unchanged:
        ctx.log_verbose(f"Unchanged: {path}")
    for message in result.warnings:
        print_warning(message)
    for path, message in result.failed:
        print_error(f"{path}: {message}")

    summary = f"{verb} {len(result.processed)} path(s)"
    if result.unchanged:
        summary += f", {len(result.unchanged)} unchanged"
    if result.skipped:
        summary += f", {len(result.skipped)} skipped"
    if result.failed:
        print_warning(f"{summary}, {len(result.failed)} failed")
    else:
        ctx.success(summary)


def cmd_encrypt(ctx: CLIContext, args: argparse.Namespace) -> int:
    """
    Encrypt managed paths whose plaintext changed.
    """
    if ctx.write and not ctx.password:
        print_warning("--write has no effect without --password")

    vault = ctx.vault()
    result = vault.encrypt_all(
        args.path,
        passphrase=ctx.password,
        write=ctx.write,
        force=args.force,
        stage=not args.no_stage,
        base=ctx.workspace,
    )
    _report_bulk(ctx, "Encrypted", result)
    return 0 if result.ok else 1


def cmd_decrypt(ctx: CLIContext, args: argparse.Namespace) -> int:
    """
    Restore managed paths from their archives.

    Always exits 0; failed entries are reported as warnings.
    """
    if ctx.write and not ctx.password:
        print_warning("--write has no effect without --password")

    vault = ctx.vault()
    result = vault.decrypt_all(
        args.path,
        passphrase=ctx.password,
        write=ctx.write,
        base=ctx.workspace,
    )
    _report_bulk(ctx, "Decrypted", result)
    return 0


def cmd_hooks(ctx: CLIContext, args: argparse.Namespace) -> int:
    """
    Install or check the git hooks.
    """
    vault = ctx.vault()

    if args.check:
        results = vault.check_hooks()
        healthy = True
        for r in results:
            if r.outcome is HookOutcome.VERIFIED:
                ctx.log(f"  {colored('✓', Colors.GREEN)} {r.name}")
                continue
            healthy = False
            if r.outcome is HookOutcome.DIVERGENT:
                print_warning(f"{r.name} hook was modified: found '{r.recorded}', expected '{r.expected}'")
            else:
                print_warning(f"{r.name} hook is not installed ({r.path})")
        return 0 if healthy else 1

    results = vault.install_hooks()
    for r in results:
        if r.outcome is HookOutcome.DIVERGENT:
            print_warning(f"{r.name} hook was modified by hand, leaving it untouched: {r.path}")
        elif r.outcome is HookOutcome.APPENDED:
            ctx.log(f"  {colored('+', Colors.CYAN)} {r.name} (existing hook backed up to {r.backup.name})")
        else:
            ctx.log(f"  {colored('✓', Colors.GREEN)} {r.name} ({r.outcome.value})")
    raise_for_divergent(results)
    ctx.success(f"Hooks installed in {vault.git.hooks_dir()}")
    return 0


def cmd_doctor(ctx: CLIContext, args: argparse.Namespace) -> int:
    """
    Report vault inconsistencies, optionally cleaning orphaned records.
    """
    vault = ctx.vault()
    problems = [s for s in vault.list_entries() if s.status != STATUS_OK]
    orphans = vault.find_orphans()

    ctx.log(colored("Vault check", Colors.BOLD))
    ctx.log("")
    for status in problems:
        print_warning(f"{status.path} ({status.hash}): {status.status}")

    if orphans and args.clean:
        cleaned = vault.clean_orphans()
        for orphan in cleaned:
            ctx.log(f"  Cleaned orphaned record {orphan.path.name}")
        orphans = vault.find_orphans()

    for orphan in orphans:
        print_warning(f"Orphaned {orphan.kind} record without a managed path: {orphan.path.name}")
    if orphans and not args.clean:
        ctx.log("  Run 'gv doctor --clean' to soft-delete orphaned records.")

    if problems or orphans:
        return 1
    ctx.success("No problems found")
    return 0


def cmd_version(ctx: Optional[CLIContext], args: argparse.Namespace) -> int:
    print(f"{TOOL_NAME} {TOOL_VERSION}")
    return 0


def cmd_help(ctx: Optional[CLIContext], args: argparse.Namespace) -> int:
    """
    Show help message.
    """
    help_text = f"""
{colored('gv', Colors.BOLD)} - keep selected paths of a Git repository encrypted at rest

{colored('USAGE:', Colors.CYAN)}
  gv [options] <command> [command options]

{colored('DESCRIPTION:', Colors.CYAN)}
  git-vault stores an encrypted archive of each managed file or directory
  under .vault/storage, while the plaintext stays (gitignored) in your
  working tree. Git hooks re-encrypt on commit and decrypt on checkout.

{colored('COMMANDS:', Colors.CYAN)}
  init        Initialize the vault and install the git hooks
  add         Start managing a file or directory
  remove      Stop managing a file or directory
  list        List managed paths and their state
  encrypt     Encrypt managed paths whose content changed
  decrypt     Restore managed paths from their archives
  hooks       Install the git hooks (--check to verify them)
  doctor      Report inconsistencies (--clean removes orphaned records)
  version     Show version
  help        Show this help message

{colored('GLOBAL OPTIONS:', Colors.CYAN)}
  -w, --workspace PATH      Repository to operate on (default: current dir)
  -p, --password PASS       Password to use instead of the stored one
      --write               Store --password as the path's password record
                            (encrypt/decrypt, e.g. on a fresh clone)
  -y, --yes                 Do not ask for confirmation
  -v, --verbose             Enable verbose output
  -q, --quiet               Suppress non-error output
  -h, --help                Show this help message and exit

{colored('ENVIRONMENT:', Colors.CYAN)}
  GV_PASSWORD               Password for non-interactive use
  GV_GPG                    gpg executable (default: gpg)
  GV_OP                     1Password CLI executable (default: op)

{colored('EXAMPLES:', Colors.CYAN)}
  gv init --storage 1password --vault Work
  gv add secrets/key.txt
  gv encrypt
  gv decrypt --password hunter2 --write
  gv remove secrets/key.txt --prune-ignore

{colored('VERSION:', Colors.CYAN)}
  {TOOL_VERSION}
"""
    print(help_text)
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _global_options() -> argparse.ArgumentParser:
    """Options accepted both before and after the command name."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-w", "--workspace", default=argparse.SUPPRESS, help="Repository to operate on")
    common.add_argument("-p", "--password", default=argparse.SUPPRESS, help="Password to use")
    common.add_argument("--write", action="store_true", default=argparse.SUPPRESS, help="Store --password as the record")
    common.add_argument("-y", "--yes", action="store_true", default=argparse.SUPPRESS, help="Do not ask for confirmation")
    common.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Enable verbose output")
    common.add_argument("-q", "--quiet", action="store_true", default=argparse.SUPPRESS, help="Suppress non-error output")
    return common


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    common = _global_options()
    parser = argparse.ArgumentParser(
        prog=TOOL_NAME,
        description="Keep selected paths of a Git repository encrypted at rest",
        add_help=False,
        parents=[common],
    )
    parser.set_defaults(
        workspace=None, password=None, write=False, yes=False, verbose=False, quiet=False
    )
    parser.add_argument(
        "-h", "--help",
        action="store_true",
        help="Show help message",
    )

    # Subcommands
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # init command
    init_parser = subparsers.add_parser("init", parents=[common], help="Initialize the vault")
    init_parser.add_argument("--storage", choices=STORAGE_MODES, default=DEFAULT_STORAGE_MODE, help="Where passwords are kept")
    init_parser.add_argument("--vault", help="1Password vault name")
    init_parser.add_argument("--lfs-threshold", type=float, default=DEFAULT_LFS_THRESHOLD_MB, help="Archive size (MB) routed to Git LFS")
    init_parser.add_argument("--cipher", choices=CIPHERS, default=DEFAULT_CIPHER, help="Archive cipher")
    init_parser.add_argument("--force", action="store_true", help="Reconfigure an initialized vault")
    init_parser.add_argument("--no-hooks", action="store_true", help="Do not install git hooks")

    # add command
    add_parser = subparsers.add_parser("add", parents=[common], help="Start managing a path")
    add_parser.add_argument("path", help="File or directory to manage")

    # remove command
    remove_parser = subparsers.add_parser("remove", parents=[common], help="Stop managing a path")
    remove_parser.add_argument("path", help="Managed file or directory")
    remove_parser.add_argument("--prune-ignore", action="store_true", help="Drop the path from .gitignore")

    # list command
    subparsers.add_parser("list", parents=[common], help="List managed paths")

    # encrypt command
    encrypt_parser = subparsers.add_parser("encrypt", parents=[common], help="Encrypt changed paths")
    encrypt_parser.add_argument("path", nargs="?", help="Only this managed path")
    encrypt_parser.add_argument("--force", action="store_true", help="Re-encrypt even if unchanged")
    encrypt_parser.add_argument("--no-stage", action="store_true", help="Do not stage archives")

    # decrypt command
    decrypt_parser = subparsers.add_parser("decrypt", parents=[common], help="Restore paths from archives")
    decrypt_parser.add_argument("path", nargs="?", help="Only this managed path")

    # hooks command
    hooks_parser = subparsers.add_parser("hooks", parents=[common], help="Install or check git hooks")
    hooks_parser.add_argument("--check", action="store_true", help="Only verify installed hooks")

    # doctor command
    doctor_parser = subparsers.add_parser("doctor", parents=[common], help="Report inconsistencies")
    doctor_parser.add_argument("--clean", action="store_true", help="Soft-delete orphaned records")

    subparsers.add_parser("version", help="Show version")
    subparsers.add_parser("help", help="Show help message")

    return parser


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Show help if requested or no command
    if args.help or not args.command:
        return cmd_help(None, args)

    configure_logging(args.verbose, args.quiet)

    # Build context
    ctx = CLIContext(
        workspace=args.workspace,
        password=args.password,
        write=args.write,
        verbose=args.verbose,
        quiet=args.quiet,
        yes=args.yes,
    )

    # Dispatch to command
    commands = {
        "init": cmd_init,
        "add": cmd_add,
        "remove": cmd_remove,
        "list": cmd_list,
        "encrypt": cmd_encrypt,
        "decrypt": cmd_decrypt,
        "hooks": cmd_hooks,
        "doctor": cmd_doctor,
        "version": cmd_version,
        "help": cmd_help,
    }

    cmd_func = commands.get(args.command)
    if not cmd_func:
        print_error(f"Unknown command: {args.command}")
        return 1

    try:
        return cmd_func(ctx, args)
    except KeyboardInterrupt:
        print_error("Interrupted")
        return 130
    except VaultError as e:
        print_error(str(e))
        return 1
    except Exception as e:
        print_error(f"Unexpected error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
