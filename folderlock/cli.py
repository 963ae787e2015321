import dataclasses
import sys
from os.path import basename

import click
from tqdm import tqdm

from . import __version__
from .config  import get_config
from .errors  import LockerError
from .vault   import (
    Phase, ProgressEvent,
    inspect_vault, is_locked, lock_folder, resolve_paths, unlock_folder,
)
from .display import (
    print_banner,
    print_success, print_error, print_info,
    print_warning, print_key_value, print_section,
    setup_logging, fmt_size,
)

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"], "max_content_width": 100}

_PHASE_LABELS = {
    Phase.SCANNING:   "Scanning folder…",
    Phase.ARCHIVING:  "Archiving",
    Phase.ENCRYPTING: "Deriving key and encrypting…",
    Phase.WRITING:    "Writing vault…",
    Phase.HIDING:     "Hiding vault…",
    Phase.FINALIZING: "Finalizing…",
    Phase.VERIFYING:  "Verifying password…",
    Phase.DECRYPTING: "Decrypting…",
    Phase.RESTORING:  "Restoring",
    Phase.CLEANUP:    "Removing vault…",
}

_BAR_PHASES = (Phase.ARCHIVING, Phase.RESTORING)


class _ProgressRenderer:
    """Renders vault phase events: a line per phase, a byte bar while copying."""

    def __init__(self):
        self.phase = None
        self.bar   = None

    def __call__(self, event: ProgressEvent):
        if event.phase != self.phase:
            self.close()
            self.phase = event.phase
            label = _PHASE_LABELS.get(event.phase)
            if label is None:
                return
            if event.phase in _BAR_PHASES and event.bytes_total:
                self.bar = tqdm(
                    total=event.bytes_total,
                    unit='B',
                    unit_scale=True,
                    desc=f"  {label}",
                    dynamic_ncols=True,
                    leave=False,
                )
            else:
                print_info(label if label.endswith('…') else f"{label}…")
            return
        if self.bar is not None and event.bytes_done >= self.bar.n:
            self.bar.update(event.bytes_done - self.bar.n)
            if event.path:
                self.bar.set_postfix(file=basename(event.path))

    def close(self):
        if self.bar is not None:
            self.bar.close()
            self.bar = None


def _ask_password(confirm: bool) -> str:
    while True:
        try:
            password = click.prompt(
                "  Password", hide_input=True,
                confirmation_prompt="  Confirm password" if confirm else False,
                default="", show_default=False,
            )
        except click.Abort:
            print()
            print_error("Interrupted.")
            sys.exit(1)
        if password:
            return password
        print_warning("Password cannot be empty, try again.")


def _fail(err: LockerError):
    print_error(f"{err.kind}: {err}")
    sys.exit(err.exit_code)


def _load_config(**overrides):
    try:
        config = get_config()
    except ValueError as e:
        print_error(f"Invalid configuration: {e}")
        sys.exit(1)
    if overrides:
        config = dataclasses.replace(config, **overrides)
    return config


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(__version__, prog_name="folderlock")
@click.option("--verbose", "-v", is_flag=True, help="Log every state transition")
def cli(verbose):
    """folderlock — lock a folder into an encrypted, hidden vault.

    \b
    Commands:
      folderlock lock   ./reports        Encrypt ./reports into ./reports.vault
      folderlock unlock ./reports        Restore ./reports from its vault
      folderlock status ./reports        Show whether ./reports is locked
      folderlock info   ./reports.vault  Show vault header details
    """
    setup_logging(verbose)


@cli.command("lock")
@click.argument("folder")
@click.option("--password", "-p", default=None, help="Vault password (prompted if omitted)")
@click.option("--no-hide", is_flag=True, help="Leave the vault file visible")
def cmd_lock(folder, password, no_hide):
    """Encrypt FOLDER into a vault file and remove the original.

    \b
    Examples:
      folderlock lock ./reports
      folderlock lock ./reports -p s3cr3t --no-hide
    """
    print_banner()
    config = _load_config(hide=False) if no_hide else _load_config()
    folder_path, vault_path = resolve_paths(folder, config)
    if is_locked(folder_path, config):
        print_info(f"A vault already exists at {vault_path}; resuming.")
    if not password:
        password = _ask_password(confirm=True)

    renderer = _ProgressRenderer()
    try:
        result = lock_folder(folder_path, password, config=config, progress=renderer)
    except LockerError as e:
        renderer.close()
        _fail(e)
    renderer.close()

    print()
    for warning in result.warnings:
        print_warning(warning)
    for leftover in result.leftovers:
        print_warning(f"Not removed: {leftover}")
    verb = "Finished locking" if result.resumed else "Locked"
    print_success(
        f"{verb} {result.folder} "
        f"[{result.entries} item(s), {fmt_size(result.bytes)}] "
        f"in {result.elapsed:.1f}s"
    )
    click.echo(f"  Vault: {result.vault_path}")
    click.echo()


@cli.command("unlock")
@click.argument("path")
@click.option("--password", "-p", default=None, help="Vault password (prompted if omitted)")
def cmd_unlock(path, password):
    """Restore a locked folder from its vault file.

    PATH may be the folder path or the vault file itself.

    \b
    Examples:
      folderlock unlock ./reports
      folderlock unlock ./reports.vault
    """
    print_banner()
    config = _load_config()
    if not password:
        password = _ask_password(confirm=False)

    renderer = _ProgressRenderer()
    try:
        result = unlock_folder(path, password, config=config, progress=renderer)
    except LockerError as e:
        renderer.close()
        _fail(e)
    renderer.close()

    print()
    for warning in result.warnings:
        print_warning(warning)
    for leftover in result.leftovers:
        print_warning(f"Not removed: {leftover}")
    print_success(
        f"Unlocked {result.folder} "
        f"[{result.entries} item(s), {fmt_size(result.bytes)}] "
        f"in {result.elapsed:.1f}s"
    )
    click.echo()


@cli.command("status")
@click.argument("folder")
def cmd_status(folder):
    """Show whether FOLDER is currently locked."""
    config = _load_config()
    folder_path, vault_path = resolve_paths(folder, config)
    if is_locked(folder_path, config):
        click.echo(f"locked    {vault_path}")
    else:
        click.echo(f"unlocked  {folder_path}")


@cli.command("info")
@click.argument("path")
def cmd_info(path):
    """Show the header of a vault file (no password needed)."""
    config = _load_config()
    try:
        info = inspect_vault(path, config)
    except LockerError as e:
        _fail(e)

    print_section("Vault")
    print_key_value("Path:          ", info.path)
    print_key_value("Format:        ", f"v{info.format_version}")
    print_key_value("Key derivation:", f"{info.kdf} (N={info.scrypt_n}, r={info.scrypt_r}, p={info.scrypt_p})")
    print_key_value("Salt:          ", f"{info.salt_size} bytes")
    print_key_value("Cipher:        ", "AES-256-GCM")
    print_key_value("Payload:       ", fmt_size(info.ciphertext_size))
    print_key_value("File size:     ", fmt_size(info.file_size))
    click.echo()


def main():
    cli()


if __name__ == "__main__":
    main()
