import typer, getpass, pathlib, json
from .crypto import format_recovery_key, zero_bytes
from .doctor import Severity, VaultDoctor
from .errors import VaultError
from .logging import get_logger
from .vault import Vault

app = typer.Typer(no_args_is_help=True, help="Keep a directory's files encrypted at rest.")
LOG = get_logger(False)

VAULT_OPTION = typer.Option(".", "--vault", help="Vault root directory")
RECOVERY_OPTION = typer.Option(None, "--recovery-key", help="Unlock with the recovery key instead of the password")


@app.callback()
def main(debug: bool = typer.Option(False, "--debug", help="Log to stderr instead of the log file")):
    """vaultix - secure encrypted folder management."""
    global LOG
    LOG = get_logger(debug)


def ask_pw(prompt="Vault password: ") -> str:
    """Prompt the user for a password using getpass."""
    return getpass.getpass(prompt)

def ask_new_password() -> str:
    """Prompt twice for a new password and ensure the entries match."""
    first = ask_pw("Enter password: ")
    if not first:
        typer.echo("✖ Password cannot be empty.")
        raise typer.Exit(1)
    second = ask_pw("Confirm password: ")
    if first != second:
        typer.echo("✖ Passwords did not match. Aborting.")
        raise typer.Exit(1)
    return first

def _fail(event: str, exc: Exception, **details):
    LOG.error(event, error=str(exc), error_type=type(exc).__name__, **details)
    typer.echo(f"✖ {exc}", err=True)
    raise typer.Exit(1)

def _open_vault(vault: str) -> Vault:
    v = Vault(pathlib.Path(vault))
    if not v.exists():
        typer.echo(f"✖ Vault not found at: {v.root}", err=True)
        raise typer.Exit(1)
    return v

def _unlocked(v: Vault, recovery_key: str | None):
    if recovery_key is not None:
        return v.unlocked(recovery_key=recovery_key)
    return v.unlocked(password=ask_pw())


@app.command()
def init(path: str = typer.Argument(".", help="Directory to turn into a vault")):
    """Initialize a vault and encrypt every file already in the directory."""
    v = Vault(pathlib.Path(path))
    if v.exists():
        typer.echo(f"✖ Vault already exists at: {v.root}", err=True)
        raise typer.Exit(1)
    pw = ask_new_password()
    typer.echo("Initializing vault and encrypting existing files...")
    try:
        recovery_key = v.initialize(pw)
    except VaultError as exc:
        _fail("init_failed", exc, vault=str(v.root))
    try:
        typer.echo(f"✓ Vault initialized at: {v.root}")
        typer.echo("✓ Original plaintext files have been securely deleted")
        typer.echo("")
        typer.echo("RECOVERY KEY (shown only once, store it offline):")
        typer.echo(f"  {format_recovery_key(recovery_key)}")
    finally:
        zero_bytes(recovery_key)


@app.command()
def add(
    paths: list[str] = typer.Argument(..., metavar="FILE", help="One or more files to add"),
    vault: str = VAULT_OPTION,
    recovery_key: str = RECOVERY_OPTION,
):
    """Encrypt files into the vault; the plaintext originals are securely deleted."""
    v = _open_vault(vault)
    errors = 0
    try:
        with _unlocked(v, recovery_key) as master:
            for raw in paths:
                try:
                    record = v.add_file(master, pathlib.Path(raw))
                    typer.echo(f"✔ Added {record.original_name}")
                except VaultError as exc:
                    LOG.error("add_failed", vault=str(v.root), path=raw, error=str(exc))
                    typer.echo(f"✖ Add failed for {raw}: {exc}", err=True)
                    errors += 1
    except VaultError as exc:
        _fail("unlock_failed", exc, vault=str(v.root))
    if errors:
        raise typer.Exit(1)


@app.command("list")
def list_cmd(
    vault: str = VAULT_OPTION,
    recovery_key: str = RECOVERY_OPTION,
    as_json: bool = typer.Option(False, "--json", help="Print records as JSON"),
):
    """List files stored in the vault."""
    v = _open_vault(vault)
    try:
        with _unlocked(v, recovery_key) as master:
            records = v.list_files(master)
    except VaultError as exc:
        _fail("list_failed", exc, vault=str(v.root))
    if as_json:
        typer.echo(json.dumps([
            {"name": r.original_name, "size": r.size, "modified_time": r.modified_time.isoformat()}
            for r in records
        ], indent=2))
        return
    if not records:
        typer.echo("Vault is empty")
        return
    typer.echo(f"Files in vault ({len(records)}):")
    for r in records:
        typer.echo(f"  {r.original_name} ({r.size} bytes, modified: {r.modified_time.astimezone():%Y-%m-%d %H:%M:%S})")


@app.command()
def extract(
    name: str = typer.Argument(None, help="File name or part of it; omit to extract everything"),
    vault: str = VAULT_OPTION,
    out: str = typer.Option(None, "--out", help="Destination directory (default: vault root)"),
    recovery_key: str = RECOVERY_OPTION,
):
    """Decrypt file(s) out of the vault, keeping them stored."""
    v = _open_vault(vault)
    try:
        with _unlocked(v, recovery_key) as master:
            if name is None:
                count = v.extract_all(master, out)
                typer.echo(f"✓ Extracted {count} file(s)")
            else:
                resolved = v.extract_file(master, name, out)
                typer.echo(f"✓ File extracted: {resolved}")
    except VaultError as exc:
        _fail("extract_failed", exc, vault=str(v.root), name=name)


@app.command()
def drop(
    name: str = typer.Argument(None, help="File name or part of it; omit to drop everything"),
    vault: str = VAULT_OPTION,
    out: str = typer.Option(None, "--out", help="Destination directory (default: vault root)"),
    recovery_key: str = RECOVERY_OPTION,
):
    """Extract file(s) and remove them from the vault."""
    v = _open_vault(vault)
    try:
        with _unlocked(v, recovery_key) as master:
            if name is None:
                count = v.drop_all(master, out)
                typer.echo(f"✓ Dropped {count} file(s) from vault")
            else:
                resolved = v.drop_file(master, name, out)
                typer.echo(f"✓ Dropped: {resolved} (extracted and removed from vault)")
    except VaultError as exc:
        _fail("drop_failed", exc, vault=str(v.root), name=name)


@app.command()
def remove(
    name: str = typer.Argument(..., help="File name or part of it"),
    vault: str = VAULT_OPTION,
    recovery_key: str = RECOVERY_OPTION,
):
    """Remove a file from the vault without extracting it."""
    v = _open_vault(vault)
    try:
        with _unlocked(v, recovery_key) as master:
            resolved = v.remove_file(master, name)
    except VaultError as exc:
        _fail("remove_failed", exc, vault=str(v.root), name=name)
    typer.echo(f"✔ File removed: {resolved}")


@app.command()
def clear(
    vault: str = VAULT_OPTION,
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt"),
    recovery_key: str = RECOVERY_OPTION,
):
    """Delete ALL files from the vault without extracting them."""
    v = _open_vault(vault)
    if not yes:
        typer.echo("⚠ WARNING: This will DELETE all files from the vault WITHOUT extracting them.")
        if not typer.confirm("Proceed?", default=False):
            typer.echo("↷ Aborted.")
            raise typer.Exit(0)
    try:
        with _unlocked(v, recovery_key) as master:
            v.clear_vault(master)
    except VaultError as exc:
        _fail("clear_failed", exc, vault=str(v.root))
    typer.echo("✓ Vault cleared (all files removed)")


@app.command()
def prune(vault: str = VAULT_OPTION, recovery_key: str = RECOVERY_OPTION):
    """Shred encrypted objects that no vault entry refers to."""
    v = _open_vault(vault)
    try:
        with _unlocked(v, recovery_key) as master:
            pruned = v.prune_orphans(master)
    except VaultError as exc:
        _fail("prune_failed", exc, vault=str(v.root))
    typer.echo(f"✓ Removed {len(pruned)} orphaned object(s)")


@app.command()
def check(
    vault: str = VAULT_OPTION,
    skip_crypto: bool = typer.Option(False, "--skip-crypto", help="Only run checks that need no password"),
    recovery_key: str = RECOVERY_OPTION,
    as_json: bool = typer.Option(False, "--json", help="Output results as JSON"),
):
    """Audit vault permissions, file sizes and index/object consistency."""
    v = _open_vault(vault)
    try:
        if skip_crypto:
            results = VaultDoctor(v.root).run()
        else:
            with _unlocked(v, recovery_key) as master:
                results = VaultDoctor(v.root, master).run()
    except VaultError as exc:
        _fail("check_failed", exc, vault=str(v.root))

    if as_json:
        typer.echo(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        for r in results:
            prefix = {
                Severity.OK: "[OK]     ",
                Severity.WARNING: "[WARN]   ",
                Severity.ERROR: "[ERROR]  ",
            }[r.severity]
            loc = f" ({r.path})" if r.path else ""
            typer.echo(f"{prefix}{r.id}: {r.message}{loc}")
            if r.details:
                typer.echo(f"          details: {r.details}")

    if any(r.severity == Severity.ERROR for r in results):
        raise typer.Exit(1)
