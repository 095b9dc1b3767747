"""
Command-line entry point for SealVault.

Every subcommand runs at most one vault session and exits with the code of
the error class that stopped it (0 on success).
"""

import sys
import argparse
import logging
from pathlib import Path
from typing import List, Optional

from . import config
from .config import VaultConfig
from .crypto import EncryptionCapability, GpgCapability, KeyringCapability
from .errors import UserInputError, VaultError
from .password import entropy, generate, strength_label
from .secure_buffer import SecureBuffer, wipe_all
from .vault_manager import VaultManager

logger = logging.getLogger(__name__)


def _build_capability(args, vault_config: VaultConfig) -> EncryptionCapability:
    if args.backend == "keyring":
        return KeyringCapability(vault_config.keyring_dir)
    return GpgCapability(binary=args.gpg_binary, homedir=args.gpg_homedir)


def _load_config(args) -> VaultConfig:
    try:
        vault_config = VaultConfig.from_env()
    except ValueError as e:
        raise UserInputError(f"Invalid {config.ENV_LOCK_TIMEOUT}: {e}") from e
    if args.data_dir:
        vault_config.data_dir = Path(args.data_dir).expanduser()
    return vault_config


def _build_manager(args) -> VaultManager:
    vault_config = _load_config(args)
    if args.lock_timeout is not None:
        if args.lock_timeout < 0:
            raise UserInputError(f"--lock-timeout must be >= 0, got {args.lock_timeout}")
        vault_config.lock_timeout = args.lock_timeout
    if args.no_verify:
        vault_config.verify_commit = False
    return VaultManager(vault_config, _build_capability(args, vault_config))


def _passphrase(args, recipient: str) -> Optional[SecureBuffer]:
    """
    Ask for the passphrase of a recipient's private key.

    GnuPG asks through its own agent unless --ask-passphrase is given. An
    empty answer means the key is not passphrase-protected.
    """
    if args.backend != "keyring" and not args.ask_passphrase:
        return None
    secret = SecureBuffer.prompt(f"Passphrase for {recipient}: ")
    if not len(secret):
        secret.wipe()
        return None
    return secret


def _verify_code(manager: VaultManager, args, vault, passphrase: Optional[SecureBuffer]) -> None:
    """Check a one-time code when the vault has two-factor authentication."""
    if not manager.two_factor.is_required(vault):
        return
    code = args.otp or input(f"One-time code for `{vault.name}`: ")
    manager.verify_two_factor(vault, code, passphrase)


def _guarded(manager: VaultManager, args, vault, operation) -> None:
    """Run a whole-vault operation, asking for a one-time code first if needed."""
    passphrase = None
    try:
        if manager.two_factor.is_required(vault):
            passphrase = _passphrase(args, vault.recipient)
            _verify_code(manager, args, vault, passphrase)
        operation(vault)
    finally:
        wipe_all(passphrase)


def _new_secret(prompt: str, confirm: str) -> SecureBuffer:
    first = SecureBuffer.prompt(prompt)
    with SecureBuffer.prompt(confirm) as second:
        if first != second:
            first.wipe()
            raise UserInputError("Entries do not match.")
    return first


def _account_password(args) -> SecureBuffer:
    if args.generate:
        return generate(args.length, exclude_ambiguous=args.exclude_ambiguous)
    password = _new_secret("Password: ", "Confirm password: ")
    if not len(password):
        password.wipe()
        raise UserInputError("Password cannot be empty.")
    return password


def _write_secret(secret: SecureBuffer) -> None:
    """Print a secret without turning it into a str."""
    sys.stdout.flush()
    with secret.use() as view:
        sys.stdout.buffer.write(view)
    sys.stdout.buffer.write(b"\n")
    sys.stdout.buffer.flush()


def _report(warnings: List[str]) -> None:
    for warning in warnings:
        print(f"Warning: {warning}", file=sys.stderr)


# ----------------------------------------------------------------------
# Subcommands
# ----------------------------------------------------------------------

def cmd_vaults(args) -> int:
    for name in _build_manager(args).list_vaults():
        print(name)
    return 0


def cmd_create_vault(args) -> int:
    manager = _build_manager(args)
    vault = manager.create_vault(args.vault, args.recipient)
    print(f"Vault `{vault.name}` created at {vault.path}")
    return 0


def cmd_delete_vault(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    if not args.yes:
        answer = input(f"Type `{vault.name}` to delete this vault and its backup: ")
        if answer.strip() != vault.name:
            print("Aborted.")
            return 0
    _guarded(manager, args, vault, manager.delete_vault)
    _report(manager.last_warnings)
    print(f"Vault `{vault.name}` deleted.")
    return 0


def cmd_rename_vault(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    passphrase = _passphrase(args, vault.recipient)
    try:
        _verify_code(manager, args, vault, passphrase)
        renamed = manager.rename(vault, args.new_name, passphrase)
    finally:
        wipe_all(passphrase)
    _report(manager.last_warnings)
    print(f"Vault `{vault.name}` renamed to `{renamed.name}`.")
    return 0


def cmd_change_recipient(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    passphrase = _passphrase(args, vault.recipient)
    new_passphrase = None
    try:
        if manager.config.verify_commit:
            new_passphrase = _passphrase(args, args.recipient)
        _verify_code(manager, args, vault, passphrase)
        manager.change_recipient(vault, args.recipient, passphrase, new_passphrase)
    finally:
        wipe_all(passphrase, new_passphrase)
    _report(manager.last_warnings)
    print(f"Vault `{vault.name}` is now encrypted for `{args.recipient}`.")
    return 0


def cmd_backup(args) -> int:
    manager = _build_manager(args)
    path = manager.backup(manager.vault(args.vault))
    print(f"Backup written to {path}")
    return 0


def cmd_restore(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    _guarded(manager, args, vault, manager.restore)
    print(f"Vault `{vault.name}` restored from {vault.backup_path}")
    return 0


def cmd_enable_2fa(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    passphrase = _passphrase(args, vault.recipient)
    try:
        secret, uri = manager.enable_two_factor(vault, passphrase)
    finally:
        wipe_all(passphrase)
    with secret:
        print("Secret for your authenticator app: ", end="")
        _write_secret(secret)
    print(f"Provisioning URI: {uri}")
    print(f"Vault `{vault.name}` now requires a one-time code.")
    return 0


def cmd_disable_2fa(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    passphrase = _passphrase(args, vault.recipient)
    try:
        code = args.otp or input(f"One-time code for `{vault.name}`: ")
        manager.disable_two_factor(vault, code, passphrase)
    finally:
        wipe_all(passphrase)
    _report(manager.last_warnings)
    print(f"Vault `{vault.name}` no longer requires a one-time code.")
    return 0


def cmd_list(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    passphrase = _passphrase(args, vault.recipient)
    try:
        _verify_code(manager, args, vault, passphrase)
        names = manager.list_accounts(vault, passphrase)
    finally:
        wipe_all(passphrase)
    for name in names:
        print(name)
    return 0


def cmd_show(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    passphrase = _passphrase(args, vault.recipient)
    try:
        _verify_code(manager, args, vault, passphrase)
        record = manager.get_account(vault, args.account, passphrase)
    finally:
        wipe_all(passphrase)
    with record:
        print(f"Account:  {args.account}")
        print(f"Username: {record.username}")
        if args.reveal:
            print("Password: ", end="")
            _write_secret(record.password)
        else:
            print("Password: ******** (use --reveal to show)")
    return 0


def cmd_add(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    with _account_password(args) as password:
        passphrase = _passphrase(args, vault.recipient)
        try:
            _verify_code(manager, args, vault, passphrase)
            manager.add_account(vault, args.account, args.username, password, passphrase)
        finally:
            wipe_all(passphrase)
        if args.generate:
            print("Generated password: ", end="")
            _write_secret(password)
    _report(manager.last_warnings)
    print(f"Account `{args.account}` added.")
    return 0


def cmd_delete(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    passphrase = _passphrase(args, vault.recipient)
    try:
        _verify_code(manager, args, vault, passphrase)
        manager.remove_account(vault, args.account, passphrase)
    finally:
        wipe_all(passphrase)
    _report(manager.last_warnings)
    print(f"Account `{args.account}` deleted.")
    return 0


def cmd_rename(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    passphrase = _passphrase(args, vault.recipient)
    try:
        _verify_code(manager, args, vault, passphrase)
        manager.rename_account(vault, args.account, args.new_name, passphrase)
    finally:
        wipe_all(passphrase)
    _report(manager.last_warnings)
    print(f"Account `{args.account}` renamed to `{args.new_name}`.")
    return 0


def cmd_change_username(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    passphrase = _passphrase(args, vault.recipient)
    try:
        _verify_code(manager, args, vault, passphrase)
        manager.change_username(vault, args.account, args.username, passphrase)
    finally:
        wipe_all(passphrase)
    _report(manager.last_warnings)
    print(f"Username of `{args.account}` changed.")
    return 0


def cmd_change_password(args) -> int:
    manager = _build_manager(args)
    vault = manager.vault(args.vault)
    with _account_password(args) as password:
        passphrase = _passphrase(args, vault.recipient)
        try:
            _verify_code(manager, args, vault, passphrase)
            manager.change_password(vault, args.account, password, passphrase)
        finally:
            wipe_all(passphrase)
        if args.generate:
            print("Generated password: ", end="")
            _write_secret(password)
    _report(manager.last_warnings)
    print(f"Password of `{args.account}` changed.")
    return 0


def cmd_generate_password(args) -> int:
    with generate(args.length,
                  lowercase=not args.no_lowercase,
                  uppercase=not args.no_uppercase,
                  digits=not args.no_digits,
                  symbols=not args.no_symbols,
                  exclude_ambiguous=args.exclude_ambiguous) as password:
        _write_secret(password)
        bits = entropy(password)
    print(f"Entropy: {bits:.2f} bits ({strength_label(bits)})")
    return 0


def cmd_entropy(args) -> int:
    with SecureBuffer.prompt("Password to rate: ") as password:
        bits = entropy(password)
    print(f"Entropy: {bits:.2f} bits ({strength_label(bits)})")
    return 0


def cmd_keygen(args) -> int:
    if args.backend != "keyring":
        raise UserInputError("keygen only manages identities of the keyring backend; use gpg --gen-key for GnuPG.")
    vault_config = _load_config(args)
    capability = KeyringCapability(vault_config.keyring_dir)
    passphrase = _new_secret(f"New passphrase for {args.recipient} (empty for none): ", "Confirm passphrase: ")
    with passphrase:
        capability.generate_identity(args.recipient, passphrase if len(passphrase) else None)
    print(f"Identity `{args.recipient}` created in {vault_config.keyring_dir}")
    return 0


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------

def _add_password_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--generate", action="store_true", help="Generate a random password instead of prompting")
    parser.add_argument("--length", type=int, default=config.PASSWORD_GENERATOR_DEFAULT_LENGTH,
                        help=f"Generated password length (default: {config.PASSWORD_GENERATOR_DEFAULT_LENGTH})")
    parser.add_argument("--exclude-ambiguous", action="store_true", help="Leave out look-alike characters")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sealvault",
        description=f"{config.APP_NAME} - password store kept in a single encrypted vault file",
    )
    parser.add_argument("--version", action="version", version=f"{config.APP_NAME} v{config.APP_VERSION}")
    parser.add_argument("--data-dir", help=f"Data directory (default: ${config.ENV_HOME} or ~/{config.CONFIG_DIR_NAME})")
    parser.add_argument("--backend", choices=("gpg", "keyring"), default="gpg",
                        help="Encryption backend (default: gpg)")
    parser.add_argument("--gpg-binary", default=config.GPG_BINARY, help="GnuPG executable")
    parser.add_argument("--gpg-homedir", help="GnuPG home directory")
    parser.add_argument("--ask-passphrase", action="store_true",
                        help="Prompt for the key passphrase instead of letting gpg-agent ask")
    parser.add_argument("--lock-timeout", type=float, help="Seconds to wait for a busy vault (default: fail at once)")
    parser.add_argument("--no-verify", action="store_true", help="Skip decrypting new vault files before replacing")
    parser.add_argument("--otp", metavar="CODE", help="One-time code for vaults with two-factor authentication")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("vaults", help="List vaults")
    p.set_defaults(func=cmd_vaults)

    p = sub.add_parser("create-vault", help="Create an empty vault")
    p.add_argument("vault")
    p.add_argument("--recipient", required=True, help="Key the vault is encrypted for")
    p.set_defaults(func=cmd_create_vault)

    p = sub.add_parser("delete-vault", help="Delete a vault and its backup")
    p.add_argument("vault")
    p.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    p.set_defaults(func=cmd_delete_vault)

    p = sub.add_parser("rename-vault", help="Rename a vault")
    p.add_argument("vault")
    p.add_argument("new_name")
    p.set_defaults(func=cmd_rename_vault)

    p = sub.add_parser("change-recipient", help="Re-encrypt a vault for another key")
    p.add_argument("vault")
    p.add_argument("recipient")
    p.set_defaults(func=cmd_change_recipient)

    p = sub.add_parser("backup", help="Copy a vault to its backup file")
    p.add_argument("vault")
    p.set_defaults(func=cmd_backup)

    p = sub.add_parser("restore", help="Overwrite a vault with its backup")
    p.add_argument("vault")
    p.set_defaults(func=cmd_restore)

    p = sub.add_parser("enable-2fa", help="Require a one-time code to open a vault")
    p.add_argument("vault")
    p.set_defaults(func=cmd_enable_2fa)

    p = sub.add_parser("disable-2fa", help="Stop requiring a one-time code for a vault")
    p.add_argument("vault")
    p.set_defaults(func=cmd_disable_2fa)

    p = sub.add_parser("list", help="List accounts of a vault")
    p.add_argument("vault")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("show", help="Show an account")
    p.add_argument("vault")
    p.add_argument("account")
    p.add_argument("--reveal", action="store_true", help="Print the password")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("add", help="Add an account")
    p.add_argument("vault")
    p.add_argument("account")
    p.add_argument("--username", required=True)
    _add_password_options(p)
    p.set_defaults(func=cmd_add)

    p = sub.add_parser("delete", help="Delete an account")
    p.add_argument("vault")
    p.add_argument("account")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("rename", help="Rename an account")
    p.add_argument("vault")
    p.add_argument("account")
    p.add_argument("new_name")
    p.set_defaults(func=cmd_rename)

    p = sub.add_parser("change-username", help="Change the username of an account")
    p.add_argument("vault")
    p.add_argument("account")
    p.add_argument("username")
    p.set_defaults(func=cmd_change_username)

    p = sub.add_parser("change-password", help="Change the password of an account")
    p.add_argument("vault")
    p.add_argument("account")
    _add_password_options(p)
    p.set_defaults(func=cmd_change_password)

    p = sub.add_parser("generate-password", help="Print a random password")
    p.add_argument("--length", type=int, default=config.PASSWORD_GENERATOR_DEFAULT_LENGTH)
    p.add_argument("--no-lowercase", action="store_true")
    p.add_argument("--no-uppercase", action="store_true")
    p.add_argument("--no-digits", action="store_true")
    p.add_argument("--no-symbols", action="store_true")
    p.add_argument("--exclude-ambiguous", action="store_true")
    p.set_defaults(func=cmd_generate_password)

    p = sub.add_parser("entropy", help="Estimate the entropy of a password")
    p.set_defaults(func=cmd_entropy)

    p = sub.add_parser("keygen", help="Create a keyring identity (keyring backend)")
    p.add_argument("recipient")
    p.set_defaults(func=cmd_keygen)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI and return its exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        return args.func(args)
    except VaultError as e:
        logger.debug(f"{args.command} failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
