# Keywarden - Command Line Entry Point
#
# Each subcommand maps to one CredentialLifecycle operation. Core errors
# are printed as "error: [step] message" and exit 1; nothing below the CLI
# calls sys.exit().

import argparse
import logging
import sys
from typing import Dict, List, Optional

from . import __version__
from .core import AuthorizationMode, OnRegenerate, Settings, configure_audit_logger
from .exceptions import InvalidConfiguration, KeywardenError
from .keys import KeyAlgorithm
from .lifecycle import CredentialLifecycle, LifecycleResult, RegenerationRequest
from .prompts import ConsolePrompter, ScriptedPrompter
from .service import probe_ssh

ALGORITHM_CHOICES = [a.value for a in KeyAlgorithm]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keywarden",
        description="Keywarden - SSH key lifecycle and sshd_config reconciliation",
        epilog="Settings can also be given as KEYWARDEN_* environment variables or in a .env file.",
    )
    parser.add_argument("--version", action="version", version=f"keywarden {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-y", "--yes", action="store_true",
                        help="Answer yes to every confirmation (non-interactive)")
    parser.add_argument("--env-file", help="Load settings from this .env file")
    parser.add_argument("--ssh-dir", help="Key directory (default: ~/.ssh)")
    parser.add_argument("--archive-dir", help="Key backup directory (default: <ssh-dir>/backup)")
    parser.add_argument("--sshd-config", help="sshd_config path (default: /etc/ssh/sshd_config)")
    parser.add_argument("--sshd-backup-dir", help="sshd_config backup directory (default: /etc/ssh/backup)")
    parser.add_argument("--backend", choices=["auto", "ssh-keygen", "cryptography"],
                        help="Key generation backend")

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("install", help="Install, start and enable the OpenSSH server")

    g = sub.add_parser("generate", help="Generate a new key pair and configure sshd")
    g.add_argument("-a", "--algorithm", choices=ALGORITHM_CHOICES,
                   help="Key algorithm (prompted when omitted)")
    g.add_argument("-b", "--bits", type=int, help="Key size (RSA/ECDSA)")
    g.add_argument("-C", "--comment", help="Key comment (default: user@host)")
    g.add_argument("--on-regenerate", choices=[p.value for p in OnRegenerate],
                   help="Archive the old key (default) or delete it")
    g.add_argument("--auth-mode", choices=[m.value for m in AuthorizationMode],
                   help="Replace authorized_keys (default) or append to it")
    g.add_argument("--no-configure", action="store_true", help="Leave sshd_config alone")
    g.add_argument("--no-restart", action="store_true", help="Do not restart the SSH service")
    g.add_argument("--show-private-key", action="store_true",
                   help="Offer to print the private key when done")

    c = sub.add_parser("configure", help="Reconcile sshd_config directives")
    c.add_argument("--set", action="append", default=[], metavar="KEY=VALUE",
                   help="Override or add a directive (repeatable)")
    c.add_argument("--no-restart", action="store_true", help="Do not restart the SSH service")

    r = sub.add_parser("restore", help="Restore a backup")
    r.add_argument("backup_id", nargs="?", help="Backup to restore (chosen interactively if omitted)")
    r.add_argument("--config", action="store_true", help="Restore an sshd_config backup")
    r.add_argument("--restart", action="store_true",
                   help="Restart the SSH service after restoring sshd_config")

    d = sub.add_parser("delete", help="Back up and delete a key pair")
    d.add_argument("algorithm", choices=ALGORITHM_CHOICES)
    d.add_argument("--keep-authorization", action="store_true",
                   help="Leave the key's authorized_keys lines in place")

    sub.add_parser("verify", help="Check permissions, authorization and sshd_config")

    t = sub.add_parser("test-connection", help="Check that an SSH server answers")
    t.add_argument("--host", default="127.0.0.1")
    t.add_argument("--port", type=int, default=22)
    t.add_argument("--timeout", type=float, default=5.0)

    sub.add_parser("info", help="Show installed keys and fingerprints")

    b = sub.add_parser("backups", help="List backups")
    b.add_argument("--config", action="store_true", help="List sshd_config backups")

    sub.add_parser("help", help="Show this help")
    return parser


def parse_directives(pairs: List[str], base: Dict[str, str]) -> Dict[str, str]:
    directives = dict(base)
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise InvalidConfiguration(f"--set expects KEY=VALUE, got {pair!r}")
        directives[key.strip()] = value.strip()
    return directives


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load_settings(args) -> Settings:
    settings = Settings.from_env(dotenv_path=args.env_file)
    return settings.with_overrides(
        ssh_dir=args.ssh_dir,
        archive_dir=args.archive_dir,
        sshd_config=args.sshd_config,
        sshd_backup_dir=args.sshd_backup_dir,
        keygen_backend=args.backend,
    )


def print_security_summary(result: LifecycleResult, out=None) -> None:
    out = out or sys.stdout
    key = result.key
    print("=" * 60, file=out)
    print("  SSH key installed", file=out)
    print("=" * 60, file=out)
    print(f"  Key:          {key.describe()} ({key.comment})", file=out)
    print(f"  Private key:  {key.private_path}", file=out)
    print(f"  Public key:   {key.public_path}", file=out)
    print(f"  Fingerprint:  {result.fingerprint}", file=out)
    if result.key_backup:
        print(f"  Old material: archived in {result.key_backup.archive_dir}", file=out)
    elif "confirm" in result.steps_completed:
        print("  Old material: deleted (no backup)", file=out)
    if result.config:
        changed = ", ".join(result.config.changed_keys) or "none"
        print(f"  sshd_config:  updated directives: {changed}", file=out)
    if result.config_backup:
        print(f"  sshd_config backup: {result.config_backup.archive_dir}", file=out)
    for warning in result.warnings:
        print(f"  WARNING: {warning}", file=out)
    print("", file=out)
    print("  Keep the private key safe: losing it means losing remote access.", file=out)
    if result.config:
        print("  Password login is disabled; test a key login before closing this session:", file=out)
    else:
        print("  Test a key login before closing this session:", file=out)
    print(f"    ssh -i {key.private_path} <user>@<host>", file=out)
    print("  If login fails check: sshd -t, systemctl status ssh, journalctl -u ssh", file=out)
    print("=" * 60, file=out)


def _print_result(result: LifecycleResult) -> None:
    for step in result.steps_completed:
        print(f"[OK] {step}")
    for warning in result.warnings:
        print(f"[WARN] {warning}")


def run(args, lifecycle: CredentialLifecycle) -> int:
    command = args.command

    if command == "install":
        installed = lifecycle.install_service()
        print("[OK] OpenSSH server installed" if installed else "[OK] OpenSSH server already installed")
        print("[OK] SSH service running")
        return 0

    if command == "generate":
        algorithm = args.algorithm or lifecycle.prompter.choose(
            "Select key algorithm:", ALGORITHM_CHOICES[:3], default=KeyAlgorithm.ED25519.value
        )
        request = RegenerationRequest(
            algorithm=algorithm,
            bits=args.bits,
            comment=args.comment,
            on_regenerate=OnRegenerate(args.on_regenerate) if args.on_regenerate else None,
            auth_mode=AuthorizationMode(args.auth_mode) if args.auth_mode else None,
            reconcile_config=not args.no_configure,
            restart_service=not args.no_restart,
            disclose_private_key=args.show_private_key,
        )
        result = lifecycle.regenerate(request)
        print_security_summary(result)
        if result.private_key:
            print(result.private_key, end="" if result.private_key.endswith("\n") else "\n")
        return 0

    if command == "configure":
        directives = parse_directives(args.set, lifecycle.settings.directives)
        result = lifecycle.configure(directives, restart_service=not args.no_restart)
        for key, state in result.config.states.items():
            print(f"{key:<24} {state.value}")
        print("[OK] sshd_config updated" if result.config.changed else "[OK] sshd_config already reconciled")
        return 0

    if command == "restore":
        kind = "config" if args.config else "keys"
        result = lifecycle.restore(args.backup_id, kind=kind, restart_service=args.restart)
        for path in result.restored_files:
            print(f"[OK] restored {path}")
        return 0

    if command == "delete":
        result = lifecycle.delete_keys(args.algorithm, revoke=not args.keep_authorization)
        _print_result(result)
        return 0

    if command == "verify":
        report = lifecycle.verify()
        for check in report.checks:
            status = "OK" if check.ok else "FAIL"
            print(f"[{status:<4}] {check.name}: {check.detail}")
        return 0 if report.ok else 1

    if command == "test-connection":
        probe = probe_ssh(args.host, args.port, args.timeout)
        if not probe.reachable:
            print(f"[FAIL] {args.host}:{args.port} unreachable: {probe.error}")
            return 1
        if not probe.is_ssh:
            print(f"[FAIL] {args.host}:{args.port} answered without an SSH banner")
            return 1
        print(f"[OK] {args.host}:{args.port} {probe.banner}")
        return 0

    if command == "info":
        infos = lifecycle.info()
        if not infos:
            print("No keys installed in", lifecycle.settings.ssh_dir)
        for info in infos:
            modes = f"{oct(info.private_mode or 0)}/{oct(info.public_mode or 0)}"
            authorized = "authorized" if info.authorized else "not authorized"
            print(f"{info.algorithm.value:<8} {info.fingerprint}  {modes}  {authorized}  {info.comment}")
            print(f"         {info.private_path} ({info.private_size} bytes)")
        return 0

    if command == "backups":
        kind = "config" if args.config else "keys"
        records = lifecycle.list_backups(kind)
        if not records:
            print(f"No {kind} backups")
        for record in records:
            print(f"{record.backup_id}  {', '.join(e.name for e in record.entries)}")
        return 0

    raise InvalidConfiguration(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command in (None, "help"):
        parser.print_help()
        return 0

    _setup_logging(args.verbose)
    try:
        settings = _load_settings(args)
        configure_audit_logger(settings.audit_log_dir)
        prompter = ScriptedPrompter(confirm_default=True) if args.yes else ConsolePrompter()
        lifecycle = CredentialLifecycle(settings, prompter=prompter)
        return run(args, lifecycle)
    except KeywardenError as e:
        prefix = f"[{e.step}] " if e.step else ""
        print(f"error: {prefix}{e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
