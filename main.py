#!/usr/bin/env python3
"""
AdminGate operator CLI -- bootstrap and maintenance tasks that must work
without the HTTP API (first admin account, manual sweeps, offline export).

Usage:
  python main.py create-admin --email ops@example.com --name "Ops" --role super_admin
  python main.py create-admin --email ops@example.com --name "Ops" --role admin --mfa
  python main.py sweep-sessions
  python main.py export-audit --start 2024-01-01 --end 2024-02-01 --format csv > audit.csv

Environment variables:
  SECRET_KEY                    Required unless DEBUG=true (see core/config.py).
  DATABASE_URL                  SQLAlchemy URL of the AdminGate database.
  ADMINGATE_BOOTSTRAP_PASSWORD  Password for create-admin; prompted for when unset.
"""

import argparse
import getpass
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import IntegrityError

from api.services import build_services
from audit.export import ExportFormat, check_export_range, render
from auth.models import Identity, Role
from auth.tokens import generate_mfa_secret, hash_password
from core.clock import as_utc
from core.config import get_settings
from core.errors import ValidationError

_MIN_PASSWORD_LENGTH = 12


def _read_password(preset: str) -> Optional[str]:
    """Return the preset password, or prompt twice for one. None on mismatch."""
    if preset:
        return preset
    first = getpass.getpass("Password: ")
    if first != getpass.getpass("Confirm password: "):
        print("  [!] Passwords do not match.", file=sys.stderr)
        return None
    return first


def _parse_date(value: str) -> datetime:
    try:
        return as_utc(datetime.fromisoformat(value))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"'{value}' is not an ISO 8601 date or datetime") from exc


def create_admin(args: argparse.Namespace) -> int:
    settings = get_settings()
    password = _read_password(settings.bootstrap_password)
    if password is None:
        return 1
    if len(password) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.", file=sys.stderr)
        return 1

    services = build_services(settings)
    try:
        identity = Identity(
            email=args.email,
            display_name=args.name,
            role=Role(args.role),
            hashed_password=hash_password(password),
        )
        if args.mfa:
            identity.mfa_enabled = True
            identity.mfa_secret = generate_mfa_secret()
        try:
            identity_id = services.identities.create_identity(identity)
        except IntegrityError:
            print(f"  [!] An identity with email '{args.email}' already exists.", file=sys.stderr)
            return 1
        print(f"Created {args.role} identity {identity_id} for {args.email.strip().lower()}.")
        if identity.mfa_secret:
            # Shown once; the operator enrolls it in an authenticator app now.
            print(f"TOTP secret (base32): {identity.mfa_secret}")
        return 0
    finally:
        services.close()


def sweep_sessions(args: argparse.Namespace) -> int:
    services = build_services(get_settings())
    try:
        expired, capped = services.sessions.sweep()
    finally:
        services.close()
    print(f"Sweep complete: {expired} expired, {capped} over cap.")
    return 0


def export_audit(args: argparse.Namespace) -> int:
    settings = get_settings()
    try:
        check_export_range(args.start, args.end, settings.audit_export_max_days)
    except ValidationError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 2

    services = build_services(settings)
    try:
        records = services.audit_store.export_range(args.start, args.end, actor_id=args.actor_id)
    finally:
        services.close()
    output = render(records, ExportFormat(args.format))
    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Wrote {len(records)} record(s) to {args.output}.", file=sys.stderr)
    else:
        sys.stdout.write(output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="admingate",
        description="AdminGate operator tasks.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --email ops@example.com --name "Ops" --role super_admin
  python main.py sweep-sessions
  python main.py export-audit --start 2024-01-01 --end 2024-02-01 --format json
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    p_admin = sub.add_parser("create-admin", help="Create an administrative identity")
    p_admin.add_argument("--email", required=True, help="Login email (stored lower-case)")
    p_admin.add_argument("--name", required=True, help="Display name")
    p_admin.add_argument(
        "--role",
        choices=[r.value for r in Role],
        default=Role.SUPER_ADMIN.value,
        help="Role (default: super_admin)",
    )
    p_admin.add_argument("--mfa", action="store_true", help="Enroll a TOTP secret and print it once")
    p_admin.set_defaults(func=create_admin)

    p_sweep = sub.add_parser("sweep-sessions", help="Expire stale sessions and re-apply the session cap")
    p_sweep.set_defaults(func=sweep_sessions)

    p_export = sub.add_parser("export-audit", help="Export audit records for a bounded date range")
    p_export.add_argument("--start", required=True, type=_parse_date, help="Range start (inclusive), ISO 8601")
    p_export.add_argument("--end", required=True, type=_parse_date, help="Range end (exclusive), ISO 8601")
    p_export.add_argument("--format", choices=[f.value for f in ExportFormat], default=ExportFormat.CSV.value)
    p_export.add_argument("--actor-id", type=int, default=None, help="Only records by this identity")
    p_export.add_argument("--output", metavar="PATH", help="Write to PATH instead of stdout")
    p_export.set_defaults(func=export_audit)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
