"""Compliance service command line interface.

Provides operational tools for:
- Schema creation and policy seeding
- Viewing and updating the compliance policy
- Running a recovery pass (stuck captures/voids, failed CRM syncs)
- Inspecting an order and its payment trail

Usage:
    python -m firearms_compliance.cli init-db
    python -m firearms_compliance.cli show-config --history
    python -m firearms_compliance.cli set-config --firearm-limit 3 --updated-by admin-7
    python -m firearms_compliance.cli reconcile
    python -m firearms_compliance.cli show-order 3fa85f64-5717-4562-b3fc-2c963f66afa6
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Callable
from uuid import UUID

from firearms_compliance.compliance.settings_store import ComplianceSettings
from firearms_compliance.config import get_settings
from firearms_compliance.database import create_schema
from firearms_compliance.exceptions import ComplianceServiceError
from firearms_compliance.runtime import Runtime, build_runtime


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


def parse_on_off(s: str) -> bool:
    """Parse an on/off flag value."""
    value = s.strip().lower()
    if value in ("on", "true", "yes", "1"):
        return True
    if value in ("off", "false", "no", "0"):
        return False
    raise argparse.ArgumentTypeError(f"expected on/off, got {s!r}")


class ComplianceCli:
    """Compliance service command line interface."""

    def __init__(self, runtime_factory: Callable[[], Runtime] = build_runtime) -> None:
        self.runtime_factory = runtime_factory
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m firearms_compliance.cli",
            description="Firearms compliance operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # init-db command
        subparsers.add_parser(
            "init-db",
            help="Create tables and seed the compliance policy from the environment",
        )

        # show-config command
        show_config = subparsers.add_parser(
            "show-config",
            help="Show the active compliance policy",
        )
        show_config.add_argument(
            "--history",
            action="store_true",
            help="Show every policy version, newest first",
        )
        show_config.add_argument(
            "--json",
            action="store_true",
            help="Print JSON instead of text",
        )

        # set-config command
        set_config = subparsers.add_parser(
            "set-config",
            help="Update the compliance policy (creates a new version)",
        )
        set_config.add_argument("--window-days", type=int, help="Rolling window in days")
        set_config.add_argument("--firearm-limit", type=int, help="Firearm units allowed per window")
        set_config.add_argument(
            "--multi-firearm-hold",
            type=parse_on_off,
            help="Enable multi-firearm holds (on/off)",
        )
        set_config.add_argument(
            "--ffl-hold",
            type=parse_on_off,
            help="Enable FFL holds (on/off)",
        )
        set_config.add_argument(
            "--updated-by",
            type=str,
            required=True,
            help="Staff member making the change",
        )

        # reconcile command
        subparsers.add_parser(
            "reconcile",
            help="Run one recovery pass (pending gateway calls, failed captures/voids, CRM retries)",
        )

        # show-order command
        show_order = subparsers.add_parser(
            "show-order",
            help="Show an order with its payment trail",
        )
        show_order.add_argument("order_id", type=parse_uuid, help="Order ID")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        # Dispatch to command handler
        handlers: dict[str, Callable[[Runtime, argparse.Namespace], int]] = {
            "init-db": self._cmd_init_db,
            "show-config": self._cmd_show_config,
            "set-config": self._cmd_set_config,
            "reconcile": self._cmd_reconcile,
            "show-order": self._cmd_show_order,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        runtime = self.runtime_factory()
        try:
            return handler(runtime, parsed)
        except ComplianceServiceError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        finally:
            runtime.close()

    def _cmd_init_db(self, runtime: Runtime, args: argparse.Namespace) -> int:
        """Create tables and seed the policy."""
        create_schema(runtime.engine)
        policy = runtime.config_store.bootstrap()
        print("Schema ready.")
        print(f"Active policy: version {policy.version}")
        return 0

    def _cmd_show_config(self, runtime: Runtime, args: argparse.Namespace) -> int:
        """Show the compliance policy."""
        policies = runtime.config_store.history() if args.history else [runtime.config_store.reload()]

        if args.json:
            print(json.dumps([_policy_dict(p) for p in policies], indent=2))
            return 0

        for policy in policies:
            _print_policy(policy)
        return 0

    def _cmd_set_config(self, runtime: Runtime, args: argparse.Namespace) -> int:
        """Update the compliance policy."""
        changes: dict[str, Any] = {}
        if args.window_days is not None:
            changes["window_days"] = args.window_days
        if args.firearm_limit is not None:
            changes["firearm_limit"] = args.firearm_limit
        if args.multi_firearm_hold is not None:
            changes["multi_firearm_hold_enabled"] = args.multi_firearm_hold
        if args.ffl_hold is not None:
            changes["ffl_hold_enabled"] = args.ffl_hold

        if not changes:
            print("Nothing to change.", file=sys.stderr)
            return 1

        policy = runtime.config_store.update(changes, updated_by=args.updated_by)
        print("Policy updated.")
        _print_policy(policy)
        return 0

    def _cmd_reconcile(self, runtime: Runtime, args: argparse.Namespace) -> int:
        """Run one recovery pass."""
        report = runtime.run_recovery()
        runtime.emitter.wait_idle(timeout=30)

        print("Recovery pass")
        print("=" * 40)
        print(f"  Resumed pending:   {len(report.resumed)}")
        print(f"  Captures retried:  {len(report.captures_retried)}")
        print(f"  Voids retried:     {len(report.voids_retried)}")
        print(f"  Syncs redelivered: {report.syncs_redelivered}")
        if report.needs_staff:
            print(f"\n{len(report.needs_staff)} order(s) need staff (declined or retries exhausted):")
            for order_id in report.needs_staff:
                print(f"  - {order_id}")
        if report.errors:
            print(f"\n{len(report.errors)} error(s):")
            for error in report.errors:
                print(f"  - {error}")
            return 1
        return 0

    def _cmd_show_order(self, runtime: Runtime, args: argparse.Namespace) -> int:
        """Show an order with its payment trail."""
        with runtime.session_factory() as session:
            orders = runtime.order_service(session)
            order = orders.get_order(args.order_id)
            transactions = orders.list_transactions(args.order_id)

            print(f"Order {order.order_number} ({order.order_id})")
            print(f"  Customer:   {order.customer_id}")
            print(f"  Status:     {order.status}")
            print(f"  Hold:       {order.hold_type}")
            print(f"  Amount:     {order.amount:,.2f} {order.currency}")
            print(f"  Auth:       {order.auth_transaction_id}")
            print(f"  Capture:    {order.capture_transaction_id or '-'}")
            print(f"  FFL:        {order.ffl_license_number or '-'} ({order.ffl_status})")
            if order.pending_operation:
                print(f"  Pending:    {order.pending_operation} since {order.pending_since}")
            if order.failure_kind:
                print(f"  Failure:    {order.failure_kind} x{order.failure_count}")

            print("\n  Lines:")
            for line in order.lines:
                marker = " [firearm]" if line.is_firearm else ""
                print(f"    {line.quantity} x {line.sku} @ {line.unit_price}{marker}")

            print("\n  Payment transactions:")
            for tx in transactions:
                applied = " (already applied)" if tx.already_applied else ""
                print(
                    f"    {tx.created_at.isoformat()} {tx.kind:<9} {tx.result:<8} "
                    f"{tx.gateway_transaction_id or '-'} attempts={tx.attempts}{applied}"
                )

            print("\n  Activity:")
            for activity in order.activity:
                print(
                    f"    {activity.created_at.isoformat()} {activity.action:<15} "
                    f"{activity.from_status or '-'} -> {activity.to_status} by {activity.actor}"
                )
        return 0


def _policy_dict(policy: ComplianceSettings) -> dict[str, Any]:
    data = policy.to_dict()
    if data["updated_at"] is not None:
        data["updated_at"] = data["updated_at"].isoformat()
    return data


def _print_policy(policy: ComplianceSettings) -> None:
    print(f"Version {policy.version} (by {policy.updated_by})")
    print(f"  Window days:        {policy.window_days}")
    print(f"  Firearm limit:      {policy.firearm_limit}")
    print(f"  Multi-firearm hold: {'on' if policy.multi_firearm_hold_enabled else 'off'}")
    print(f"  FFL hold:           {'on' if policy.ffl_hold_enabled else 'off'}")


def main() -> int:
    """CLI entry point."""
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cli = ComplianceCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
