"""TrustWork CLI — operator commands for the gig lifecycle core.

Usage:
    python -m trustwork.cli status
    python -m trustwork.cli sweep
    python -m trustwork.cli check-invariants
    python -m trustwork.cli verify-webhook --payload webhook.json
    python -m trustwork.cli list-postings --status open --skill python
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

from trustwork.compensation.gateway import WebhookEvent
from trustwork.errors import TrustWorkError
from trustwork.models.posting import PostingKind, PostingStatus
from trustwork.persistence.event_log import EventLog
from trustwork.persistence.state_store import StateStore
from trustwork.policy.checks import check_config
from trustwork.policy.resolver import PolicyResolver
from trustwork.service import TrustWorkService

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _make_service(config_dir: Path, data_dir: Path = DEFAULT_DATA) -> TrustWorkService:
    """Create a TrustWorkService with durable persistence."""
    data_dir.mkdir(parents=True, exist_ok=True)
    resolver = PolicyResolver.from_config_dir(config_dir)
    event_log = EventLog(storage_path=data_dir / "events.jsonl")
    state_store = StateStore(storage_path=data_dir / "state.json")
    return TrustWorkService(
        resolver,
        event_log=event_log,
        state_store=state_store,
    )


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    """Run time-driven housekeeping once."""
    service = _make_service(args.config, args.data)
    result = service.sweep()
    print(json.dumps(result.data, indent=2))
    if result.success:
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Check config structure, then the invariants of the stored state."""
    errors = check_config(args.config)
    if not errors:
        result = _make_service(args.config, args.data).check_invariants()
        errors = result.errors
    if errors:
        print("Invariant check failed:", file=sys.stderr)
        for error in errors:
            print(f"- {error}", file=sys.stderr)
        return 1
    print("Invariant checks passed.")
    return 0


def cmd_verify_webhook(args: argparse.Namespace) -> int:
    """Verify a webhook payload's signature without applying it."""
    resolver = PolicyResolver.from_config_dir(args.config)
    with args.payload.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    try:
        event = WebhookEvent.from_payload(payload, resolver.webhook_secret())
    except TrustWorkError as e:
        print(f"Failed: {e.code}: {e.message}", file=sys.stderr)
        return 1
    print(json.dumps({
        "event_type": event.event_type,
        "external_ref": event.external_ref,
        "status": event.status,
        "receipt_key": event.receipt_key,
    }, indent=2))
    return 0


def cmd_list_postings(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    postings = service.list_postings(
        skills=args.skill or None,
        location=args.location,
        budget_min=Decimal(args.budget_min) if args.budget_min else None,
        budget_max=Decimal(args.budget_max) if args.budget_max else None,
        status=PostingStatus(args.status) if args.status else None,
        kind=PostingKind(args.kind) if args.kind else None,
        limit=args.limit,
    )
    for posting in postings:
        print(
            f"{posting.posting_id}  {posting.kind.value:<4}  {posting.status.value:<11}  "
            f"{posting.budget_min}-{posting.budget_max} {posting.currency}  {posting.title}"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trustwork",
        description="TrustWork — gig lifecycle core CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=DEFAULT_DATA,
        help="Path to data directory for state and events (default: data/)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show system status")

    # sweep
    sub.add_parser("sweep", help="Expire attempts, advance disputes, fail stale intents")

    # check-invariants
    sub.add_parser("check-invariants", help="Check config and stored state invariants")

    # verify-webhook
    p_hook = sub.add_parser("verify-webhook", help="Verify a gateway webhook payload")
    p_hook.add_argument("--payload", type=Path, required=True, help="JSON file with the payload")

    # list-postings
    p_list = sub.add_parser("list-postings", help="Search postings")
    p_list.add_argument("--skill", action="append", help="Required skill (repeatable)")
    p_list.add_argument("--location", help="Location substring")
    p_list.add_argument("--budget-min", help="Minimum budget (Decimal)")
    p_list.add_argument("--budget-max", help="Maximum budget (Decimal)")
    p_list.add_argument("--status", choices=[s.value for s in PostingStatus])
    p_list.add_argument("--kind", choices=[k.value for k in PostingKind])
    p_list.add_argument("--limit", type=int, default=50)

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "sweep": cmd_sweep,
        "check-invariants": cmd_check_invariants,
        "verify-webhook": cmd_verify_webhook,
        "list-postings": cmd_list_postings,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
