"""Command-line entry point for the market estimator."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="market-estimator",
        description="Build canonical Page-1 estimates, resolve marketplace fees, compute margins.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── page-one ───────────────────────────────────────────────────────────
    page_cmd = sub.add_parser("page-one", help="Build the canonical Page-1 for a keyword.")
    page_cmd.add_argument("--keyword", required=True, help="Search keyword the listings belong to.")
    page_cmd.add_argument(
        "--input",
        default=None,
        help="Scraped listings: a JSON file ({'listings': [...], 'snapshot': {...}} or a list) or a CSV export.",
    )
    page_cmd.add_argument("--marketplace", default="US", help="Marketplace code (default: US)")
    page_cmd.add_argument("--seed", type=int, default=None, help="Seed for reproducible jitter.")
    page_cmd.add_argument("--config", default=None, help="Path to config.yaml")
    page_cmd.add_argument(
        "--save-snapshot",
        action="store_true",
        help="Write the built page to the snapshots directory and apply retention.",
    )
    page_cmd.add_argument("--json", dest="output_json", action="store_true", help="Output JSON only.")

    # ── fees ───────────────────────────────────────────────────────────────
    fees_cmd = sub.add_parser("fees", help="Resolve marketplace fees for an ASIN at a price.")
    fees_cmd.add_argument("--asin", required=True)
    fees_cmd.add_argument("--price", type=float, required=True)
    fees_cmd.add_argument("--marketplace", default=None, help="Marketplace id (default: config)")
    fees_cmd.add_argument("--category", default=None, help="Category hint for the fallback estimate.")
    fees_cmd.add_argument("--config", default=None, help="Path to config.yaml")

    # ── margin ─────────────────────────────────────────────────────────────
    margin_cmd = sub.add_parser("margin", help="Compute a margin snapshot for a selling price.")
    margin_cmd.add_argument("--price", type=float, default=None)
    margin_cmd.add_argument("--sourcing-model", default="not_sure")
    margin_cmd.add_argument("--category", default=None)
    margin_cmd.add_argument("--mode", choices=["ASIN", "KEYWORD"], default="KEYWORD")
    margin_cmd.add_argument("--live-fee", type=float, default=None, help="Known total fee from a live quote.")
    margin_cmd.add_argument(
        "--message",
        default=None,
        help='Free-text cost statement, e.g. "my COGS is $12 and FBA fee is 4.50".',
    )

    # ── anchor ─────────────────────────────────────────────────────────────
    anchor_cmd = sub.add_parser("anchor", help="Compute the rank distribution market anchor.")
    anchor_cmd.add_argument("--units", type=float, required=True, help="Total monthly page units.")
    anchor_cmd.add_argument("--avg-price", type=float, required=True)
    anchor_cmd.add_argument("--organic", type=int, default=20)
    anchor_cmd.add_argument("--sponsored", type=int, default=0)

    return parser


def _load_config(path: str | None):
    from .config import ConfigError, resolve_config

    try:
        return resolve_config(path)
    except ConfigError as exc:
        print(f"[ERROR] Configuration error: {exc}", file=sys.stderr)
        sys.exit(2)


def _read_input(path: str) -> tuple[list, dict | None]:
    """Return ``(listings, snapshot)`` from a JSON or CSV file."""
    import pandas as pd

    from .normalize import listings_from_frame, listings_from_records, snapshot_from_record

    source = Path(path)
    if source.suffix.lower() == ".csv":
        return listings_from_frame(pd.read_csv(source)), None

    raw = json.loads(source.read_text(encoding="utf-8"))
    if isinstance(raw, list):
        return listings_from_records(raw), None
    if not isinstance(raw, dict):
        raise ValueError("JSON input must be a list of listings or an object")
    snapshot = raw.get("snapshot")
    return (
        listings_from_records(raw.get("listings") or []),
        snapshot_from_record(snapshot) if isinstance(snapshot, dict) else None,
    )


# ---------------------------------------------------------------------------
# Sub-command implementations
# ---------------------------------------------------------------------------

def _cmd_page_one(args: argparse.Namespace) -> None:
    """Build, print and optionally persist a canonical Page-1."""
    import random
    from datetime import datetime

    from dateutil import tz

    from .normalize import snapshot_from_listings
    from .page_one import CanonicalPageOneBuilder, is_synthetic
    from .snapshot import apply_retention, save_page_snapshot

    cfg = _load_config(args.config)

    listings: list = []
    snapshot = None
    if args.input:
        try:
            listings, snapshot = _read_input(args.input)
        except (OSError, ValueError) as exc:
            print(f"[ERROR] Cannot read --input: {exc}", file=sys.stderr)
            sys.exit(3)
    if snapshot is None:
        snapshot = snapshot_from_listings(listings)

    seed = args.seed if args.seed is not None else cfg.estimator.random_seed
    try:
        builder = CanonicalPageOneBuilder(
            page_size=cfg.estimator.page_size,
            bsr_duplicate_threshold=cfg.estimator.bsr_duplicate_threshold,
            rng=random.Random(seed),
        )
        products = builder.build(listings, snapshot, args.keyword, args.marketplace)
    except Exception as exc:  # noqa: BLE001
        print(f"[ERROR] Page build failed: {exc}", file=sys.stderr)
        sys.exit(4)

    if args.save_snapshot:
        try:
            run_date = datetime.now(tz.gettz(cfg.runtime.timezone) or tz.tzlocal()).date()
            save_page_snapshot(
                products, cfg.storage.snapshots_dir, args.keyword, args.marketplace, run_date
            )
            apply_retention(
                cfg.storage.snapshots_dir, args.keyword, args.marketplace, cfg.storage.retain_snapshots
            )
        except Exception as exc:  # noqa: BLE001
            print(f"[ERROR] Snapshot save failed: {exc}", file=sys.stderr)
            sys.exit(4)

    records = [p.as_dict() for p in products]
    if args.output_json:
        print(json.dumps(records, indent=2, ensure_ascii=False))
        return

    SEP = "-" * 80
    total = sum(p.estimated_monthly_revenue for p in products)
    real = sum(1 for p in products if not is_synthetic(p))
    print(SEP)
    print(f"  Page 1  •  {args.keyword!r} ({args.marketplace})  •  {real} observed, {len(products) - real} estimated")
    print(SEP)
    for p in products:
        flag = "*" if p.snapshot_inferred else " "
        print(
            f" {flag}{p.rank:>2}  {p.asin:<12} ${p.price:>8.2f}  {p.rating:.1f}★ "
            f"{p.estimated_monthly_units:>7} u  ${p.estimated_monthly_revenue:>11,.2f}  "
            f"{p.revenue_share_pct:>5.2f}%  {p.fulfillment}"
        )
    print(SEP)
    print(f"  Total monthly revenue: ${total:,.2f}   (* = contains inferred fields)")


def _cmd_fees(args: argparse.Namespace) -> None:
    """Run the fee waterfall for one ASIN and print the JSON result."""
    from .fees import get_fees_result
    from .normalize import normalize_asin
    from .services import build_services

    asin = normalize_asin(args.asin)
    if not asin:
        print(f"[ERROR] Invalid ASIN: {args.asin}", file=sys.stderr)
        sys.exit(3)
    if args.price <= 0:
        print("[ERROR] --price must be positive.", file=sys.stderr)
        sys.exit(3)

    cfg = _load_config(args.config)
    try:
        services = build_services(cfg)
        result = get_fees_result(
            services.fees,
            asin,
            args.price,
            args.marketplace or cfg.sp_api.default_marketplace,
            args.category,
        )
    except Exception as exc:  # noqa: BLE001
        print(f"[ERROR] Unexpected error during fee lookup: {exc}", file=sys.stderr)
        sys.exit(4)
    print(json.dumps(result.as_dict(), indent=2, ensure_ascii=False))


def _cmd_margin(args: argparse.Namespace) -> None:
    from .margins import compute_margin_snapshot, parse_cost_overrides

    override = None
    if args.message:
        parsed = parse_cost_overrides(args.message, args.price)
        if parsed is not None and parsed.validation_error:
            print(f"[ERROR] {parsed.validation_error}", file=sys.stderr)
            sys.exit(3)
        if parsed is not None:
            override = parsed.to_override()

    snapshot = compute_margin_snapshot(
        args.mode,
        args.price,
        category_hint=args.category,
        sourcing_model=args.sourcing_model,
        live_fee=args.live_fee,
        override=override,
    )
    print(json.dumps(snapshot.as_dict(), indent=2, ensure_ascii=False))


def _cmd_anchor(args: argparse.Namespace) -> None:
    from .market_anchor import compute_market_anchor

    if args.units <= 0 or args.avg_price <= 0:
        print("[ERROR] --units and --avg-price must be positive.", file=sys.stderr)
        sys.exit(3)
    anchor = compute_market_anchor(args.units, args.avg_price, args.organic, args.sponsored)
    print(json.dumps(anchor.as_dict(), indent=2, ensure_ascii=False))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "page-one":
        _cmd_page_one(args)
    elif args.command == "fees":
        _cmd_fees(args)
    elif args.command == "margin":
        _cmd_margin(args)
    elif args.command == "anchor":
        _cmd_anchor(args)
    else:
        parser.print_help()
        sys.exit(0)

    sys.exit(0)


if __name__ == "__main__":
    main()
