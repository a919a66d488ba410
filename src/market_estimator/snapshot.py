"""Page-one snapshot persistence, retrieval and retention management."""

from __future__ import annotations

import logging
import re
from datetime import date
from pathlib import Path

import pandas as pd

from .models import CanonicalProduct
from .normalize import normalize_keyword

logger = logging.getLogger(__name__)

_SNAPSHOT_RE = re.compile(r"^page_one_(?P<slug>[a-z0-9_]+)__(?P<market>[A-Za-z0-9]+)_(?P<date>\d{8})\.csv$")
_SLUG_RE = re.compile(r"[^a-z0-9]+")

COLUMNS = [
    "rank",
    "asin",
    "title",
    "price",
    "rating",
    "review_count",
    "bsr",
    "estimated_monthly_units",
    "estimated_monthly_revenue",
    "revenue_share_pct",
    "fulfillment",
    "brand",
    "seller_country",
    "snapshot_inferred",
    "snapshot_inferred_fields",
]


def keyword_slug(keyword: str) -> str:
    slug = _SLUG_RE.sub("_", normalize_keyword(keyword)).strip("_")
    return slug or "blank"


def _snapshot_path(snapshots_dir: Path, keyword: str, marketplace: str, run_date: date) -> Path:
    return snapshots_dir / (
        f"page_one_{keyword_slug(keyword)}__{marketplace}_{run_date.strftime('%Y%m%d')}.csv"
    )


def products_to_frame(products: list[CanonicalProduct]) -> pd.DataFrame:
    records = []
    for p in products:
        row = p.as_dict()
        row["snapshot_inferred_fields"] = "|".join(p.snapshot_inferred_fields)
        records.append(row)
    return pd.DataFrame(records, columns=COLUMNS)


def save_page_snapshot(
    products: list[CanonicalProduct],
    snapshots_dir: str | Path,
    keyword: str,
    marketplace: str = "US",
    run_date: date | None = None,
) -> Path:
    """Persist a built page as a dated CSV. Returns the written path."""
    if run_date is None:
        run_date = date.today()
    snapshots_dir = Path(snapshots_dir)
    snapshots_dir.mkdir(parents=True, exist_ok=True)
    path = _snapshot_path(snapshots_dir, keyword, marketplace, run_date)
    products_to_frame(products).to_csv(path, index=False)
    logger.info("Snapshot saved: %s (%d rows)", path, len(products))
    return path


def load_page_snapshot(path: str | Path) -> pd.DataFrame:
    """Load a page snapshot CSV; inferred-field lists come back as Python lists."""
    df = pd.read_csv(Path(path), dtype={"asin": str, "title": str, "brand": str})
    df["snapshot_inferred_fields"] = (
        df["snapshot_inferred_fields"].fillna("").map(lambda s: [f for f in str(s).split("|") if f])
    )
    return df


def list_page_snapshots(
    snapshots_dir: str | Path,
    keyword: str | None = None,
    marketplace: str | None = None,
) -> list[Path]:
    """Return matching snapshot paths sorted oldest-first."""
    snapshots_dir = Path(snapshots_dir)
    if not snapshots_dir.exists():
        return []
    slug = keyword_slug(keyword) if keyword is not None else None
    paths = []
    for p in snapshots_dir.iterdir():
        m = _SNAPSHOT_RE.match(p.name)
        if not m:
            continue
        if slug is not None and m.group("slug") != slug:
            continue
        if marketplace is not None and m.group("market") != marketplace:
            continue
        paths.append((m.group("date"), p))
    return [p for _, p in sorted(paths, key=lambda item: (item[0], item[1].name))]


def find_previous_page_snapshot(
    snapshots_dir: str | Path,
    keyword: str,
    marketplace: str = "US",
    current_date: date | None = None,
) -> Path | None:
    """
    Return the most recent snapshot for the keyword older than current_date.
    If current_date is None, returns the second-to-last snapshot (treating the last as current).
    """
    all_snaps = list_page_snapshots(snapshots_dir, keyword, marketplace)
    if not all_snaps:
        return None

    if current_date is None:
        return all_snaps[-2] if len(all_snaps) >= 2 else None

    target = current_date.strftime("%Y%m%d")
    before = [p for p in all_snaps if _SNAPSHOT_RE.match(p.name).group("date") < target]  # type: ignore[union-attr]
    return before[-1] if before else None


def apply_retention(
    snapshots_dir: str | Path,
    keyword: str,
    marketplace: str = "US",
    retain: int = 12,
) -> list[Path]:
    """Delete the oldest snapshots for one keyword beyond ``retain``. Returns deleted paths."""
    keep = max(retain, 1)
    all_snaps = list_page_snapshots(snapshots_dir, keyword, marketplace)
    to_delete = all_snaps[:-keep] if len(all_snaps) > keep else []
    for p in to_delete:
        p.unlink()
        logger.info("Deleted old snapshot: %s", p)
    return to_delete
