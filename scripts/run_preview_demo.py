#!/usr/bin/env python3
"""Preview (and optionally create) a settlement against the local demo backend."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from datetime import date
from pathlib import Path

import httpx

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from settlements.client import HttpSettlementBackend
from settlements.config import load_settings
from settlements.demo_backend import create_app, load_dataset
from settlements.models import SettlementFilters
from settlements.reconciler import SettlementReconciler


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run a settlement preview against local CSV data.")
    p.add_argument("--data-dir", type=Path, default=Path("data"))
    p.add_argument("--db", type=Path, default=None, help="sqlite file for created settlements")
    p.add_argument("--insurer", type=int, default=1)
    p.add_argument("--from", dest="date_from", type=date.fromisoformat, required=True)
    p.add_argument("--to", dest="date_to", type=date.fromisoformat, required=True)
    p.add_argument("--exclude", type=int, default=0, help="exclude the first N rows of each agreement")
    p.add_argument("--create", action="store_true", help="confirm and persist the settlement")
    p.add_argument("--output", type=Path, default=None, help="Optional path to write JSON output")
    return p.parse_args()


async def run(args: argparse.Namespace) -> dict:
    demo = create_app(load_dataset(args.data_dir), db_path=args.db or args.data_dir / "settlements.db")
    transport = httpx.ASGITransport(app=demo)
    settings = load_settings(min_visible_ms=0)
    async with httpx.AsyncClient(transport=transport, base_url="http://demo/api") as client:
        reconciler = SettlementReconciler(HttpSettlementBackend(client, settings), settings=settings)
        draft = await reconciler.preview(SettlementFilters(args.insurer, args.date_from, args.date_to))
        await reconciler.settle()

        if args.exclude:
            for aggregate in list(draft.aggregates):
                if aggregate.page_count == 0:
                    continue
                view = await reconciler.get_page(aggregate.cache_handle, 0)
                reconciler.exclude(aggregate.cache_handle, [r.id for r in view.rows[: args.exclude]])

        totals = reconciler.current_totals()
        result: dict = {
            "insurer": draft.insurer_name,
            "aggregates": [asdict(a) for a in reconciler.draft.aggregates] if reconciler.draft else [],
            "excluded_ids": reconciler.excluded_ids(),
            "total_included_count": totals.total_included_count,
            "total_amount": str(totals.total_amount),
        }
        if args.create:
            result["settlement_id"] = await reconciler.confirm_and_create()
        result["notices"] = [asdict(n) for n in reconciler.notices]
        return result


def main() -> None:
    args = parse_args()
    result = asyncio.run(run(args))
    text = json.dumps(result, indent=2, default=str)
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(text, encoding="utf-8")
    else:
        print(text)


if __name__ == "__main__":
    main()
