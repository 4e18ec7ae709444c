"""Run one sync pass for a catalog item and print the outcome."""

from __future__ import annotations

import argparse
import asyncio
import logging

from marketsync.jobs.sync import run_sync_item


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("catalog_item_id", type=int)
    parser.add_argument("--provider", default="alias")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    outcome = asyncio.run(run_sync_item(args.catalog_item_id, args.provider))
    print(
        f"{outcome.mode} sync {'succeeded' if outcome.success else 'failed'}: "
        f"{outcome.variants_synced} variants, {outcome.market_data_refreshed}/{outcome.total_variants} refreshed, "
        f"{outcome.history_inserted} history rows, {outcome.sales_inserted} sales"
    )
    for error in outcome.errors:
        print(f"  [{error.stage}] {error.region or '-'} {error.message}")


if __name__ == "__main__":
    main()
