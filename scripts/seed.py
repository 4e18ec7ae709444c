"""Seed catalog items and provider product keys."""

from __future__ import annotations

import sys

from dotenv import load_dotenv

from marketsync.db.session import create_engine_from_env
from marketsync.market.catalog import CatalogRepository, load_catalog


def main() -> None:
    load_dotenv()
    limit = int(sys.argv[1]) if len(sys.argv) > 1 else None
    repository = CatalogRepository(create_engine_from_env())
    for seed in load_catalog(limit=limit):
        item_id = repository.ensure_item(seed)
        print(f"{seed.sku} -> catalog item {item_id}")
    print("Seed complete")


if __name__ == "__main__":
    main()
