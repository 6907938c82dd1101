#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from collections import Counter
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backoffice.office_core.catalog import CatalogValidationError, load_catalog_file, parse_products
from backoffice.office_core.config import get_settings
from backoffice.office_core.store import PRODUCTS, CollectionStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replace the product catalog from a YAML or JSON file")
    parser.add_argument("path", type=Path, help="Catalog file (.yaml, .yml or .json)")
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Collection directory (default: DATA_DIR or ./data)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Validate only, do not write")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        items = load_catalog_file(args.path)
    except FileNotFoundError as exc:
        print(f"[ERROR] Catalog file not found: {exc.filename}", file=sys.stderr)
        return 1
    except CatalogValidationError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1

    products = parse_products(items)
    by_category = Counter(item.category or "-" for item in products)
    out_of_stock = sum(1 for item in products if not item.in_stock)

    print(f"[OK] Catalog is valid: {len(products)} products ({out_of_stock} out of stock)")
    print("[INFO] Products by category:")
    for category, count in sorted(by_category.items()):
        print(f"  - {category}: {count}")

    if args.dry_run:
        return 0

    store = CollectionStore(args.data_dir or get_settings().data_dir)
    store.write(PRODUCTS, items)
    print(f"[OK] Wrote {len(items)} products to {store.path_for(PRODUCTS)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
