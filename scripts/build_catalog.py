"""Regenerate totlpush/catalog/catalog.json from the markdown sources."""

import argparse
import json
from pathlib import Path

from totlpush.catalog.build import build_catalog, write_catalog
from totlpush.catalog.catalog import DEFAULT_CATALOG_PATH


def main() -> None:
    parser = argparse.ArgumentParser(description="Build the notification catalog JSON.")
    parser.add_argument("--source", default="catalog_src/notifications")
    parser.add_argument("--output", default=str(DEFAULT_CATALOG_PATH))
    parser.add_argument("--check", action="store_true", help="Fail if the output file is out of date")
    args = parser.parse_args()

    try:
        catalog = build_catalog(args.source)
    except ValueError as exc:
        raise SystemExit(f"catalog build failed: {exc}") from exc

    if args.check:
        current = json.loads(Path(args.output).read_text(encoding="utf-8"))
        if current != catalog:
            raise SystemExit(f"{args.output} is stale; run scripts/build_catalog.py")
        print(f"{args.output} is up to date ({len(catalog)} entries)")
        return

    path = write_catalog(catalog, args.output)
    print(f"Wrote {len(catalog)} entries to {path}")


if __name__ == "__main__":
    main()
