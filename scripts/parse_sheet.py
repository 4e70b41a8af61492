#!/usr/bin/env python3
import argparse
import json
import logging
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from mealshare.balances import compute_balances, resolve_effective_rate
from mealshare.sheet import SheetFetchError, decode_csv_bytes, fetch_sheet_csv, parse_sheet_csv


def load_sheet_text(source, timeout):
    if source.startswith(("http://", "https://")):
        return fetch_sheet_csv(source, timeout=timeout)
    return decode_csv_bytes(Path(source).read_bytes()) or ""


def main():
    parser = argparse.ArgumentParser(description="Parse a meal sheet CSV and print people and balances as JSON")
    parser.add_argument("source", help="Path to a CSV export or a published sheet URL")
    parser.add_argument("--rate", type=float, default=None, help="Stored meal rate, used only when the sheet states none")
    parser.add_argument("--timeout", type=float, default=30, help="Fetch timeout in seconds for URLs")
    parser.add_argument("--verbose", action="store_true", help="Log parser decisions to stderr")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    try:
        text = load_sheet_text(args.source, args.timeout)
    except (SheetFetchError, OSError) as exc:
        print(f"[SHEET ERROR] {exc}", file=sys.stderr)
        return 1

    result = parse_sheet_csv(text)
    summary = compute_balances(result["people"], resolve_effective_rate(result["extracted_rate"], args.rate))
    print(json.dumps({"result": result, "summary": summary}, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
