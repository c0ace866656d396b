#!/usr/bin/env python3
"""
Load a pricing source and print what the agent would say for some ZIP codes.

Useful before pointing PRICING_SOURCE at a new sheet export: rows that fail to
parse are skipped, so the row count here is what callers will actually get.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.callbridge.intents import render_zip_reply
from src.callbridge.pricing import EtaPolicy, PricingLoadError, load_pricing_table


async def run(source: str, policy: str, codes: list[str], as_json: bool) -> int:
    try:
        table = await load_pricing_table(source, eta_policy=EtaPolicy(policy))
    except PricingLoadError as e:
        print(f"[ERR] {e}")
        return 1

    print(f"[OK] Loaded {len(table)} rows from {source}")

    for code in codes:
        entries = table.lookup_many([code])
        if as_json:
            payload = [dict(entry.to_dict(), eta=table.eta_for(entry)) for entry in entries]
            print(json.dumps({"zip": code, "results": payload}, indent=2))
        else:
            print(f"\n{code}: {render_zip_reply([code], entries, table)}")

    return 0


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("zips", nargs="*", help="ZIP codes to quote")
    parser.add_argument("--source", default="data/zip_rules.json", help="JSON/CSV path or http(s) URL")
    parser.add_argument("--eta-policy", default="minimum", choices=[p.value for p in EtaPolicy])
    parser.add_argument("--json", action="store_true", help="Print raw rows instead of spoken replies")
    args = parser.parse_args()

    return asyncio.run(run(args.source, args.eta_policy, args.zips, args.json))


if __name__ == "__main__":
    raise SystemExit(main())
