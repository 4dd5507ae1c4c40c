#!/usr/bin/env python3
"""
Sample migration worker.

Simulates copying collections between two environments in batches. It does
not talk to any real database; it exists so the scheduler has something to
spawn locally.
"""

from __future__ import annotations

import argparse
import json
import os
import random
import time
from pathlib import Path
from typing import Dict, List, Optional

ENVIRONMENTS = ["development", "staging", "production", "custom"]
DEFAULT_COLLECTIONS = ["customers", "orders", "products", "invoices"]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Copy collections between environments (demo).")
    parser.add_argument("--source", required=True, choices=ENVIRONMENTS)
    parser.add_argument("--target", required=True, choices=ENVIRONMENTS)
    parser.add_argument("--batch-size", type=int, default=500)
    parser.add_argument("--collections", default="")
    parser.add_argument("--query")
    parser.add_argument("--include-users", action="store_true")
    parser.add_argument("--transform-data", action="store_true")
    parser.add_argument("--backup", action="store_true")
    parser.add_argument("--source-credentials")
    parser.add_argument("--target-credentials")
    parser.add_argument("--seed", type=int, default=7)
    parser.add_argument("--sleep-seconds", type=float, default=0.05)
    return parser.parse_args(argv)


def validate(args: argparse.Namespace) -> Optional[str]:
    if args.batch_size < 1:
        return "--batch-size must be >= 1"
    if args.source == args.target and args.source != "custom":
        return "--source and --target must differ"
    for label, env, credentials in (
        ("source", args.source, args.source_credentials),
        ("target", args.target, args.target_credentials),
    ):
        if env != "custom":
            continue
        if not credentials:
            return f"--{label}-credentials is required for a custom {label}"
        path = Path(credentials)
        if not path.is_file():
            return f"{label} credentials file not found: {path}"
        try:
            json.loads(path.read_text(encoding="utf-8"))
        except ValueError:
            return f"{label} credentials file is not valid JSON: {path}"
    return None


def plan_collections(args: argparse.Namespace) -> List[str]:
    names = [name.strip() for name in args.collections.split(",") if name.strip()]
    if not names:
        names = list(DEFAULT_COLLECTIONS)
    if args.include_users and "users" not in names:
        names.append("users")
    return names


def migrate_collection(name: str, batch_size: int, rng: random.Random, sleep_seconds: float) -> Dict[str, int]:
    documents = rng.randint(batch_size // 2 + 1, batch_size * 3)
    batches = 0
    written = 0
    while written < documents:
        chunk = min(batch_size, documents - written)
        written += chunk
        batches += 1
        print(f"  {name}: batch {batches} wrote {chunk} document(s) ({written}/{documents})")
        if sleep_seconds > 0:
            time.sleep(sleep_seconds)
    return {"documents": written, "batches": batches}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    problem = validate(args)
    if problem:
        print(f"Error: {problem}")
        return 1

    run_id = os.environ.get("FOREMAN_RUN_ID", "manual")
    print(f"[{run_id}] Migrating {args.source} -> {args.target} (batch size {args.batch_size})")
    if args.query:
        print(f"Filter: {args.query}")
    if args.backup:
        print(f"Backing up {args.target} before writing")
    if args.transform_data:
        print("Transforming documents for the target schema")

    rng = random.Random(args.seed)
    totals = {"documents": 0, "batches": 0}
    for name in plan_collections(args):
        print(f"Collection {name}:")
        stats = migrate_collection(name, args.batch_size, rng, args.sleep_seconds)
        totals["documents"] += stats["documents"]
        totals["batches"] += stats["batches"]

    print(
        f"Migration complete: documents={totals['documents']}, batches={totals['batches']}, "
        f"source={args.source}, target={args.target}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
