#!/usr/bin/env python3
"""
Report documents whose stored versions or audit trail are inconsistent.

Checks:
- more than one published version per document
- more than one draft/pending_review version per document
- audit entries that do not chain (from_status != previous to_status)
- versions whose status disagrees with their last audit entry, or have none

Usage:
    python scripts/check_invariants.py
    python scripts/check_invariants.py --document-id 12 --json

Exit code 1 when any violation is found.
"""
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.docflow.modules.versioning.integrity import find_violations  # noqa: E402
from scripts._db_utils import resolve_db_url, script_session  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--database-url", default=None, help="Defaults to DATABASE_URL")
    parser.add_argument("--document-id", type=int, default=None, help="Only report this document")
    parser.add_argument("--json", action="store_true", help="Print violations as JSON")
    args = parser.parse_args()

    with script_session(resolve_db_url(args.database_url)) as s:
        violations = find_violations(s)
    if args.document_id is not None:
        violations = [v for v in violations if v.document_id == args.document_id]

    if args.json:
        print(json.dumps([asdict(v) for v in violations], indent=2))
    elif not violations:
        print("No violations found.")
    else:
        print(f"Found {len(violations)} violation(s):\n")
        for v in violations:
            where = f"document {v.document_id}" + (f" version {v.version_id}" if v.version_id is not None else "")
            print(f"  [{v.kind}] {where}: {v.message}")

    sys.exit(1 if violations else 0)


if __name__ == "__main__":
    main()
