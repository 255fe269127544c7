#!/usr/bin/env python3
"""
Load document requirements per case type from a JSON file:

    {"H-1B Work Visa": [{"name": "Passport", "category": "Identification"}, ...]}

Existing (case_type, name) pairs are left alone.
"""

import argparse
import json


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed document requirements.")
    parser.add_argument("path", help="JSON file mapping case type to requirement list")
    args = parser.parse_args()

    from lawpilot_intake.db.session import get_db_session, init_db
    from lawpilot_intake.db.models import DocumentRequirement

    init_db()

    with open(args.path, "r", encoding="utf-8") as f:
        data = json.load(f)

    created = 0
    with get_db_session() as db:
        for case_type, items in data.items():
            for order, item in enumerate(items):
                exists = db.query(DocumentRequirement).filter(
                    DocumentRequirement.case_type == case_type,
                    DocumentRequirement.name == item["name"],
                ).first()
                if exists:
                    continue
                db.add(DocumentRequirement(
                    case_type=case_type,
                    name=item["name"],
                    category=item.get("category"),
                    sort_order=item.get("sort_order", order),
                ))
                created += 1

    print(f"Created {created} requirement(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
