#!/usr/bin/env python3
"""
Find (and optionally delete) guest blobs no record points at.

A guest upload whose row insert failed leaves its blob behind. Migrated
documents keep their guests/ path, so a blob is only an orphan when neither
guest_documents nor documents references it. Blobs younger than
--min-age-seconds are skipped, since record_guest_upload writes the blob
before its row.

Safe by default (dry-run). Use --apply to delete.
"""

import argparse


def main() -> int:
    parser = argparse.ArgumentParser(description="Sweep orphan guest uploads.")
    parser.add_argument("--apply", action="store_true", help="Delete orphans (default: dry-run)")
    parser.add_argument("--prefix", default="guests/", help="Blob prefix to scan")
    parser.add_argument(
        "--min-age-seconds", type=int, default=3600,
        help="Skip blobs modified more recently than this (default: 3600)",
    )
    args = parser.parse_args()

    from lawpilot_intake.db.session import get_db_session, init_db
    from lawpilot_intake.db.models import Document, GuestDocument
    from lawpilot_intake.storage import find_orphan_keys, get_storage

    init_db()
    storage = get_storage()

    with get_db_session() as db:
        referenced = {row.file_path for row in db.query(GuestDocument.file_path).all()}
        referenced |= {row.file_path for row in db.query(Document.file_path).all()}

    orphans = find_orphan_keys(storage, referenced, prefix=args.prefix, min_age_seconds=args.min_age_seconds)
    for key in orphans:
        print(f"orphan: {key}")
        if args.apply:
            storage.delete(key)

    mode = "deleted" if args.apply else "found (dry-run)"
    print(f"{len(orphans)} orphan blob(s) {mode}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
