"""
Document requirements per case type, used to build the apply checklist.
"""

import logging
from typing import Dict, List

from .errors import RecordError

logger = logging.getLogger(__name__)

# Checklist used when a case type has no requirements on record
DEFAULT_REQUIREMENTS: List[Dict[str, str]] = [
    {"id": "doc-1", "name": "Passport (Biographical Page)", "category": "Identification"},
    {"id": "doc-2", "name": "Birth Certificate", "category": "Civil Document"},
    {"id": "doc-3", "name": "Previous Visa / Exit Stamps (if any)", "category": "Supporting"},
]


async def get_document_requirements(client, case_type: str) -> List[Dict[str, str]]:
    try:
        rows = await client.select("document_requirements", order_by="sort_order", case_type=case_type)
    except RecordError as e:
        logger.warning(f"Requirement lookup failed for {case_type}, using defaults: {e}")
        rows = []

    if not rows:
        return [dict(r) for r in DEFAULT_REQUIREMENTS]
    return [{"id": r["id"], "name": r["name"], "category": r["category"]} for r in rows]


def build_checklist(requirements: List[Dict[str, str]], state) -> List[Dict]:
    """Mark each requirement uploaded when a pending file fills its slot."""
    selected = {p.id: p for p in state.pending_files}
    checklist = []
    for req in requirements:
        pending = selected.get(req["id"])
        checklist.append({
            "id": req["id"],
            "name": pending.file.name if pending else req["name"],
            "required_type": req.get("category"),
            "uploaded": pending is not None,
        })
    return checklist
