"""
UI Flow Handlers
================

Top-of-flow handlers the pages call. They own the error boundary: intake
errors from the orchestrator are logged here and turned into a redirect
outcome flag, never retried.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from .association import AssociationOrchestrator, AssociationStage
from .errors import IntakeError
from .requirements import build_checklist
from .state import CaseSummary, ClientState, PendingCaseDraft, PendingFileEntry

logger = logging.getLogger(__name__)

DASHBOARD = "/dashboard"
DASHBOARD_NEW_CASE = "/dashboard?new_case=success"
DASHBOARD_ASSOCIATION_FAILED = "/dashboard?error=association_failed"
LOGIN_AUTH_FAILED = "/login?error=auth_failed"
SIGNUP_TO_APPLY = "/signup?intent=apply"


@dataclass
class SubmitOutcome:
    redirect: Optional[str]
    submitted: bool
    error: Optional[str] = None


async def handle_auth_callback(
    state: ClientState,
    identity,
    client,
    orchestrator: AssociationOrchestrator,
    token: Optional[str],
) -> str:
    """
    Finish a sign-in: refresh the profile, move guest work into a case and
    pick the dashboard outcome flag.
    """
    session = identity.get_session(token)
    if session is None:
        logger.error("Auth error: no session found")
        return LOGIN_AUTH_FAILED

    try:
        await _refresh_profile(client, session)
        await state.fetch_user(identity, client, token)

        if state.session_id:
            logger.info(f"Associating guest documents for session {state.session_id[:8]}")
            result = await orchestrator.associate_guest_documents(state.session_id, session.user_id)
            if result.stage == AssociationStage.NO_OP and state.pending_case:
                await _finalize_pending(state, orchestrator, session.user_id)
            elif result.stage == AssociationStage.NO_OP:
                return DASHBOARD
            state.clear_application()
            return DASHBOARD_NEW_CASE

        if state.pending_case:
            await _finalize_pending(state, orchestrator, session.user_id)
            state.clear_application()
            return DASHBOARD_NEW_CASE
    except IntakeError:
        logger.exception("Failed to associate guest docs")
        return DASHBOARD_ASSOCIATION_FAILED

    return DASHBOARD


async def _refresh_profile(client, session) -> None:
    """Upsert the profile as logged in; metadata the token lacks keeps its stored value."""
    metadata = session.user_metadata or {}
    row = {
        "id": session.user_id,
        "email": session.email,
        "state": "logged in",
        "updated_at": datetime.utcnow(),
    }
    full_name = metadata.get("full_name")
    avatar_url = metadata.get("avatar_url") or metadata.get("picture")
    if full_name:
        row["full_name"] = full_name
    if avatar_url:
        row["avatar_url"] = avatar_url

    if "full_name" not in row and not await client.select("profiles", id=session.user_id):
        row["full_name"] = session.email.split("@")[0]
    await client.upsert("profiles", row)


async def _finalize_pending(state: ClientState, orchestrator: AssociationOrchestrator, user_id: str):
    logger.info(f"Found pending {state.pending_case.case_type} application, finalizing for user {user_id}")
    return await orchestrator.finalize_application(user_id, state.pending_case.case_type, state.pending_files)


async def submit_application(
    state: ClientState,
    orchestrator: AssociationOrchestrator,
    service_id: str,
    case_type: str,
    requirements: List[dict],
) -> SubmitOutcome:
    """Apply wizard submit: finalize when signed in, otherwise send to sign-up."""
    checklist = build_checklist(requirements, state)
    state.set_pending_case(PendingCaseDraft(
        service_id=service_id,
        case_type=case_type,
        files=[PendingFileEntry(id=f["id"], name=f["name"], uploaded=f["uploaded"]) for f in checklist],
    ))

    if state.user is None:
        return SubmitOutcome(redirect=SIGNUP_TO_APPLY, submitted=False)

    try:
        await orchestrator.finalize_application(state.user.id, case_type, state.pending_files)
    except IntakeError as e:
        logger.error(f"Failed to submit application: {e}")
        return SubmitOutcome(
            redirect=None,
            submitted=False,
            error="Failed to submit application. Please try again.",
        )

    state.set_pending_case(None)
    state.set_pending_files([])
    return SubmitOutcome(redirect=DASHBOARD, submitted=True)


async def load_dashboard(state: ClientState, client) -> List[dict]:
    """Cases of the signed-in client with document counts (newest first)."""
    if state.user is None:
        return []

    cases = await client.select("cases", order_by="created_at", client_id=state.user.id)
    cases.reverse()
    case_ids = [c["id"] for c in cases]
    documents = await client.select("documents", case_id=case_ids) if case_ids else []

    summaries = []
    cards = []
    for case in cases:
        docs = [d for d in documents if d["case_id"] == case["id"]]
        created_at = case["created_at"].isoformat() if case.get("created_at") else None
        summaries.append(CaseSummary(
            id=case["id"],
            title=case["title"],
            type=case["service_type"],
            status=case["status"],
            progress=case["progress"] or 0,
            client_id=case["client_id"],
            created_at=created_at,
        ))
        cards.append({
            "id": case["id"],
            "title": case["title"],
            "service_type": case["service_type"],
            "category": case["category"],
            "status": case["status"],
            "progress": case["progress"] or 0,
            "docs_ready": sum(1 for d in docs if d["status"] == "approved"),
            "docs_total": len(docs),
            "created_at": created_at,
        })

    state.set_cases(summaries)
    return cards
