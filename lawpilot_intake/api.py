"""
Intake Service API
==================

HTTP surface for the apply wizard, sign-in and the client dashboard.

Each browser is identified by the `law-pilot-storage` cookie and gets its own
ClientState (guest session id, pending draft, pending file selections).
Signed-in requests carry `Authorization: Bearer <jwt>`.
"""

import uuid
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .association import AssociationOrchestrator, SessionLocks
from .config import get_settings
from .errors import IntakeError, RecordError, StorageError
from .flows import handle_auth_callback, load_dashboard, submit_application
from .identity import IdentityError, IdentityProvider, create_redis_client
from .middleware.security import SecurityHeadersMiddleware
from .persistence import PersistenceClient, get_persistence
from .recorder import get_signed_url, record_guest_upload, remove_guest_upload
from .requirements import build_checklist, get_document_requirements
from .state import ClientState, ClientStateRegistry, IncomingFile, create_registry
from .storage import resolve_signed_token

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class SessionResponse(BaseModel):
    session_id: str


class GuestUploadResponse(BaseModel):
    session_id: str
    file_path: str


class GuestDocumentResponse(BaseModel):
    id: str
    name: str
    file_type: Optional[str]
    case_type: str


class PendingFileResponse(BaseModel):
    doc_id: str
    name: str
    pending_count: int


class SubmitRequest(BaseModel):
    service_id: str = Field(..., min_length=1)
    case_type: str = Field(..., min_length=1)


class SubmitResponse(BaseModel):
    submitted: bool
    redirect: Optional[str] = None
    error: Optional[str] = None


class SignUpRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    full_name: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class OAuthCallbackRequest(BaseModel):
    """OpenID Connect id_token delivered by the OAuth redirect"""
    provider: str = "google"
    id_token: str = Field(..., min_length=1)


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    redirect: str


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    state: Optional[str] = None


class DashboardCase(BaseModel):
    id: str
    title: str
    service_type: str
    category: Optional[str]
    status: str
    progress: int
    docs_ready: int
    docs_total: int
    created_at: Optional[str] = None


class SignedUrlResponse(BaseModel):
    url: str
    expires_in: int


# =============================================================================
# DEPENDENCIES
# =============================================================================

_registry = create_registry()
_locks = SessionLocks()
_identity: Optional[IdentityProvider] = None


def get_client() -> PersistenceClient:
    return get_persistence()


def get_identity() -> IdentityProvider:
    global _identity
    if _identity is None:
        from .db.session import SessionLocal, get_engine

        get_engine()
        _identity = IdentityProvider(SessionLocal, create_redis_client(get_settings().redis_url))
    return _identity


def get_registry() -> ClientStateRegistry:
    return _registry


def get_orchestrator(client: PersistenceClient = Depends(get_client)) -> AssociationOrchestrator:
    return AssociationOrchestrator.from_settings(client, locks=_locks)


def get_browser_id(request: Request, response: Response) -> str:
    cookie_name = get_settings().browser_cookie_name
    browser_id = request.cookies.get(cookie_name)
    if not browser_id:
        browser_id = str(uuid.uuid4())
        response.set_cookie(cookie_name, browser_id, httponly=True, samesite="lax")
    return browser_id


def get_browser_state(
    browser_id: str = Depends(get_browser_id),
    registry: ClientStateRegistry = Depends(get_registry),
) -> ClientState:
    return registry.get(browser_id)


def get_bearer_token(authorization: Optional[str] = Header(None, alias="Authorization")) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def _raise_for_intake_error(e: IntakeError, action: str):
    if isinstance(e, StorageError):
        logger.error(f"{action}: storage error: {e}")
        raise HTTPException(status_code=502, detail=f"{action}: file storage unavailable")
    if isinstance(e, RecordError):
        logger.error(f"{action}: record error: {e}")
        raise HTTPException(status_code=502, detail=f"{action}: record store unavailable")
    logger.error(f"{action}: {e}")
    raise HTTPException(status_code=500, detail=action)


async def _read_upload(upload: UploadFile) -> IncomingFile:
    data = await upload.read()
    return IncomingFile(
        name=upload.filename or "upload",
        content_type=upload.content_type,
        data=data,
    )


router = APIRouter(prefix="/api")


# =============================================================================
# APPLY WIZARD
# =============================================================================

@router.post("/session", response_model=SessionResponse)
async def ensure_session(state: ClientState = Depends(get_browser_state)):
    """Create the anonymous guest session id if this browser has none."""
    return SessionResponse(session_id=state.ensure_session_id())


@router.get("/requirements")
async def requirements(
    case_type: str,
    state: ClientState = Depends(get_browser_state),
    client: PersistenceClient = Depends(get_client),
):
    reqs = await get_document_requirements(client, case_type)
    checklist = build_checklist(reqs, state)
    uploaded = sum(1 for item in checklist if item["uploaded"])
    return {
        "case_type": case_type,
        "requirements": reqs,
        "checklist": checklist,
        "progress_percent": round(uploaded / len(checklist) * 100) if checklist else 0,
    }


@router.post("/guest/uploads", response_model=GuestUploadResponse)
async def upload_guest_document(
    case_type: str = Form(...),
    file: UploadFile = File(...),
    state: ClientState = Depends(get_browser_state),
    client: PersistenceClient = Depends(get_client),
):
    """Upload a document before sign-in; it is scoped to the guest session."""
    session_id = state.ensure_session_id()
    incoming = await _read_upload(file)
    try:
        file_path = await record_guest_upload(client, incoming, session_id, case_type)
    except IntakeError as e:
        _raise_for_intake_error(e, "Upload failed")
    return GuestUploadResponse(session_id=session_id, file_path=file_path)


@router.get("/guest/uploads", response_model=List[GuestDocumentResponse])
async def list_guest_documents(
    state: ClientState = Depends(get_browser_state),
    client: PersistenceClient = Depends(get_client),
):
    if not state.session_id:
        return []
    try:
        rows = await client.select("guest_documents", order_by="created_at", session_id=state.session_id)
    except IntakeError as e:
        _raise_for_intake_error(e, "Listing failed")
    return [GuestDocumentResponse(**{k: r[k] for k in ("id", "name", "file_type", "case_type")}) for r in rows]


@router.delete("/guest/uploads/{guest_document_id}")
async def delete_guest_document(
    guest_document_id: str,
    state: ClientState = Depends(get_browser_state),
    client: PersistenceClient = Depends(get_client),
):
    if not state.session_id:
        raise HTTPException(status_code=404, detail="Guest document not found")
    try:
        removed = await remove_guest_upload(client, state.session_id, guest_document_id)
    except IntakeError as e:
        _raise_for_intake_error(e, "Remove failed")
    if not removed:
        raise HTTPException(status_code=404, detail="Guest document not found")
    return {"deleted": guest_document_id}


@router.post("/apply/files", response_model=PendingFileResponse)
async def select_pending_file(
    doc_id: str = Form(...),
    case_type: str = Form(...),
    file: UploadFile = File(...),
    state: ClientState = Depends(get_browser_state),
):
    """Hold a file for a checklist slot in memory until the application is submitted."""
    incoming = await _read_upload(file)
    state.select_file(doc_id, incoming, case_type)
    return PendingFileResponse(doc_id=doc_id, name=incoming.name, pending_count=len(state.pending_files))


@router.delete("/apply/files/{doc_id}")
async def remove_pending_file(doc_id: str, state: ClientState = Depends(get_browser_state)):
    state.remove_file(doc_id)
    return {"removed": doc_id, "pending_count": len(state.pending_files)}


@router.post("/apply/submit", response_model=SubmitResponse)
async def submit(
    body: SubmitRequest,
    token: Optional[str] = Depends(get_bearer_token),
    state: ClientState = Depends(get_browser_state),
    client: PersistenceClient = Depends(get_client),
    identity: IdentityProvider = Depends(get_identity),
    orchestrator: AssociationOrchestrator = Depends(get_orchestrator),
):
    try:
        await state.fetch_user(identity, client, token)
    except IntakeError as e:
        _raise_for_intake_error(e, "Submit failed")
    reqs = await get_document_requirements(client, body.case_type)
    outcome = await submit_application(state, orchestrator, body.service_id, body.case_type, reqs)
    return SubmitResponse(submitted=outcome.submitted, redirect=outcome.redirect, error=outcome.error)


# =============================================================================
# AUTH
# =============================================================================

async def _complete_sign_in(session, state, identity, client, orchestrator) -> AuthResponse:
    redirect = await handle_auth_callback(state, identity, client, orchestrator, session.access_token)
    return AuthResponse(access_token=session.access_token, redirect=redirect)


@router.post("/auth/signup", response_model=AuthResponse)
async def sign_up(
    body: SignUpRequest,
    state: ClientState = Depends(get_browser_state),
    client: PersistenceClient = Depends(get_client),
    identity: IdentityProvider = Depends(get_identity),
    orchestrator: AssociationOrchestrator = Depends(get_orchestrator),
):
    try:
        session = identity.sign_up(body.email, body.password, body.full_name)
    except IdentityError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return await _complete_sign_in(session, state, identity, client, orchestrator)


@router.post("/auth/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    state: ClientState = Depends(get_browser_state),
    client: PersistenceClient = Depends(get_client),
    identity: IdentityProvider = Depends(get_identity),
    orchestrator: AssociationOrchestrator = Depends(get_orchestrator),
):
    session = identity.sign_in_with_password(body.email, body.password)
    if session is None:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return await _complete_sign_in(session, state, identity, client, orchestrator)


@router.post("/auth/callback", response_model=AuthResponse)
async def oauth_callback(
    body: OAuthCallbackRequest,
    state: ClientState = Depends(get_browser_state),
    client: PersistenceClient = Depends(get_client),
    identity: IdentityProvider = Depends(get_identity),
    orchestrator: AssociationOrchestrator = Depends(get_orchestrator),
):
    try:
        session = identity.sign_in_with_oauth(body.provider, body.id_token)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unsupported provider: {body.provider}")
    except IdentityError as e:
        logger.warning(f"OAuth callback rejected: {e}")
        raise HTTPException(status_code=401, detail="Could not verify sign-in with provider")
    return await _complete_sign_in(session, state, identity, client, orchestrator)


@router.post("/auth/signout")
async def sign_out(
    token: Optional[str] = Depends(get_bearer_token),
    state: ClientState = Depends(get_browser_state),
    client: PersistenceClient = Depends(get_client),
    identity: IdentityProvider = Depends(get_identity),
    browser_id: str = Depends(get_browser_id),
    registry: ClientStateRegistry = Depends(get_registry),
):
    try:
        await state.sign_out(identity, client, token)
    except IntakeError as e:
        _raise_for_intake_error(e, "Sign-out failed")
    registry.discard(browser_id)
    return {"signed_out": True}


@router.get("/me", response_model=UserResponse)
async def me(
    token: Optional[str] = Depends(get_bearer_token),
    state: ClientState = Depends(get_browser_state),
    client: PersistenceClient = Depends(get_client),
    identity: IdentityProvider = Depends(get_identity),
):
    try:
        user = await state.fetch_user(identity, client, token)
    except IntakeError as e:
        _raise_for_intake_error(e, "Profile lookup failed")
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return UserResponse(**user.__dict__)


# =============================================================================
# DASHBOARD & FILES
# =============================================================================

@router.get("/dashboard", response_model=List[DashboardCase])
async def dashboard(
    token: Optional[str] = Depends(get_bearer_token),
    state: ClientState = Depends(get_browser_state),
    client: PersistenceClient = Depends(get_client),
    identity: IdentityProvider = Depends(get_identity),
):
    try:
        if await state.fetch_user(identity, client, token) is None:
            raise HTTPException(status_code=401, detail="Authentication required")
        cards = await load_dashboard(state, client)
    except IntakeError as e:
        _raise_for_intake_error(e, "Dashboard failed")
    return [DashboardCase(**card) for card in cards]


@router.get("/documents/{document_id}/signed-url", response_model=SignedUrlResponse)
async def document_signed_url(
    document_id: str,
    token: Optional[str] = Depends(get_bearer_token),
    client: PersistenceClient = Depends(get_client),
    identity: IdentityProvider = Depends(get_identity),
):
    session = identity.get_session(token)
    if session is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    ttl = get_settings().signed_url_ttl
    try:
        docs = await client.select("documents", id=document_id)
        owned = docs and await client.select("cases", id=docs[0]["case_id"], client_id=session.user_id)
        if not owned:
            raise HTTPException(status_code=404, detail="Document not found")
        url = await get_signed_url(client, docs[0]["file_path"], ttl)
    except IntakeError as e:
        _raise_for_intake_error(e, "Signing failed")
    return SignedUrlResponse(url=url, expires_in=ttl)


async def _file_type_for(client: PersistenceClient, path: str) -> str:
    """MIME type recorded for a blob path (case document first, then guest upload)."""
    for table in ("documents", "guest_documents"):
        rows = await client.select(table, file_path=path)
        if rows and rows[0]["file_type"]:
            return rows[0]["file_type"]
    return "application/octet-stream"


@router.get("/files/{file_token}")
async def download_file(file_token: str, client: PersistenceClient = Depends(get_client)):
    path = resolve_signed_token(file_token)
    if not path:
        raise HTTPException(status_code=403, detail="Invalid or expired link")
    try:
        data = await client.download(path)
        if data is None:
            raise HTTPException(status_code=404, detail="File not found")
        media_type = await _file_type_for(client, path)
    except IntakeError as e:
        _raise_for_intake_error(e, "Download failed")
    return Response(content=data, media_type=media_type)


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Law Pilot Intake Service",
    description="Client intake: guest uploads, sign-in association and case dashboard",
    version=get_settings().service_version,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.include_router(router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": get_settings().service_version}


@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    from .db.session import init_db

    settings = get_settings()
    logger.info(f"Starting Law Pilot Intake Service v{settings.service_version}")
    for warning in settings.validate_storage_config():
        logger.warning(warning)
    init_db()
