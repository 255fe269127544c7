"""
Database Package - SQLAlchemy record store
==========================================

Tables backing the intake flows: profiles, guest documents, cases, documents.
"""

from .models import (
    Base,
    AuthUser, Profile, RevokedToken,
    GuestDocument, Case, Document, DocumentRequirement,
    UserRole, ProfileState, CaseStatus, DocumentStatus, AuthProvider,
)
from .session import get_db_session, init_db, get_engine, reset_engine, SessionLocal

__all__ = [
    # Base
    "Base",
    # Identity
    "AuthUser", "Profile", "RevokedToken",
    # Intake
    "GuestDocument", "Case", "Document", "DocumentRequirement",
    # Enums
    "UserRole", "ProfileState", "CaseStatus", "DocumentStatus", "AuthProvider",
    # Session
    "get_db_session", "init_db", "get_engine", "reset_engine", "SessionLocal",
]
