"""
SQLAlchemy Models for Database
==============================

Record collections used by the intake flows:
- Identity accounts and client profiles
- Guest documents uploaded before login (scoped by anonymous session id)
- Cases and their documents (owned by an authenticated client)
- Document requirements per case type
- Revoked access tokens

Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

import enum
from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, DateTime, Enum, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship, declarative_base
import uuid

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, enum.Enum):
    """Profile role"""
    CLIENT = "client"
    LAWYER = "lawyer"
    ADMIN = "admin"


class ProfileState(str, enum.Enum):
    """Login state recorded on the profile"""
    LOGGED_IN = "logged in"
    LOGGED_OUT = "logged out"


class CaseStatus(str, enum.Enum):
    """Case lifecycle status"""
    ACTIVE = "active"
    PENDING = "pending"
    CLOSED = "closed"
    IN_REVIEW = "in_review"


class DocumentStatus(str, enum.Enum):
    """Document review status"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AuthProvider(str, enum.Enum):
    """How an account signs in"""
    EMAIL = "email"
    GOOGLE = "google"


# =============================================================================
# IDENTITY
# =============================================================================

class AuthUser(Base):
    """Identity provider account"""
    __tablename__ = "auth_users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=True)  # None for OAuth-only accounts
    provider = Column(Enum(AuthProvider, values_callable=lambda e: [m.value for m in e]),
                      default=AuthProvider.EMAIL, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Profile(Base):
    """Client profile, keyed by the identity id"""
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), nullable=True)
    full_name = Column(String(255), nullable=True)
    avatar_url = Column(String(1000), nullable=True)
    role = Column(Enum(UserRole, values_callable=lambda e: [m.value for m in e]),
                  default=UserRole.CLIENT, nullable=False)
    state = Column(Enum(ProfileState, values_callable=lambda e: [m.value for m in e]), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class RevokedToken(Base):
    """Access token revoked by sign-out"""
    __tablename__ = "revoked_tokens"

    jti = Column(String(36), primary_key=True)
    expires_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# GUEST UPLOADS
# =============================================================================

class GuestDocument(Base):
    """File uploaded by an anonymous visitor during the apply wizard"""
    __tablename__ = "guest_documents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    session_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)
    file_type = Column(String(100), nullable=True)
    case_type = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_guest_document_session", "session_id"),
    )


# =============================================================================
# CASES
# =============================================================================

class Case(Base):
    """Client case created from an intake application"""
    __tablename__ = "cases"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    client_id = Column(String(36), nullable=False)
    title = Column(String(255), nullable=False)
    service_type = Column(String(255), nullable=False)
    category = Column(String(100), nullable=True)
    status = Column(Enum(CaseStatus, values_callable=lambda e: [m.value for m in e]),
                    default=CaseStatus.PENDING, nullable=False)
    progress = Column(Integer, default=0)  # 0-100

    # Guest session the case was associated from (None for finalize)
    source_session_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_case_client", "client_id"),
        Index("ix_case_source_session", "client_id", "source_session_id"),
    )

    documents = relationship("Document", back_populates="case", cascade="all, delete-orphan")


class Document(Base):
    """Document attached to a case"""
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)
    file_type = Column(String(100), nullable=True)
    status = Column(Enum(DocumentStatus, values_callable=lambda e: [m.value for m in e]),
                    default=DocumentStatus.PENDING, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_document_case_status", "case_id", "status"),
    )

    case = relationship("Case", back_populates="documents")


class DocumentRequirement(Base):
    """Document a case type asks the client to provide"""
    __tablename__ = "document_requirements"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_type = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    category = Column(String(100), nullable=True)
    sort_order = Column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("case_type", "name", name="uq_requirement_case_type_name"),
    )
