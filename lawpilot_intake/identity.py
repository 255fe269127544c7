"""
Identity Provider
=================

Email/password and OAuth sign-in, issuing JWT access tokens. OAuth sign-in
only accepts a provider id_token whose signature, audience and issuer verify.

Session lifecycle:
1. sign_up / sign_in_with_password / sign_in_with_oauth -> AuthSession
2. get_session(token) validates signature, expiry and revocation
3. sign_out(token) revokes the token's jti (database, plus Redis when configured)
"""

import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Sequence

import jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .db.models import AuthProvider, AuthUser, Profile, ProfileState, RevokedToken

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

REVOKED_PREFIX = "token:revoked:"

GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError) as e:
        logger.warning(f"Password verification error: {e}")
        return False


@dataclass
class AuthSession:
    """Authenticated identity carried by an access token"""
    access_token: str
    user_id: str
    email: str
    expires_at: datetime
    user_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OAuthProfile:
    """Claims of a verified provider id_token"""
    provider: str
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    picture: Optional[str] = None


class IdentityError(Exception):
    """Sign-up/sign-in rejected"""


class OAuthTokenVerifier:
    """
    Verifies an OpenID Connect id_token issued by one provider.

    The signature is checked against the provider's published signing keys
    (JWKS), then audience (our client id), issuer, expiry and a verified
    email are required. `key_resolver(token) -> key` replaces the JWKS
    lookup when the keys are known up front.
    """

    def __init__(
        self,
        provider: str,
        client_id: str,
        issuers: Sequence[str],
        jwks_url: Optional[str] = None,
        key_resolver: Optional[Callable[[str], Any]] = None,
        algorithms: Sequence[str] = ("RS256",),
    ):
        self.provider = provider
        self.client_id = client_id
        self.issuers = tuple(issuers)
        self.algorithms = list(algorithms)
        if key_resolver is None:
            if not jwks_url:
                raise ValueError(f"{provider}: jwks_url or key_resolver is required")
            jwks_client = jwt.PyJWKClient(jwks_url)

            def key_resolver(token: str):
                return jwks_client.get_signing_key_from_jwt(token).key
        self._resolve_key = key_resolver

    def verify(self, id_token: str) -> OAuthProfile:
        try:
            claims = jwt.decode(
                id_token,
                self._resolve_key(id_token),
                algorithms=self.algorithms,
                audience=self.client_id,
                options={"require": ["exp", "iss", "aud", "email"]},
            )
        except jwt.PyJWTError as e:
            raise IdentityError(f"Invalid {self.provider} id_token: {e}") from e

        if claims["iss"] not in self.issuers:
            raise IdentityError(f"Unexpected {self.provider} issuer: {claims['iss']}")
        if claims.get("email_verified") is not True:
            raise IdentityError(f"{self.provider} email is not verified")

        return OAuthProfile(
            provider=self.provider,
            email=claims["email"],
            full_name=claims.get("name"),
            picture=claims.get("picture"),
        )


def default_oauth_verifiers() -> Dict[str, OAuthTokenVerifier]:
    """Verifiers for the providers configured in settings."""
    settings = get_settings()
    verifiers: Dict[str, OAuthTokenVerifier] = {}
    if settings.google_client_id:
        verifiers["google"] = OAuthTokenVerifier(
            "google",
            settings.google_client_id,
            GOOGLE_ISSUERS,
            jwks_url=settings.google_jwks_url,
        )
    return verifiers


class IdentityProvider:

    def __init__(
        self,
        session_factory: sessionmaker,
        redis_client=None,
        oauth_verifiers: Optional[Dict[str, OAuthTokenVerifier]] = None,
    ):
        self._session_factory = session_factory
        self._redis = redis_client
        self.settings = get_settings()
        self.oauth_verifiers = default_oauth_verifiers() if oauth_verifiers is None else oauth_verifiers

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def _issue(self, user: AuthUser, metadata: Optional[Dict[str, Any]] = None) -> AuthSession:
        expires_at = datetime.utcnow() + timedelta(minutes=self.settings.access_token_expire_minutes)
        metadata = metadata or {}
        payload = {
            "sub": user.id,
            "email": user.email,
            "jti": str(uuid.uuid4()),
            "type": "access",
            "exp": expires_at,
            "user_metadata": metadata,
        }
        token = jwt.encode(payload, self.settings.jwt_secret_key, algorithm=self.settings.jwt_algorithm)
        return AuthSession(
            access_token=token,
            user_id=user.id,
            email=user.email,
            expires_at=expires_at,
            user_metadata=metadata,
        )

    def _decode(self, token: str) -> Optional[dict]:
        try:
            payload = jwt.decode(token, self.settings.jwt_secret_key, algorithms=[self.settings.jwt_algorithm])
        except jwt.PyJWTError as e:
            logger.warning(f"Invalid JWT token: {e}")
            return None
        if payload.get("type") != "access":
            return None
        return payload

    def get_session(self, token: Optional[str]) -> Optional[AuthSession]:
        if not token:
            return None
        payload = self._decode(token)
        if not payload or self.is_revoked(payload.get("jti")):
            return None
        return AuthSession(
            access_token=token,
            user_id=payload["sub"],
            email=payload.get("email", ""),
            expires_at=datetime.utcfromtimestamp(payload["exp"]),
            user_metadata=payload.get("user_metadata") or {},
        )

    def get_user(self, token: Optional[str]) -> Optional[AuthUser]:
        session = self.get_session(token)
        if session is None:
            return None
        db: Session = self._session_factory()
        try:
            return db.get(AuthUser, session.user_id)
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Revocation
    # -------------------------------------------------------------------------

    def is_revoked(self, jti: Optional[str]) -> bool:
        if not jti:
            return True
        if self._redis is not None:
            try:
                if self._redis.exists(f"{REVOKED_PREFIX}{jti}"):
                    return True
            except Exception as e:
                logger.warning(f"Redis revocation check failed: {e}")

        db: Session = self._session_factory()
        try:
            return db.get(RevokedToken, jti) is not None
        finally:
            db.close()

    def sign_out(self, token: str) -> bool:
        payload = self._decode(token)
        if not payload:
            return False
        jti = payload["jti"]
        expires_at = datetime.utcfromtimestamp(payload["exp"])

        db: Session = self._session_factory()
        try:
            if db.get(RevokedToken, jti) is None:
                db.add(RevokedToken(jti=jti, expires_at=expires_at))
                db.commit()
        finally:
            db.close()

        if self._redis is not None:
            try:
                ttl_seconds = max(int((expires_at - datetime.utcnow()).total_seconds()), 60)
                self._redis.setex(f"{REVOKED_PREFIX}{jti}", ttl_seconds, "access")
            except Exception as e:
                logger.warning(f"Redis revocation add failed: {e}")

        logger.info(f"Signed out user {payload['sub']}")
        return True

    # -------------------------------------------------------------------------
    # Sign-up / sign-in
    # -------------------------------------------------------------------------

    def sign_up(self, email: str, password: str, full_name: Optional[str] = None) -> AuthSession:
        email = email.strip().lower()
        db: Session = self._session_factory()
        try:
            if db.query(AuthUser).filter(AuthUser.email == email).first():
                raise IdentityError("An account with this email already exists")

            user = AuthUser(email=email, password_hash=get_password_hash(password), provider=AuthProvider.EMAIL)
            db.add(user)
            db.flush()
            db.add(Profile(
                id=user.id,
                email=email,
                full_name=full_name or email.split("@")[0],
                state=ProfileState.LOGGED_IN,
            ))
            db.commit()
            logger.info(f"Signed up user {user.id}")
            return self._issue(user, {"full_name": full_name})
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def sign_in_with_password(self, email: str, password: str) -> Optional[AuthSession]:
        email = email.strip().lower()
        db: Session = self._session_factory()
        try:
            user = db.query(AuthUser).filter(AuthUser.email == email).first()
            if not user or not user.password_hash:
                logger.warning(f"Auth failed: no password account for {email}")
                return None
            if not verify_password(password, user.password_hash):
                logger.warning(f"Auth failed: invalid password for user {user.id}")
                return None
            # Carry the stored profile so the sign-in callback does not overwrite it
            profile = db.get(Profile, user.id)
            metadata = {}
            if profile is not None:
                metadata = {"full_name": profile.full_name, "avatar_url": profile.avatar_url}
            return self._issue(user, metadata)
        finally:
            db.close()

    def sign_in_with_oauth(self, provider: str, id_token: str) -> AuthSession:
        """
        Complete an OAuth redirect from the provider's id_token: verify it,
        find or provision the account, issue a session.

        Raises ValueError for a provider that is not configured and
        IdentityError when the token does not verify or the email belongs to
        an account that signs in another way.
        """
        verifier = self.oauth_verifiers.get(provider)
        if verifier is None:
            raise ValueError(f"Unsupported OAuth provider: {provider}")
        profile = verifier.verify(id_token)
        account_provider = AuthProvider(profile.provider)

        email = profile.email.strip().lower()
        db: Session = self._session_factory()
        try:
            user = db.query(AuthUser).filter(AuthUser.email == email).first()
            if user is None:
                user = AuthUser(email=email, provider=account_provider)
                db.add(user)
                db.commit()
                logger.info(f"Provisioned {profile.provider} account {user.id}")
            elif user.provider != account_provider:
                logger.warning(f"Auth failed: {profile.provider} sign-in for {user.provider.value} account {user.id}")
                raise IdentityError("This email is registered with a different sign-in method")
            metadata = {
                "full_name": profile.full_name,
                "avatar_url": profile.avatar_url,
                "picture": profile.picture,
            }
            return self._issue(user, metadata)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def create_redis_client(redis_url: Optional[str]):
    """Redis client for the revocation fast path, or None when unset/unreachable."""
    if not redis_url:
        return None
    from redis import Redis
    from redis.exceptions import RedisError

    try:
        client = Redis.from_url(redis_url, decode_responses=True)
        client.ping()
        return client
    except RedisError as e:
        logger.warning(f"Redis connection failed: {e}. Using database revocation list only.")
        return None
