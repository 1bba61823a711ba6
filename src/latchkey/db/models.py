"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Relationships, constraints, and indexes defined here.
Alembic migrations mirror these models.

Key concepts:
- Integer primary keys (user ids are embedded in long-lived session tokens)
- Soft delete everywhere: rows flip `active` to False, never disappear
- Both duplicate-account firewalls are unique indexes, not just app checks:
  (auth_type, external_id) among active auth methods, and credential_id
- Portable types (JSON, LargeBinary) so the same models run on PostgreSQL
  in production and SQLite in tests
"""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthType(str, enum.Enum):
    """Storage discriminant for auth_methods.auth_type."""

    APPLE = "apple"
    PASSKEY = "passkey"


class ChallengeType(str, enum.Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


# ══════════════════════════════════════════════════════════════
# Identity: users and their params
# ══════════════════════════════════════════════════════════════


class User(Base):
    """A person. Created on first Apple sign-in or first passkey registration.

    Learn: email is always stored lower-cased. external_id is the stable
    identity string used for billing: the Apple subject for Apple users,
    a random UUID for passkey-only users.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password: Mapped[str] = mapped_column(
        String(255), nullable=False, default=""
    )  # legacy column, always empty for passwordless users
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    auth_methods: Mapped[list["AuthMethod"]] = relationship(back_populates="user")


class UserParam(Base):
    """Key/value flags on a user (e.g. param="subscription").

    Only read by the auth core: an active "subscription" row means the
    user has paywalled features.
    """

    __tablename__ = "user_params"
    __table_args__ = (Index("idx_user_params_user_param", "user_id", "param"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    param: Mapped[str] = mapped_column(String(50), nullable=False)
    value: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


# ══════════════════════════════════════════════════════════════
# Credential registry: auth methods + passkey credentials
# ══════════════════════════════════════════════════════════════


class AuthMethod(Base):
    """One way a user can prove who they are (Apple sign-in or one passkey).

    Learn: The partial unique index below is the duplicate-account firewall.
    Two concurrent registrations for the same Apple subject or the same
    credential can't both commit; the loser gets an IntegrityError.
    Deactivated rows drop out of the index, so a removed passkey's
    identifier doesn't block anything.
    """

    __tablename__ = "auth_methods"
    __table_args__ = (
        Index(
            "uq_auth_methods_type_external_active",
            "auth_type",
            "external_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
        Index("idx_auth_methods_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    auth_type: Mapped[str] = mapped_column(String(20), nullable=False)  # apple, passkey
    external_id: Mapped[str] = mapped_column(
        String(512), nullable=False
    )  # Apple sub or base64url credential id
    metadata_: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    user: Mapped["User"] = relationship(back_populates="auth_methods")
    passkey: Mapped[Optional["PasskeyCredential"]] = relationship(
        back_populates="auth_method"
    )


class PasskeyCredential(Base):
    """A WebAuthn public-key credential, owned 1:1 by a passkey AuthMethod."""

    __tablename__ = "passkey_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    auth_method_id: Mapped[int] = mapped_column(
        ForeignKey("auth_methods.id"), unique=True, nullable=False
    )
    credential_id: Mapped[bytes] = mapped_column(
        LargeBinary, unique=True, nullable=False
    )
    public_key: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    counter: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    device_type: Mapped[str] = mapped_column(
        String(32), nullable=False
    )  # singleDevice, multiDevice
    backed_up: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    transports: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    device_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    auth_method: Mapped["AuthMethod"] = relationship(back_populates="passkey")


# ══════════════════════════════════════════════════════════════
# Short-lived state: ceremony challenges + email codes
# ══════════════════════════════════════════════════════════════


class WebAuthnChallenge(Base):
    """A one-time nonce for a registration or authentication ceremony.

    Learn: Rows are consumed with a single DELETE ... RETURNING, so two
    requests racing on the same challenge resolve to exactly one winner.
    """

    __tablename__ = "webauthn_challenges"
    __table_args__ = (Index("idx_webauthn_challenges_expires", "expires_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    challenge: Mapped[bytes] = mapped_column(LargeBinary, unique=True, nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    challenge_type: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # registration, authentication
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class EmailVerificationCode(Base):
    """A 6-digit possession proof for an email address."""

    __tablename__ = "email_verification_codes"
    __table_args__ = (
        Index("idx_email_codes_email_expires", "email", "expires_at"),
        Index("idx_email_codes_email_created", "email", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(12), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
