"""
SQLAlchemy models for the grant server: users, client configuration and the audit log.
Codes, device authorizations and tokens are not persisted; they live in the in-memory ledgers.
"""
import json
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from grant_server.clients import Client, make_client


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dump_list(values) -> str:
    return json.dumps(sorted(values))


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    @property
    def subject_id(self) -> str:
        """Subject identifier carried by codes and tokens."""
        return str(self.id)


class ClientRecord(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    client_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # bcrypt hash of client_secret; None = public client
    client_secret_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # JSON arrays
    redirect_uris: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    grant_types: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    audiences: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    @classmethod
    def build(
        cls,
        client_id: str,
        *,
        secret_hash: str | None = None,
        redirect_uris=(),
        grant_types=(),
        scopes=(),
        audiences=(),
        name: str | None = None,
    ) -> "ClientRecord":
        return cls(
            client_id=client_id,
            client_name=name,
            client_secret_hash=secret_hash or None,
            redirect_uris=_dump_list(redirect_uris),
            grant_types=_dump_list(grant_types),
            scopes=_dump_list(scopes),
            audiences=_dump_list(audiences),
        )

    def to_client(self) -> Client:
        return make_client(
            self.client_id,
            secret_hash=self.client_secret_hash,
            grant_types=json.loads(self.grant_types or "[]"),
            scopes=json.loads(self.scopes or "[]"),
            audiences=json.loads(self.audiences or "[]"),
            redirect_uris=json.loads(self.redirect_uris or "[]"),
            name=self.client_name or "",
        )


class AuditLog(Base):
    """Security-relevant events. No tokens, secrets or passwords stored."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    subject_id: Mapped[str | None] = mapped_column(String(255), nullable=True)  # None = no end user
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail
    detail: Mapped[str | None] = mapped_column(String(255), nullable=True)  # OAuth error code on failure
