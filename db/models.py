# NG-HEADER: Nombre de archivo: models.py
# NG-HEADER: Ubicación: db/models.py
# NG-HEADER: Descripción: Modelos ORM de usuarios, sesiones y bitácora de auditoría.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Modelos principales de la base de datos."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


ROLES = ("seller", "admin", "major_admin")


class User(Base):
    """Usuario del dashboard (vendedor o administrador)."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(100))
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="seller")
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "role IN ('seller','admin','major_admin')",
            name="role",
        ),
    )


class Session(Base):
    """Sesiones persistidas para autenticación mediante cookies."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    csrf_token: Mapped[str] = mapped_column(String(100), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    ip: Mapped[Optional[str]] = mapped_column(String(100))
    user_agent: Mapped[Optional[str]] = mapped_column(String(200))

    __table_args__ = (
        CheckConstraint(
            "role IN ('guest','seller','admin','major_admin')",
            name="role",
        ),
    )

    user: Mapped[Optional["User"]] = relationship()


class AuditLog(Base):
    """Bitácora de operaciones sobre packing lists (bulk-edit, edit-rolls, ventas)."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    action: Mapped[str] = mapped_column(String(32))
    # Clave S3 del documento afectado
    target: Mapped[Optional[str]] = mapped_column(String(512))
    # Nota: 'metadata' es un nombre reservado en SQLAlchemy; usamos 'meta' como atributo
    # pero conservamos el nombre de columna 'metadata' a nivel de base de datos.
    meta: Mapped[Optional[dict]] = mapped_column(JSON, name="metadata")
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    ip: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
