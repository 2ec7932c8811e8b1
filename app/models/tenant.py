"""
Tenant (restaurant) models

A tenant owns its POS connections and every ledger row; every query in
the pipeline is scoped by tenant_id.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime

from app.models.base import Base


class Tenant(Base):
    """A restaurant account"""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    timezone = Column(String, nullable=True)  # IANA name, e.g. America/New_York

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    members = relationship("TenantMember", back_populates="tenant", cascade="all, delete-orphan")
    connections = relationship("PosConnection", back_populates="tenant", cascade="all, delete-orphan")


class TenantMember(Base):
    """User access to a tenant, consulted by the authorization check"""
    __tablename__ = "tenant_members"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'user_id', name='uq_tenant_member'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    role = Column(String, default="member")  # owner, manager, member

    created_at = Column(DateTime, default=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="members")


class PosConnection(Base):
    """
    Credentials and sync bookkeeping for one tenant's POS account

    The scheduler walks active connections; initial_sync_done switches a
    connection from the 90-day backfill to the rolling incremental window.
    """
    __tablename__ = "pos_connections"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'provider', name='uq_pos_connection_tenant_provider'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    provider = Column(String, nullable=False, index=True)  # toast, square

    external_account_id = Column(String, nullable=True)  # Toast restaurant guid / Square location id
    access_token = Column(Text, nullable=True)

    is_active = Column(Boolean, default=True, index=True)
    initial_sync_done = Column(Boolean, default=False)
    last_sync_time = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="connections")
