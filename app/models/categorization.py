"""
Categorization rule model

Rules are evaluated in priority order against uncategorized ledger rows.
A rule either assigns a category or splits the sale across categories.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, Numeric, ForeignKey
from datetime import datetime

from app.models.base import Base


class CategorizationRule(Base):
    """Tenant-defined rule mapping POS sales to chart-of-account categories"""
    __tablename__ = "categorization_rules"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    priority = Column(Integer, default=0)  # Higher runs first
    is_active = Column(Boolean, default=True, index=True)

    # Matching (all configured conditions must hold)
    match_type = Column(String, nullable=True)  # exact, contains, starts_with, ends_with, regex
    match_value = Column(String, nullable=True)
    pos_category = Column(String, nullable=True)
    item_type = Column(String, nullable=True)
    amount_min = Column(Numeric(18, 2), nullable=True)  # compared against ABS(total_price)
    amount_max = Column(Numeric(18, 2), nullable=True)

    # Outcome
    category_code = Column(String, nullable=True)
    is_split_rule = Column(Boolean, default=False)
    split_allocations = Column(JSON, nullable=True)  # [{"category_code": "4000", "percentage": 60}, ...]

    apply_count = Column(Integer, default=0)
    last_applied_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
