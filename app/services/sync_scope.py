"""
Sync scope: which provider orders one reconciliation run covers
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional, Sequence, Tuple

from app.models.pos_extract import ProviderOrder


@dataclass(frozen=True)
class SyncScope:
    """
    Tenant plus optional provider, service-date range and explicit order ids.

    A scope with no range and no order ids is a full resync of the tenant.
    """
    tenant_id: int
    provider: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    external_order_ids: Optional[Sequence[str]] = None

    def order_filters(self, order=ProviderOrder) -> List:
        """WHERE clauses selecting the in-scope rows of pos_orders."""
        filters = [order.tenant_id == self.tenant_id]
        if self.provider:
            filters.append(order.provider == self.provider)
        if self.start_date:
            filters.append(order.service_date >= self.start_date)
        if self.end_date:
            filters.append(order.service_date <= self.end_date)
        if self.external_order_ids is not None:
            filters.append(order.external_order_id.in_(list(self.external_order_ids)))
        return filters

    @property
    def is_full(self) -> bool:
        return self.start_date is None and self.end_date is None and self.external_order_ids is None

    def describe(self) -> str:
        parts = [f"tenant={self.tenant_id}", f"provider={self.provider or 'all'}"]
        if self.start_date or self.end_date:
            parts.append(f"range={self.start_date}..{self.end_date}")
        if self.external_order_ids is not None:
            parts.append(f"orders={len(self.external_order_ids)}")
        return " ".join(parts)


def date_chunks(start_date: date, end_date: date, chunk_days: int) -> List[Tuple[date, date]]:
    """Split [start_date, end_date] into consecutive inclusive ranges of at most chunk_days."""
    if chunk_days < 1:
        raise ValueError("chunk_days must be at least 1")
    chunks = []
    current = start_date
    while current <= end_date:
        chunk_end = min(current + timedelta(days=chunk_days - 1), end_date)
        chunks.append((current, chunk_end))
        current = chunk_end + timedelta(days=1)
    return chunks
