"""
Base POS Connector

Provider clients fetch raw order payloads page by page and normalize them
into the provider-neutral shapes the extract store understands.
Requests are paced to the provider's rate limit and retried with backoff.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from app.config import get_settings
from app.exceptions import ProviderAPIError
from app.utils.logger import log
from app.utils.retry import retry_async

settings = get_settings()


@dataclass
class NormalizedItem:
    external_item_id: str
    item_name: Optional[str] = None
    quantity: Decimal = Decimal("1")
    line_total: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    is_voided: bool = False
    pos_category: Optional[str] = None
    raw_payload: Optional[Dict[str, Any]] = None


@dataclass
class NormalizedPayment:
    external_payment_id: str
    payment_type: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    tip_amount: Optional[Decimal] = None
    refund_status: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    raw_payload: Optional[Dict[str, Any]] = None


@dataclass
class NormalizedOrder:
    external_order_id: str
    state: str = "completed"
    business_date: Optional[date] = None
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    gross_amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    tip_amount: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    service_charge_amount: Optional[Decimal] = None
    raw_payload: Optional[Dict[str, Any]] = None
    items: List[NormalizedItem] = field(default_factory=list)
    payments: List[NormalizedPayment] = field(default_factory=list)


def minor_units(value: Any) -> Optional[Decimal]:
    """Convert an integer amount in cents to a Decimal in major units."""
    if value is None or value == "":
        return None
    return Decimal(str(value)) / 100


class BasePosConnector(ABC):
    """
    Base class for POS provider clients

    Subclasses implement fetch_page and normalize_order; this class handles
    paging, request pacing and retries.
    """

    provider: str = ""
    RETRY_MAX_ATTEMPTS = settings.provider_max_retries
    RETRY_BASE_DELAY = 2.0  # seconds

    def __init__(
        self,
        access_token: str,
        account_id: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        min_request_interval: Optional[float] = None,
        page_size: Optional[int] = None,
    ):
        self.access_token = access_token
        self.account_id = account_id
        self.base_url = (base_url or "").rstrip("/")
        self.transport = transport
        self.min_request_interval = (
            settings.provider_min_request_interval if min_request_interval is None else min_request_interval
        )
        self.page_size = page_size or settings.provider_page_size
        self._last_request_at = 0.0
        self.request_count = 0

    async def _throttle(self):
        """Wait until min_request_interval has passed since the previous request."""
        wait = self.min_request_interval - (time.monotonic() - self._last_request_at)
        if wait > 0:
            await asyncio.sleep(wait)
        self._last_request_at = time.monotonic()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, transport=self.transport, timeout=30.0)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

    @retry_async(max_attempts=settings.provider_max_retries, base_delay=2.0)
    async def _request(self, client: httpx.AsyncClient, method: str, path: str, **kwargs) -> Any:
        await self._throttle()
        self.request_count += 1
        response = await client.request(method, path, headers=self._headers(), **kwargs)
        if response.status_code != 200:
            raise ProviderAPIError(self.provider, response.status_code, response.text[:500])
        return response.json()

    @abstractmethod
    async def fetch_page(self, client: httpx.AsyncClient, start: datetime, end: datetime, cursor: Any):
        """
        Fetch one page of raw orders.

        Returns:
            (orders, next_cursor); next_cursor is None on the last page
        """

    @staticmethod
    @abstractmethod
    def normalize_order(payload: Dict[str, Any]) -> NormalizedOrder:
        """Map one raw provider order onto NormalizedOrder."""

    async def fetch_orders(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """
        Fetch every raw order modified between start and end (UTC).

        Orders repeated across pages are dropped by provider order id.
        """
        orders: Dict[str, Dict[str, Any]] = {}
        cursor = None
        pages = 0

        async with self._client() as client:
            while True:
                page, cursor = await self.fetch_page(client, start, end, cursor)
                pages += 1
                for payload in page:
                    order_id = self.order_id_of(payload)
                    if order_id:
                        orders[order_id] = payload
                if cursor is None:
                    break

        log.info(f"{self.provider}: fetched {len(orders)} orders in {pages} pages ({start} to {end})")
        return list(orders.values())

    @staticmethod
    def order_id_of(payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("guid") or payload.get("id")
