"""
Toast Connector

Pulls orders from the Toast Orders API (ordersBulk) and normalizes them.
Toast amounts arrive in cents. businessDate (an integer like 20260214) is
the restaurant's own business day and is always preferred over closedDate.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from app.config import get_settings
from app.connectors.base import BasePosConnector, NormalizedItem, NormalizedOrder, NormalizedPayment, minor_units
from app.exceptions import NormalizationError
from app.services.business_date import parse_business_date, parse_timestamp

settings = get_settings()


def _sum_minor(entries: List[Dict[str, Any]], key: str) -> Optional[Decimal]:
    values = [minor_units(e.get(key)) for e in entries or []]
    values = [v for v in values if v is not None]
    return sum(values, Decimal("0")) if values else None


def _category(selection: Dict[str, Any]) -> Optional[str]:
    category = selection.get("salesCategory") or selection.get("menuCategory")
    if isinstance(category, dict):
        return category.get("name")
    return category


def _order_state(payload: Dict[str, Any]) -> str:
    if payload.get("voided") or payload.get("deleted"):
        return "voided"
    if payload.get("closedDate") or payload.get("paidDate"):
        return "completed"
    return "open"


def _refund_amount(payment: Dict[str, Any]) -> Optional[Decimal]:
    refund = payment.get("refund") or {}
    return minor_units(refund.get("refundAmount"))


class ToastConnector(BasePosConnector):
    """Connector for the Toast Orders API"""

    provider = "toast"

    def __init__(self, access_token: str, account_id: str, base_url: Optional[str] = None, **kwargs):
        super().__init__(access_token, account_id, base_url or settings.toast_api_base_url, **kwargs)

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["Toast-Restaurant-External-ID"] = self.account_id
        return headers

    async def fetch_page(self, client: httpx.AsyncClient, start: datetime, end: datetime, cursor: Any):
        page = cursor or 1
        orders = await self._request(
            client,
            "GET",
            "/orders/v2/ordersBulk",
            params={
                "startDate": start.strftime("%Y-%m-%dT%H:%M:%S.000+0000"),
                "endDate": end.strftime("%Y-%m-%dT%H:%M:%S.000+0000"),
                "pageSize": self.page_size,
                "page": page,
            },
        )
        orders = orders or []
        # A short page is the last one
        next_cursor = page + 1 if len(orders) >= self.page_size else None
        return orders, next_cursor

    @staticmethod
    def normalize_order(payload: Dict[str, Any]) -> NormalizedOrder:
        order_id = payload.get("guid")
        if not order_id:
            raise NormalizationError("toast", "order payload has no guid")

        checks = payload.get("checks")
        if not checks:
            checks = [{"selections": payload.get("selections") or [], "payments": payload.get("payments") or []}]

        items = []
        payments = []
        for check in checks:
            for selection in check.get("selections") or []:
                if not selection.get("guid"):
                    continue
                gross = selection.get("preDiscountPrice")
                if gross is None:
                    gross = selection.get("price")
                items.append(NormalizedItem(
                    external_item_id=selection["guid"],
                    item_name=selection.get("displayName") or selection.get("itemName") or selection.get("name"),
                    quantity=Decimal(str(selection.get("quantity") or 1)),
                    line_total=minor_units(gross),
                    discount_amount=_sum_minor(selection.get("appliedDiscounts"), "discountAmount"),
                    is_voided=bool(selection.get("voided")),
                    pos_category=_category(selection),
                    raw_payload=selection,
                ))
            for payment in check.get("payments") or []:
                if not payment.get("guid"):
                    continue
                payments.append(NormalizedPayment(
                    external_payment_id=payment["guid"],
                    payment_type=payment.get("type"),
                    status=(payment.get("paymentStatus") or payment.get("status") or "").upper() or None,
                    amount=minor_units(payment.get("amount")),
                    tip_amount=minor_units(payment.get("tipAmount")),
                    refund_status=(payment.get("refundStatus") or "").upper() or None,
                    refund_amount=_refund_amount(payment),
                    raw_payload=payment,
                ))

        tax = _sum_minor(checks, "taxAmount")
        if tax is None:
            tax = minor_units(payload.get("taxAmount"))

        service_charges = []
        for check in checks:
            service_charges.extend(check.get("appliedServiceCharges") or [])
        service_charges.extend(payload.get("serviceCharges") or [])

        discounts = [d for check in checks for d in (check.get("appliedDiscounts") or [])]
        discounts.extend(payload.get("appliedDiscounts") or [])

        return NormalizedOrder(
            external_order_id=order_id,
            state=_order_state(payload),
            business_date=parse_business_date(payload.get("businessDate")),
            opened_at=parse_timestamp(payload.get("openedDate") or payload.get("createdDate")),
            closed_at=parse_timestamp(payload.get("closedDate")),
            gross_amount=minor_units(payload.get("totalAmount")),
            tax_amount=tax,
            tip_amount=_sum_minor([p.raw_payload for p in payments], "tipAmount"),
            discount_amount=_sum_minor(discounts, "discountAmount"),
            service_charge_amount=_sum_minor(service_charges, "chargeAmount"),
            raw_payload=payload,
            items=items,
            payments=payments,
        )

    @staticmethod
    def business_date_from_payload(payload: Dict[str, Any]):
        return parse_business_date(payload.get("businessDate"))
