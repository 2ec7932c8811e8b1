"""
Square Connector

Pulls orders through POST /v2/orders/search and normalizes them. Square
has no business-day field, so the sale day always comes from closed_at in
the tenant timezone. Money objects carry amounts in cents.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from app.config import get_settings
from app.connectors.base import BasePosConnector, NormalizedItem, NormalizedOrder, NormalizedPayment, minor_units
from app.exceptions import NormalizationError
from app.services.business_date import parse_timestamp

settings = get_settings()

ORDER_STATES = {
    "COMPLETED": "completed",
    "OPEN": "open",
    "DRAFT": "open",
    "CANCELED": "voided",
}

TENDER_STATUSES = {
    "CAPTURED": "CAPTURED",
    "AUTHORIZED": "AUTHORIZED",
    "VOIDED": "VOIDED",
    "FAILED": "DENIED",
}


def _money(obj: Optional[Dict[str, Any]]) -> Optional[Decimal]:
    if not obj:
        return None
    return minor_units(obj.get("amount"))


def _tender_refunds(payload: Dict[str, Any]) -> Dict[str, Decimal]:
    """Completed refund totals per tender id."""
    totals: Dict[str, Decimal] = {}
    for refund in payload.get("refunds") or []:
        if (refund.get("status") or "").upper() not in ("COMPLETED", "APPROVED"):
            continue
        amount = _money(refund.get("amount_money")) or Decimal("0")
        tender_id = refund.get("tender_id")
        if tender_id:
            totals[tender_id] = totals.get(tender_id, Decimal("0")) + amount
    return totals


class SquareConnector(BasePosConnector):
    """Connector for the Square Orders API"""

    provider = "square"

    def __init__(self, access_token: str, account_id: str, base_url: Optional[str] = None, **kwargs):
        super().__init__(access_token, account_id, base_url or settings.square_api_base_url, **kwargs)

    async def fetch_page(self, client: httpx.AsyncClient, start: datetime, end: datetime, cursor: Any):
        body = {
            "location_ids": [self.account_id],
            "limit": self.page_size,
            "query": {
                "filter": {
                    "date_time_filter": {
                        "updated_at": {
                            "start_at": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
                            "end_at": end.strftime("%Y-%m-%dT%H:%M:%SZ"),
                        }
                    }
                },
                "sort": {"sort_field": "UPDATED_AT", "sort_order": "ASC"},
            },
        }
        if cursor:
            body["cursor"] = cursor
        data = await self._request(client, "POST", "/v2/orders/search", json=body)
        return data.get("orders") or [], data.get("cursor")

    @staticmethod
    def normalize_order(payload: Dict[str, Any]) -> NormalizedOrder:
        order_id = payload.get("id")
        if not order_id:
            raise NormalizationError("square", "order payload has no id")

        items = []
        for line in payload.get("line_items") or []:
            if not line.get("uid"):
                continue
            quantity = Decimal(str(line.get("quantity") or "1"))
            gross = _money(line.get("gross_sales_money"))
            if gross is None:
                base = _money(line.get("base_price_money"))
                gross = base * quantity if base is not None else None
            name = line.get("name")
            if line.get("variation_name"):
                name = f"{name} ({line['variation_name']})" if name else line["variation_name"]
            items.append(NormalizedItem(
                external_item_id=line["uid"],
                item_name=name,
                quantity=quantity,
                line_total=gross,
                discount_amount=_money(line.get("total_discount_money")),
                is_voided=False,
                pos_category=line.get("category_name"),
                raw_payload=line,
            ))

        refunds = _tender_refunds(payload)
        payments = []
        for tender in payload.get("tenders") or []:
            if not tender.get("id"):
                continue
            amount = _money(tender.get("amount_money"))
            status = (tender.get("card_details") or {}).get("status") or "CAPTURED"
            refunded = refunds.get(tender["id"])
            refund_status = "NONE"
            if refunded:
                refund_status = "FULL" if amount is not None and refunded >= amount else "PARTIAL"
            payments.append(NormalizedPayment(
                external_payment_id=tender["id"],
                payment_type=tender.get("type"),
                status=TENDER_STATUSES.get(status.upper(), status.upper()),
                amount=amount,
                tip_amount=_money(tender.get("tip_money")),
                refund_status=refund_status,
                refund_amount=refunded,
                raw_payload=tender,
            ))

        return NormalizedOrder(
            external_order_id=order_id,
            state=ORDER_STATES.get((payload.get("state") or "").upper(), "open"),
            business_date=None,
            opened_at=parse_timestamp(payload.get("created_at")),
            closed_at=parse_timestamp(payload.get("closed_at")),
            gross_amount=_money(payload.get("total_money")),
            tax_amount=_money(payload.get("total_tax_money")),
            tip_amount=_money(payload.get("total_tip_money")),
            discount_amount=_money(payload.get("total_discount_money")),
            service_charge_amount=_money(payload.get("total_service_charge_money")),
            raw_payload=payload,
            items=items,
            payments=payments,
        )

    @staticmethod
    def business_date_from_payload(payload: Dict[str, Any]):
        return None
