"""Database models for the POS sales ledger"""

from app.models.tenant import Tenant, TenantMember, PosConnection

from app.models.pos_extract import (
    ProviderOrder,
    ProviderLineItem,
    ProviderPayment
)

from app.models.sales_ledger import (
    CanonicalSaleRow,
    DailySales
)

from app.models.categorization import CategorizationRule

from app.models.sync_status import (
    SalesSyncLog,
    SalesSyncStatus
)

