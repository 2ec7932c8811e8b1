"""
Exception hierarchy for the sales ledger pipeline.

Every error raised by the ingestion, reconciliation and side-effect code
derives from SalesLedgerError so callers (scheduler, API, scripts) can
catch the family in one place.
"""
from typing import Optional


class SalesLedgerError(Exception):
    """Base exception for all sales ledger errors."""

    def __init__(self, message: str, tenant_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.tenant_id = tenant_id


class UnauthorizedTenantAccess(SalesLedgerError):
    """Caller is not a member of the tenant it tried to sync. Never retried."""

    def __init__(self, tenant_id: int, caller: str):
        super().__init__(f"Caller {caller} is not authorized for tenant {tenant_id}", tenant_id)
        self.caller = caller


class TenantNotFoundError(SalesLedgerError):
    """Tenant id does not exist."""

    def __init__(self, tenant_id: int):
        super().__init__(f"Tenant {tenant_id} not found", tenant_id)


class TenantSyncBusyError(SalesLedgerError):
    """Another sync run for the same tenant held the tenant lock too long."""


class SyncTimeoutError(SalesLedgerError):
    """A sync run exceeded its wall-clock budget. The run was rolled back."""

    def __init__(self, tenant_id: int, stage: str, elapsed_seconds: float):
        super().__init__(
            f"Sync for tenant {tenant_id} exceeded its time budget during {stage} "
            f"({elapsed_seconds:.1f}s)",
            tenant_id,
        )
        self.stage = stage
        self.elapsed_seconds = elapsed_seconds


class SideEffectError(SalesLedgerError):
    """
    Batch classification or aggregation failed after the ledger commit.

    Ledger rows are intact; re-running the catch-up pass repairs the
    derived state.
    """

    def __init__(self, message: str, tenant_id: Optional[int] = None, stage: Optional[str] = None):
        super().__init__(message, tenant_id)
        self.stage = stage


class SplitAllocationError(SalesLedgerError):
    """Split allocations do not add up to the sale being split."""


class NormalizationError(SalesLedgerError):
    """A provider payload could not be mapped onto the extract tables."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ProviderAPIError(SalesLedgerError):
    """Upstream POS API returned an error response."""

    def __init__(self, provider: str, status_code: int, message: str):
        super().__init__(f"{provider} API error {status_code}: {message}")
        self.provider = provider
        self.status_code = status_code
