"""
Monthly billing roll-ups and stored invoices.

A billing cycle is one calendar month (UTC). Cycles are numbered from
January of the epoch year (cycle 1). A cycle costs the flat dashboard fee
plus the pass-through provider costs of the calls placed in it.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import structlog

from voiceai.analytics import add_months, dedupe_by_id, filter_range, month_start
from voiceai.config import Settings
from voiceai.exceptions import NotFoundError, ValidationError
from voiceai.formatting import invoice_file_name
from voiceai.models import (
    BillingCosts,
    BillingCurrentCycle,
    BillingUsage,
    CallRecord,
    Invoice,
    PaymentStatus,
)
from voiceai.store import DocumentStore, Where

log = structlog.get_logger(__name__)

INVOICES = "invoices"
DEFAULT_DASHBOARD_FEE = 49.0
DEFAULT_EPOCH_YEAR = 2026


def cycle_number(year: int, month: int, epoch_year: int = DEFAULT_EPOCH_YEAR) -> int:
    return (year - epoch_year) * 12 + month


def _usage(records: list[CallRecord]) -> BillingUsage:
    seconds = sum(r.duration_seconds for r in records)
    return BillingUsage(
        retell_minutes=round(seconds / 60, 2),
        retell_cost_usd=round(math.fsum(r.cost_usd for r in records), 2),
        openrouter_tokens=0,
        openrouter_cost_usd=0.0,
    )


def current_cycle(
    records: Iterable[CallRecord],
    now: datetime,
    dashboard_fee: float = DEFAULT_DASHBOARD_FEE,
    epoch_year: int = DEFAULT_EPOCH_YEAR,
) -> BillingCurrentCycle:
    """Usage and projected cost of the month containing ``now``."""
    now = now.astimezone(timezone.utc)
    start = month_start(now)
    next_start = add_months(start, 1)
    last_day = (next_start - timedelta(days=1)).date()

    usage = _usage(filter_range(dedupe_by_id(records), start, next_start))
    total = math.fsum([dashboard_fee, usage.retell_cost_usd, usage.openrouter_cost_usd])

    return BillingCurrentCycle(
        cycle_number=cycle_number(now.year, now.month, epoch_year),
        period_start=start.date().isoformat(),
        period_end=last_day.isoformat(),
        days_remaining=max(0, last_day.day - now.day),
        usage=usage,
        costs=BillingCosts(
            dashboard_fee=dashboard_fee,
            retell_passthrough=usage.retell_cost_usd,
            openrouter_passthrough=usage.openrouter_cost_usd,
            total_projected=round(total, 2),
        ),
        invoice_date=next_start.date().isoformat(),
    )


class BillingService:
    """Cycle figures and invoice documents for one deployment."""

    def __init__(self, store: DocumentStore, settings: Optional[Settings] = None):
        self.store = store
        self.dashboard_fee = settings.dashboard_fee_monthly if settings else DEFAULT_DASHBOARD_FEE
        self.epoch_year = settings.billing_epoch_year if settings else DEFAULT_EPOCH_YEAR

    def current_cycle(self, records: Iterable[CallRecord], now: datetime) -> BillingCurrentCycle:
        return current_cycle(records, now, self.dashboard_fee, self.epoch_year)

    async def list_invoices(self, tenant_id: str) -> list[Invoice]:
        """A tenant's invoices, newest cycle first."""
        docs = await self.store.query(INVOICES, [Where("user_id", "==", tenant_id)])
        invoices = [Invoice(**{**d.data, "id": d.id}) for d in docs]
        invoices.sort(key=lambda inv: inv.cycle_number, reverse=True)
        return invoices

    async def generate_invoice(
        self,
        tenant_id: str,
        records: Iterable[CallRecord],
        year: int,
        month: int,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """
        Close a finished month into an invoice.

        Idempotent: an invoice already stored for the cycle is returned as-is.
        """
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        if not 1 <= month <= 12:
            raise ValidationError(f"Invalid month: {month}")
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        next_start = add_months(start, 1)
        if next_start > now:
            raise ValidationError("Only finished billing cycles can be invoiced")

        number = cycle_number(year, month, self.epoch_year)
        if number < 1:
            raise ValidationError("Month precedes the first billing cycle")
        invoice_id = f"{tenant_id}_{number:03d}"
        existing = await self.store.get(INVOICES, invoice_id)
        if existing is not None:
            return Invoice(**{**existing.data, "id": existing.id})

        usage = _usage(filter_range(dedupe_by_id(records), start, next_start))
        invoice = Invoice(
            id=invoice_id,
            user_id=tenant_id,
            cycle_number=number,
            period_start=start.date().isoformat(),
            period_end=(next_start - timedelta(days=1)).date().isoformat(),
            total_amount=round(math.fsum([self.dashboard_fee, usage.retell_cost_usd, usage.openrouter_cost_usd]), 2),
            dashboard_fee=self.dashboard_fee,
            retell_cost=usage.retell_cost_usd,
            openrouter_cost=usage.openrouter_cost_usd,
            file_name=invoice_file_name(number, next_start),
        )
        data = invoice.model_dump(mode="json", exclude={"id"})
        data["createdAt"] = next_start
        await self.store.set(INVOICES, invoice_id, data)
        log.info("invoice_generated", tenant_id=tenant_id, cycle=number, total=invoice.total_amount)
        return invoice

    async def mark_paid(self, tenant_id: str, invoice_id: str, paid_at: Optional[datetime] = None) -> Invoice:
        doc = await self.store.get(INVOICES, invoice_id)
        if doc is None or doc.data.get("user_id") != tenant_id:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        paid_at = paid_at or datetime.now(timezone.utc)
        await self.store.update(
            INVOICES,
            invoice_id,
            {"payment_status": PaymentStatus.PAID.value, "paid_at": paid_at.isoformat()},
        )
        log.info("invoice_paid", tenant_id=tenant_id, invoice_id=invoice_id)
        updated = await self.store.get(INVOICES, invoice_id)
        return Invoice(**{**updated.data, "id": updated.id})
