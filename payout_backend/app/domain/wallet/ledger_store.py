"""
Ledger Entry Store (Domain Logic).

Append-only, per-vendor wallet records. The single source of truth for
every balance in the system: there is no update or delete path, and
corrections are always new entries referencing the entries they consume.

Lot accounting:
- open amount of a hold   = amount - releases - refunds against it
- open amount of a credit = amount - payouts - refunds against it
                            - remainders split from it
An entry is "unconsumed" while its open amount is positive.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from payout_backend.app.core.exceptions import LedgerValidationError
from payout_backend.app.db.types import utc_now, ensure_utc
from payout_backend.app.models.ledger_entry import LedgerEntry
from payout_backend.app.models.vendor_account import VendorAccount
from payout_backend.app.models.wallet_enums import LedgerEntryType, LedgerSource
from payout_backend.app.schemas.ledger import (
    LedgerEntryCreate,
    LedgerQuery,
    CreditReleaseEntry,
    CreditEligibleEntry,
    DebitPayoutEntry,
    DebitRefundEntry,
    ledger_entry_adapter,
)


@dataclass
class OpenLot:
    """A hold or credit entry with the part of it not yet consumed."""
    entry: LedgerEntry
    open_amount_minor: int


# Which entry types each reference may point at
_REFERENCE_RULES = {
    CreditReleaseEntry: ("releases_entry_id", (LedgerEntryType.DEBIT_HOLD,)),
    DebitPayoutEntry: ("consumes_entry_id", (LedgerEntryType.CREDIT_ELIGIBLE,)),
    DebitRefundEntry: ("refunds_entry_id", (LedgerEntryType.DEBIT_HOLD, LedgerEntryType.CREDIT_ELIGIBLE)),
}


class LedgerStore:

    @staticmethod
    def parse_entry(data: Union[dict, BaseModel]) -> LedgerEntryCreate:
        """
        Build the typed entry variant for ``data``.

        Raises:
            LedgerValidationError: if the payload does not match its variant
        """
        if isinstance(data, BaseModel):
            data = data.model_dump()
        try:
            return ledger_entry_adapter.validate_python(data)
        except PydanticValidationError as exc:
            raise LedgerValidationError(
                "Malformed ledger entry",
                details={"errors": json.loads(exc.json(include_url=False))}
            )

    @staticmethod
    async def get_entry(db: AsyncSession, entry_id: int) -> Optional[LedgerEntry]:
        return await db.get(LedgerEntry, entry_id)

    @staticmethod
    async def open_amount(db: AsyncSession, entry: LedgerEntry) -> int:
        """Part of a hold or credit entry that has not been consumed."""
        consumed = await db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount_minor), 0)).where(
                LedgerEntry.related_entry_id == entry.id
            )
        )
        carried = await db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount_minor), 0)).where(
                LedgerEntry.split_from_entry_id == entry.id
            )
        )
        return entry.amount_minor - int(consumed.scalar()) - int(carried.scalar())

    @staticmethod
    async def append(db: AsyncSession, entry: Union[LedgerEntryCreate, dict], now: Optional[datetime] = None) -> int:
        """
        Append one entry and return its id.

        Raises:
            LedgerValidationError: nothing is written
        """
        rows = await LedgerStore.append_many(db, [entry], now=now)
        return rows[0].id

    @staticmethod
    async def append_many(
        db: AsyncSession,
        entries: Iterable[Union[LedgerEntryCreate, dict]],
        now: Optional[datetime] = None,
    ) -> List[LedgerEntry]:
        """
        Validate and append a group of entries in the caller's transaction.

        The whole group is validated before anything is added, so a bad
        entry leaves the session untouched. Flushes; the caller commits.

        Raises:
            LedgerValidationError: on the first invalid entry
        """
        from payout_backend.app.domain.wallet.projector import WalletSummaryProjector

        typed = [e if isinstance(e, BaseModel) else LedgerStore.parse_entry(e) for e in entries]
        if not typed:
            return []
        now = ensure_utc(now) if now else utc_now()

        currencies: Dict[str, Optional[str]] = {}
        related: Dict[int, LedgerEntry] = {}
        pending_use: Dict[int, int] = {}

        for entry in typed:
            if entry.amount_minor <= 0:
                raise LedgerValidationError("amount_minor must be positive", details={"amount_minor": entry.amount_minor})
            if not entry.vendor_id or not entry.vendor_id.strip():
                raise LedgerValidationError("vendor_id is required")

            # One currency per vendor, fixed by its first entry
            if entry.vendor_id not in currencies:
                account = await db.get(VendorAccount, entry.vendor_id)
                currencies[entry.vendor_id] = account.currency if account else None
            established = currencies[entry.vendor_id]
            if established is None:
                currencies[entry.vendor_id] = entry.currency
            elif established != entry.currency:
                raise LedgerValidationError(
                    f"Vendor {entry.vendor_id} wallet is in {established}, got {entry.currency}",
                    details={"vendor_id": entry.vendor_id, "currency": entry.currency, "established": established}
                )

            await LedgerStore._check_references(db, entry, related, pending_use)

        rows = []
        for entry in typed:
            await LedgerStore._ensure_vendor(db, entry.vendor_id, entry.currency)
            rows.append(LedgerStore._to_row(entry, now))
        db.add_all(rows)
        await db.flush()

        for row in rows:
            ref = related.get(row.related_entry_id) if row.related_entry_id else None
            await WalletSummaryProjector.apply_entry(db, row, ref)

        return rows

    @staticmethod
    async def _check_references(
        db: AsyncSession,
        entry: LedgerEntryCreate,
        related: Dict[int, LedgerEntry],
        pending_use: Dict[int, int],
    ) -> None:
        async def load(entry_id: int, allowed) -> LedgerEntry:
            target = related.get(entry_id) or await db.get(LedgerEntry, entry_id)
            if target is None:
                raise LedgerValidationError(f"Referenced entry {entry_id} does not exist")
            if target.vendor_id != entry.vendor_id:
                raise LedgerValidationError(f"Referenced entry {entry_id} belongs to another vendor")
            if target.entry_type not in allowed:
                raise LedgerValidationError(
                    f"{entry.type} cannot reference a {target.entry_type.value} entry",
                    details={"entry_id": entry_id}
                )
            related[entry_id] = target
            return target

        async def consume(target: LedgerEntry, exact: bool = False) -> None:
            available = await LedgerStore.open_amount(db, target) - pending_use.get(target.id, 0)
            if entry.amount_minor > available or (exact and entry.amount_minor != available):
                raise LedgerValidationError(
                    f"Entry {target.id} has {available} open, {entry.amount_minor} requested",
                    details={"entry_id": target.id, "open_minor": available}
                )
            pending_use[target.id] = pending_use.get(target.id, 0) + entry.amount_minor

        rule = _REFERENCE_RULES.get(type(entry))
        if rule is not None:
            field, allowed = rule
            target = await load(getattr(entry, field), allowed)
            await consume(target, exact=isinstance(entry, CreditReleaseEntry))
        elif isinstance(entry, CreditEligibleEntry):
            if entry.promoted_from_entry_id is not None:
                await load(entry.promoted_from_entry_id, (LedgerEntryType.DEBIT_HOLD,))
            if entry.split_from_entry_id is not None:
                target = await load(entry.split_from_entry_id, (LedgerEntryType.CREDIT_ELIGIBLE,))
                await consume(target)

    @staticmethod
    async def _ensure_vendor(db: AsyncSession, vendor_id: str, currency: str) -> VendorAccount:
        account = await db.get(VendorAccount, vendor_id)
        if account is None:
            account = VendorAccount(vendor_id=vendor_id, currency=currency)
            db.add(account)
            await db.flush()
        elif account.currency is None:
            account.currency = currency
        return account

    @staticmethod
    def _to_row(entry: LedgerEntryCreate, now: datetime) -> LedgerEntry:
        related_id = None
        if isinstance(entry, CreditReleaseEntry):
            related_id = entry.releases_entry_id
        elif isinstance(entry, DebitPayoutEntry):
            related_id = entry.consumes_entry_id
        elif isinstance(entry, DebitRefundEntry):
            related_id = entry.refunds_entry_id

        return LedgerEntry(
            vendor_id=entry.vendor_id,
            currency=entry.currency,
            source=LedgerSource(entry.source),
            order_ref=entry.order_ref,
            event_id=entry.event_id,
            entry_type=LedgerEntryType(entry.type),
            amount_minor=entry.amount_minor,
            note=entry.note,
            target_payout_at=entry.target_payout_at,
            target_payout_key=entry.target_payout_key,
            payout_batch_id=getattr(entry, "payout_batch_id", None),
            related_entry_id=related_id,
            promoted_from_entry_id=getattr(entry, "promoted_from_entry_id", None),
            split_from_entry_id=getattr(entry, "split_from_entry_id", None),
            created_at=entry.created_at or now,
            created_by=entry.created_by,
        )

    @staticmethod
    async def query(
        db: AsyncSession,
        vendor_id: str,
        filters: Optional[LedgerQuery] = None,
        oldest_first: bool = False,
    ) -> List[LedgerEntry]:
        """
        List a vendor's entries.

        Newest first for display; oldest first when consumed for settlement.
        """
        filters = filters or LedgerQuery()
        query = select(LedgerEntry).where(LedgerEntry.vendor_id == vendor_id)

        if filters.created_from:
            query = query.where(LedgerEntry.created_at >= ensure_utc(filters.created_from))
        if filters.created_to:
            query = query.where(LedgerEntry.created_at <= ensure_utc(filters.created_to))
        if filters.source:
            query = query.where(LedgerEntry.source == filters.source)
        if filters.entry_type:
            query = query.where(LedgerEntry.entry_type == filters.entry_type)
        if filters.target_payout_key:
            query = query.where(LedgerEntry.target_payout_key == filters.target_payout_key)

        if oldest_first:
            query = query.order_by(LedgerEntry.created_at.asc(), LedgerEntry.id.asc())
        else:
            query = query.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())

        result = await db.execute(query.limit(filters.limit))
        return list(result.scalars().all())

    @staticmethod
    async def open_lots(
        db: AsyncSession,
        vendor_id: str,
        entry_type: LedgerEntryType,
        target_payout_key_upto: Optional[str] = None,
        target_payout_before: Optional[datetime] = None,
        source: Optional[LedgerSource] = None,
        exclude_ids: Iterable[int] = (),
    ) -> List[OpenLot]:
        """
        Unconsumed holds or credits of a vendor, oldest first (FIFO).

        Args:
            target_payout_key_upto: only lots whose cycle key sorts <= this
            target_payout_before: only lots with target_payout_at <= this
            exclude_ids: lots locked elsewhere (in-flight transfers)
        """
        query = select(LedgerEntry).where(
            LedgerEntry.vendor_id == vendor_id,
            LedgerEntry.entry_type == entry_type,
        )
        if target_payout_key_upto is not None:
            query = query.where(LedgerEntry.target_payout_key <= target_payout_key_upto)
        if target_payout_before is not None:
            query = query.where(LedgerEntry.target_payout_at <= ensure_utc(target_payout_before))
        if source is not None:
            query = query.where(LedgerEntry.source == source)
        query = query.order_by(LedgerEntry.created_at.asc(), LedgerEntry.id.asc())

        lots = (await db.execute(query)).scalars().all()
        if not lots:
            return []

        consumed = dict((await db.execute(
            select(LedgerEntry.related_entry_id, func.sum(LedgerEntry.amount_minor))
            .where(LedgerEntry.vendor_id == vendor_id, LedgerEntry.related_entry_id.is_not(None))
            .group_by(LedgerEntry.related_entry_id)
        )).all())
        carried = dict((await db.execute(
            select(LedgerEntry.split_from_entry_id, func.sum(LedgerEntry.amount_minor))
            .where(LedgerEntry.vendor_id == vendor_id, LedgerEntry.split_from_entry_id.is_not(None))
            .group_by(LedgerEntry.split_from_entry_id)
        )).all())

        excluded = set(exclude_ids)
        open_lots = []
        for lot in lots:
            if lot.id in excluded:
                continue
            remaining = lot.amount_minor - int(consumed.get(lot.id, 0)) - int(carried.get(lot.id, 0))
            if remaining > 0:
                open_lots.append(OpenLot(entry=lot, open_amount_minor=remaining))
        return open_lots

    @staticmethod
    async def vendors_with_open(db: AsyncSession, entry_type: LedgerEntryType,
                                target_payout_before: Optional[datetime] = None) -> List[str]:
        """Vendors holding entries of a type (optionally due by a time)."""
        query = select(LedgerEntry.vendor_id).where(LedgerEntry.entry_type == entry_type)
        if target_payout_before is not None:
            query = query.where(LedgerEntry.target_payout_at <= ensure_utc(target_payout_before))
        result = await db.execute(query.distinct())
        return sorted(result.scalars().all())
