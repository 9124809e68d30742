"""
Payout Scheduler.

Holds each vendor's payout cadence and computes payout, cutoff and
hold-release timestamps in the vendor's timezone.

Weekly vendors are paid on Friday 14:00 with a Thursday 12:00 cutoff.
Expedited tiers are paid every business day at 14:00 with a same-day
12:00 cutoff. The cycle key of an entry is the local date of the payout
run it belongs to.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from payout_backend.app.core.config import settings
from payout_backend.app.db.types import ensure_utc
from payout_backend.app.domain.payouts.fee_calculator import pricing_for
from payout_backend.app.models.payout_schedule import PayoutSchedule
from payout_backend.app.models.wallet_enums import PayoutTier
from payout_backend.app.schemas.payout import PayoutScheduleConfig

# Python weekdays: Monday=0 ... Sunday=6
THURSDAY = 3
FRIDAY = 4

WEEKLY_TIMING = {"cutoff_weekday": THURSDAY, "cutoff_hour": 12, "payout_weekday": FRIDAY, "payout_hour": 14}
DAILY_TIMING = {"cutoff_weekday": None, "cutoff_hour": 12, "payout_weekday": None, "payout_hour": 14}

# Search horizon for the next matching weekday
_HORIZON_DAYS = 15


@dataclass(frozen=True)
class CycleSlot:
    payout_at: datetime
    cutoff_at: datetime
    key: str


def timing_for(tier: PayoutTier) -> dict:
    return dict(WEEKLY_TIMING if PayoutTier(tier) == PayoutTier.WEEKLY else DAILY_TIMING)


def build_config(vendor_id: str, tier: PayoutTier, tz_name: Optional[str] = None, **timing) -> PayoutScheduleConfig:
    pricing = pricing_for(tier)
    values = timing_for(tier)
    values.update({k: v for k, v in timing.items() if k in values})
    return PayoutScheduleConfig(
        vendor_id=vendor_id,
        tier=pricing.tier,
        label=pricing.label,
        fee_percent=pricing.fee_percent,
        fee_cap_minor=pricing.fee_cap_minor,
        timeline_days=pricing.timeline_days,
        timezone=tz_name or settings.default_timezone,
        **values,
    )


def _matches(day, weekday: Optional[int]) -> bool:
    if weekday is None:
        return day.weekday() < 5
    return day.weekday() == weekday


def next_payout_at(config: PayoutScheduleConfig, after: datetime) -> datetime:
    """First payout occurrence strictly after ``after``."""
    tz = ZoneInfo(config.timezone)
    local = ensure_utc(after).astimezone(tz)
    for offset in range(_HORIZON_DAYS):
        day = local.date() + timedelta(days=offset)
        if not _matches(day, config.payout_weekday):
            continue
        candidate = datetime.combine(day, time(hour=config.payout_hour), tzinfo=tz)
        if candidate > local:
            return candidate.astimezone(timezone.utc)
    raise ValueError(f"No payout day found for schedule {config.tier.value}")


def previous_payout_at(config: PayoutScheduleConfig, at: datetime) -> datetime:
    """Latest payout occurrence at or before ``at``."""
    tz = ZoneInfo(config.timezone)
    local = ensure_utc(at).astimezone(tz)
    for offset in range(_HORIZON_DAYS):
        day = local.date() - timedelta(days=offset)
        if not _matches(day, config.payout_weekday):
            continue
        candidate = datetime.combine(day, time(hour=config.payout_hour), tzinfo=tz)
        if candidate <= local:
            return candidate.astimezone(timezone.utc)
    raise ValueError(f"No payout day found for schedule {config.tier.value}")


def cutoff_at(config: PayoutScheduleConfig, payout_at: datetime) -> datetime:
    """Cutoff occurrence immediately preceding ``payout_at``."""
    tz = ZoneInfo(config.timezone)
    local_payout = ensure_utc(payout_at).astimezone(tz)
    for offset in range(_HORIZON_DAYS):
        day = local_payout.date() - timedelta(days=offset)
        if not _matches(day, config.cutoff_weekday):
            continue
        candidate = datetime.combine(day, time(hour=config.cutoff_hour), tzinfo=tz)
        if candidate < local_payout:
            return candidate.astimezone(timezone.utc)
    raise ValueError(f"No cutoff found for schedule {config.tier.value}")


def cycle_key_for(config: PayoutScheduleConfig, payout_at: datetime) -> str:
    return ensure_utc(payout_at).astimezone(ZoneInfo(config.timezone)).date().isoformat()


def cycle_for(config: PayoutScheduleConfig, at: datetime) -> CycleSlot:
    """
    The payout cycle an amount becoming payable at ``at`` belongs to.

    That is the next payout whose cutoff has not yet passed; anything
    arriving after a cutoff rolls to the following payout.
    """
    at = ensure_utc(at)
    payout = next_payout_at(config, at)
    cutoff = cutoff_at(config, payout)
    if at > cutoff:
        payout = next_payout_at(config, payout)
        cutoff = cutoff_at(config, payout)
    return CycleSlot(payout_at=payout, cutoff_at=cutoff, key=cycle_key_for(config, payout))


def due_cycle(config: PayoutScheduleConfig, now: datetime) -> Optional[CycleSlot]:
    """
    The payout run open at ``now``, if any.

    A run is open from the payout hour until the end of that local day.
    Outside it (weekends, non-payout weekdays for weekly vendors) nothing
    runs; a run missed entirely is picked up as arrears by the next one.
    """
    payout = previous_payout_at(config, now)
    key = cycle_key_for(config, payout)
    if key != cycle_key_for(config, now):
        return None
    return CycleSlot(payout_at=payout, cutoff_at=cutoff_at(config, payout), key=key)


def hold_release_at(config: PayoutScheduleConfig, created_at: datetime) -> datetime:
    """End of the hold window: ``timeline_days`` business days after creation."""
    tz = ZoneInfo(config.timezone)
    local = ensure_utc(created_at).astimezone(tz)
    added = 0
    while added < config.timeline_days:
        local = local + timedelta(days=1)
        if local.weekday() < 5:
            added += 1
    return local.astimezone(timezone.utc)


class PayoutScheduler:

    @staticmethod
    def _to_config(row: PayoutSchedule) -> PayoutScheduleConfig:
        return build_config(
            row.vendor_id,
            row.tier,
            row.timezone,
            cutoff_weekday=row.cutoff_weekday,
            cutoff_hour=row.cutoff_hour,
            payout_weekday=row.payout_weekday,
            payout_hour=row.payout_hour,
        )

    @staticmethod
    async def schedule_for(db: AsyncSession, vendor_id: str) -> PayoutScheduleConfig:
        """Active schedule of a vendor; the free weekly cadence when none is set."""
        result = await db.execute(select(PayoutSchedule).where(PayoutSchedule.vendor_id == vendor_id))
        row = result.scalar_one_or_none()
        if row is None:
            return build_config(vendor_id, PayoutTier.WEEKLY)
        return PayoutScheduler._to_config(row)

    @staticmethod
    async def set_schedule(db: AsyncSession, vendor_id: str, tier: PayoutTier) -> PayoutScheduleConfig:
        """
        Change a vendor's payout tier.

        Only entries written after the change use the new cadence;
        target_payout_at already stamped on existing entries is left as is.
        Flushes; the caller commits.
        """
        tier = PayoutTier(tier)
        result = await db.execute(select(PayoutSchedule).where(PayoutSchedule.vendor_id == vendor_id))
        row = result.scalar_one_or_none()
        timing = timing_for(tier)

        if row is None:
            row = PayoutSchedule(
                vendor_id=vendor_id,
                tier=tier,
                timezone=settings.default_timezone,
                **timing,
            )
            db.add(row)
        else:
            row.tier = tier
            for key, value in timing.items():
                setattr(row, key, value)

        await db.flush()
        return PayoutScheduler._to_config(row)
