"""
Bank account registration and verification.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from payout_backend.app.core.exceptions import ResourceNotFoundError, AppException
from payout_backend.app.db.types import utc_now
from payout_backend.app.models.bank_account import BankAccount
from payout_backend.app.schemas.payout import BankAccountDetails
from payout_backend.app.services.bank_transfer import BankTransferClient, TransferError

logger = logging.getLogger("payouts.bank_accounts")


class BankAccountService:

    @staticmethod
    async def register(db: AsyncSession, vendor_id: str, details: BankAccountDetails) -> BankAccount:
        """
        Create or replace a vendor's payout account.

        Any change to the details clears verification. Flushes; the caller commits.
        """
        account = await db.get(BankAccount, vendor_id)
        if account is None:
            account = BankAccount(vendor_id=vendor_id, is_verified=False, **details.model_dump())
            db.add(account)
        else:
            changed = False
            for field, value in details.model_dump().items():
                if getattr(account, field) != value:
                    setattr(account, field, value)
                    changed = True
            if changed:
                account.is_verified = False
                account.verified_at = None

        await db.flush()
        return account

    @staticmethod
    async def verify(db: AsyncSession, bank_client: BankTransferClient, vendor_id: str) -> BankAccount:
        """
        Resolve the account holder with the bank and mark the account verified
        when the name matches.

        Raises:
            ResourceNotFoundError: no account on file
            AppException: the bank could not resolve the account or the name differs
        """
        account = await db.get(BankAccount, vendor_id)
        if account is None:
            raise ResourceNotFoundError("Bank account", vendor_id)

        try:
            resolved_name = await bank_client.resolve_account(account.account_number, account.bank_code)
        except TransferError as exc:
            raise AppException(
                message=f"Could not resolve bank account: {exc}",
                error_code="ERR_BANK_RESOLVE",
                status_code=502,
                details={"vendor_id": vendor_id}
            )

        if resolved_name.strip().casefold() != account.account_name.strip().casefold():
            logger.warning("Bank account name mismatch", extra={"vendor_id": vendor_id})
            raise AppException(
                message="Account name does not match the bank's records",
                error_code="ERR_BANK_NAME_MISMATCH",
                status_code=422,
                details={"vendor_id": vendor_id, "resolved_name": resolved_name}
            )

        account.is_verified = True
        account.verified_at = utc_now()
        await db.flush()
        return account
