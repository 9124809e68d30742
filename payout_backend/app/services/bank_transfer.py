"""
Bank Transfer Client.

Contract with the bank-transfer network plus an HTTP implementation
against a Paystack-style transfers API.

Failures are classified by whether the provider may have acted:
- TransientTransferError: the request never reached the provider; safe to retry
- TransferAmbiguousError / TransferTimeoutError: the outcome is unknown
- TransferRejectedError: the provider refused the transfer
- TransferNotFoundError: the provider has no such transfer
"""

import logging
from typing import Optional, Protocol

import httpx

from payout_backend.app.core.config import settings
from payout_backend.app.core.reliability import CircuitOpenError, bank_circuit_breaker
from payout_backend.app.models.bank_account import BankAccount
from payout_backend.app.models.wallet_enums import TransferOutcome

logger = logging.getLogger("payouts.bank")


class TransferError(Exception):
    """Base class for bank-transfer failures."""


class TransientTransferError(TransferError):
    """The provider never received the request."""


class TransferAmbiguousError(TransferError):
    """The provider may or may not have acted on the request."""


class TransferTimeoutError(TransferAmbiguousError):
    """No answer within the dispatch timeout."""


class TransferRejectedError(TransferError):
    """The provider definitively refused the request."""


class TransferNotFoundError(TransferRejectedError):
    """The provider has no transfer under this reference."""


class BankTransferClient(Protocol):
    """Collaborator contract for the bank-transfer network."""

    async def initiate_transfer(self, bank: BankAccount, amount_minor: int, currency: str, reference: str) -> str:
        """Send ``amount_minor`` to ``bank``; returns the provider's transfer reference."""
        ...

    async def poll_status(self, reference: str) -> TransferOutcome:
        """
        Current outcome of the transfer sent under ``reference``.

        Raises:
            TransferNotFoundError: the provider never received it
        """
        ...

    async def resolve_account(self, account_number: str, bank_code: str) -> str:
        """Account holder name registered with the bank."""
        ...


_STATUS_MAP = {
    "success": TransferOutcome.SUCCESS,
    "failed": TransferOutcome.FAILURE,
    "reversed": TransferOutcome.FAILURE,
    "abandoned": TransferOutcome.FAILURE,
}


class HttpBankTransferClient:
    """
    Transfers over HTTPS with a circuit breaker in front of the provider.

    Every transfer is sent with our own reference, so the provider
    rejects a duplicate send of the same batch.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.bank_api_base_url
        self.secret_key = secret_key if secret_key is not None else settings.bank_api_secret_key
        self.timeout_seconds = timeout_seconds or settings.transfer_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.secret_key}"},
            timeout=self.timeout_seconds,
            transport=self.transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        async def send() -> httpx.Response:
            async with self._client() as client:
                return await client.request(method, path, **kwargs)

        try:
            response = await bank_circuit_breaker.call(send)
        except CircuitOpenError as exc:
            raise TransientTransferError("Bank provider circuit is open") from exc
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
            raise TransientTransferError(f"Could not reach bank provider: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise TransferTimeoutError(f"Bank provider timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransferAmbiguousError(f"Bank provider error: {exc}") from exc

        if response.status_code == 429:
            raise TransientTransferError("Bank provider rate limited the request")
        if response.status_code >= 500:
            raise TransferAmbiguousError(f"Bank provider returned {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise TransferAmbiguousError("Bank provider returned a malformed body") from exc
        if response.status_code == 404:
            raise TransferNotFoundError(body.get("message") or "Not found at bank provider")
        if response.status_code >= 400 or not body.get("status", False):
            raise TransferRejectedError(body.get("message") or f"Bank provider returned {response.status_code}")
        return body.get("data") or {}

    async def _recipient_code(self, bank: BankAccount, currency: str) -> str:
        data = await self._request("POST", "/transferrecipient", json={
            "type": "nuban",
            "name": bank.account_name,
            "account_number": bank.account_number,
            "bank_code": bank.bank_code,
            "currency": currency,
        })
        return data["recipient_code"]

    async def initiate_transfer(self, bank: BankAccount, amount_minor: int, currency: str, reference: str) -> str:
        try:
            recipient = await self._recipient_code(bank, currency)
        except TransferAmbiguousError as exc:
            # No transfer exists yet, so sending again cannot pay twice
            raise TransientTransferError(f"Recipient setup failed: {exc}") from exc
        data = await self._request("POST", "/transfer", json={
            "source": "balance",
            "amount": amount_minor,
            "currency": currency,
            "recipient": recipient,
            "reference": reference,
            "reason": f"Vendor payout {reference}",
        })
        logger.info(
            "Transfer initiated",
            extra={"reference": reference, "amount_minor": amount_minor, "provider_status": data.get("status")}
        )
        return data.get("transfer_code") or reference

    async def poll_status(self, reference: str) -> TransferOutcome:
        data = await self._request("GET", f"/transfer/verify/{reference}")
        return _STATUS_MAP.get(str(data.get("status", "")).lower(), TransferOutcome.PENDING)

    async def resolve_account(self, account_number: str, bank_code: str) -> str:
        data = await self._request(
            "GET", "/bank/resolve", params={"account_number": account_number, "bank_code": bank_code}
        )
        return data["account_name"]


bank_client = HttpBankTransferClient()


async def get_bank_client() -> BankTransferClient:
    """FastAPI dependency for the bank-transfer collaborator."""
    return bank_client
