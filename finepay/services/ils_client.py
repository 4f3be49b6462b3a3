"""
ILS client — the contract FinePay needs from the library system, and an
HTTP implementation of it.

The reconciliation engine only ever talks to the ILS through ILSConnector:

  - get_online_payment_config(patron): payment policy for the patron
  - get_current_fines(patron, fine_ids): payable total, optionally limited
    to the fines selected at checkout
  - clear_fees(patron, amount, ...): mark fees paid, returns a tagged result
  - login(username, password): patron login, None when rejected

Clearing results are tagged types instead of sentinel strings, so the
engine can tell "the fines changed under us" apart from a genuine error:

    ClearSuccess | ClearFinesUpdated | ClearError(detail)

Timeouts:
  Every ILS call runs while the transaction's registration lock is held.
  HttpILSConnector applies ILS_TIMEOUT_SECONDS to every request, so a hung
  ILS fails the attempt instead of holding the lock past its TTL.
"""

import abc
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field

from finepay.config import settings
from finepay.exceptions import ILSError

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

class Patron(BaseModel):
    """A patron logged into the ILS."""
    id: str
    cat_username: str
    cat_password: str = Field(default="", repr=False)
    source: str = ""
    firstname: str = ""
    lastname: str = ""
    home_library: str | None = None


class OnlinePaymentConfig(BaseModel):
    """Online payment policy the ILS applies to a patron."""
    exact_balance_required: bool = True
    credit_unsupported: bool = False
    select_fines: bool = False
    currency: str = "EUR"
    transaction_fee: int = 0
    minimum_fee: int = 0

    @property
    def requires_amount_check(self) -> bool:
        """Whether the payable total must be re-checked before clearing."""
        return self.exact_balance_required or self.credit_unsupported


class Fine(BaseModel):
    """One fine as listed by the ILS."""
    fine_id: str | None = None
    amount: int
    balance: int
    title: str = ""
    type: str = ""
    description: str = ""
    organization: str = ""
    payable_online: bool = True


class FinesAmount(BaseModel):
    """Payable total computed from the patron's current fines."""
    payable: bool
    amount: int
    reason: str | None = None
    fines: list[Fine] = Field(default_factory=list)


@dataclass(frozen=True)
class ClearSuccess:
    """Fees were marked paid."""


@dataclass(frozen=True)
class ClearFinesUpdated:
    """The ILS refused: the fines changed since the patron paid."""
    detail: str = "fines_updated"


@dataclass(frozen=True)
class ClearError:
    """The ILS refused for any other reason."""
    detail: str = "no error information"
    data: dict[str, Any] = field(default_factory=dict)


ClearResult = ClearSuccess | ClearFinesUpdated | ClearError


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class ILSConnector(abc.ABC):
    """Abstract ILS capability consumed by the payment services."""

    @abc.abstractmethod
    async def login(self, username: str, password: str) -> Patron | None:
        """Log a patron in. Returns None when the ILS rejects the credentials."""

    @abc.abstractmethod
    async def get_online_payment_config(self, patron: Patron) -> OnlinePaymentConfig:
        """Online payment policy for the patron's library."""

    @abc.abstractmethod
    async def get_current_fines(
        self, patron: Patron, fine_ids: list[str] | None = None
    ) -> FinesAmount:
        """Payable total, restricted to fine_ids when given."""

    @abc.abstractmethod
    async def clear_fees(
        self,
        patron: Patron,
        amount: int,
        gateway_transaction_id: str,
        local_transaction_id: str,
        fine_ids: list[str] | None = None,
    ) -> ClearResult:
        """Mark fees paid in the ILS."""


# ---------------------------------------------------------------------------
# HTTP implementation
# ---------------------------------------------------------------------------

class HttpILSConnector(ILSConnector):
    """
    ILSConnector over a JSON/HTTP ILS API.

    Endpoints (relative to ILS_BASE_URL):
      POST /patrons/login                    {"username", "password"}
      GET  /patrons/{id}/online-payment      -> OnlinePaymentConfig
      GET  /patrons/{id}/fines?fine_id=...   -> FinesAmount
      POST /patrons/{id}/fines/pay           -> {"success": bool, "error": str}

    Transport failures and unexpected responses raise ILSError.
    """

    # Login answers that mean "wrong credentials", not "ILS broken"
    _REJECTED_LOGIN_CODES = (400, 401, 403, 404)

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.ILS_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.ILS_TIMEOUT_SECONDS
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._get_client().request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("ils_request_failed", method=method, url=url, error=str(e))
            raise ILSError(f"ILS request {method} {url} failed: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        if response.is_error:
            raise ILSError(
                f"ILS returned HTTP {response.status_code} for {response.request.url}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise ILSError(f"ILS returned invalid JSON: {e}") from e

    async def login(self, username: str, password: str) -> Patron | None:
        response = await self._request(
            "POST",
            "/patrons/login",
            json={"username": username, "password": password},
        )
        if response.status_code in self._REJECTED_LOGIN_CODES:
            logger.info("ils_login_rejected", cat_username=username)
            return None
        data = self._json(response)
        return Patron(
            id=str(data["id"]),
            cat_username=username,
            cat_password=password,
            source=data.get("source") or username.split(".", 1)[0],
            firstname=data.get("firstname", ""),
            lastname=data.get("lastname", ""),
            home_library=data.get("home_library"),
        )

    async def get_online_payment_config(self, patron: Patron) -> OnlinePaymentConfig:
        response = await self._request("GET", f"/patrons/{patron.id}/online-payment")
        return OnlinePaymentConfig.model_validate(self._json(response))

    async def get_current_fines(
        self, patron: Patron, fine_ids: list[str] | None = None
    ) -> FinesAmount:
        params = [("fine_id", fine_id) for fine_id in fine_ids or []]
        response = await self._request("GET", f"/patrons/{patron.id}/fines", params=params)
        return FinesAmount.model_validate(self._json(response))

    async def clear_fees(
        self,
        patron: Patron,
        amount: int,
        gateway_transaction_id: str,
        local_transaction_id: str,
        fine_ids: list[str] | None = None,
    ) -> ClearResult:
        payload: dict[str, Any] = {
            "amount": amount,
            "transaction_id": gateway_transaction_id,
            "local_transaction_id": local_transaction_id,
        }
        if fine_ids is not None:
            payload["fine_ids"] = fine_ids
        response = await self._request(
            "POST", f"/patrons/{patron.id}/fines/pay", json=payload
        )
        data = self._json(response)
        if data.get("success"):
            return ClearSuccess()
        error = data.get("error") or "no error information"
        if error == "fines_updated":
            return ClearFinesUpdated()
        return ClearError(detail=error, data=data)
