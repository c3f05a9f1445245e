# flint/services/teller_client.py
from __future__ import annotations
from typing import Any, Dict, List, Optional
import logging

import httpx

from flint.crypto import decrypt_secret
from flint.errors import MFARequired, NotConnected, ProviderError
from flint.settings import settings

logger = logging.getLogger(__name__)


class TellerClient:
    """
    Thin async wrapper over the Teller REST API for one enrollment.
    The access token is the HTTP Basic username with an empty password.
    """

    def __init__(self, access_token: str, http: httpx.AsyncClient, base_url: str | None = None):
        if not access_token:
            raise NotConnected("No Teller access token for this account")
        self.http = http
        self.auth = httpx.BasicAuth(access_token, "")
        self.base_url = (base_url or settings.teller_api_url).rstrip("/")

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = await self.http.request(
                method,
                f"{self.base_url}{path}",
                auth=self.auth,
                headers={"Accept": "application/json"},
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"Teller {method} {path} unreachable: {type(e).__name__}", provider="teller") from e
        if resp.status_code == 403 and "mfa" in resp.text.lower():
            raise MFARequired(context={"error": "Please complete MFA in your bank app"})
        if resp.status_code >= 400:
            raise ProviderError(
                f"Teller {method} {path} failed with {resp.status_code}",
                provider="teller",
                upstream_status=resp.status_code,
            )
        return resp.json() if resp.content else None

    async def list_accounts(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/accounts")

    async def get_account(self, account_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/accounts/{account_id}")

    async def get_balances(self, account_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/accounts/{account_id}/balances")

    async def get_details(self, account_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/accounts/{account_id}/details")

    async def list_transactions(self, account_id: str, count: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {"count": count} if count else None
        return await self._request("GET", f"/accounts/{account_id}/transactions", params=params)

    async def get_identity(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/identity")

    async def create_payment(self, account_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", f"/accounts/{account_id}/payments", json=payload)

    async def get_payment(self, account_id: str, payment_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/accounts/{account_id}/payments/{payment_id}")


def build_teller_client(account: Dict[str, Any], http: httpx.AsyncClient) -> TellerClient:
    """Each Teller account row carries the enrollment token it was connected with."""
    return TellerClient(decrypt_secret(account.get("accessToken")), http)
