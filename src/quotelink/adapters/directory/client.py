from __future__ import annotations

from typing import Any

import requests

from quotelink.domain.models import Account, Contact


class DirectoryError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class HttpDirectoryClient:
    """Read-only client for an external accounts/contacts directory service."""

    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 10) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if api_key:
            self.session.headers.update({"Authorization": f"Bearer {api_key}"})

    def get_account(self, account_id: str) -> Account | None:
        data = self._request("GET", f"/accounts/{account_id}")
        if data is None:
            return None
        return Account(
            account_id=str(data.get("id", account_id)),
            name=data.get("name") or "",
            domain=data.get("domain"),
        )

    def get_contact(self, contact_id: str) -> Contact | None:
        data = self._request("GET", f"/contacts/{contact_id}")
        if data is None:
            return None
        account_id = data.get("account_id")
        return Contact(
            contact_id=str(data.get("id", contact_id)),
            account_id=str(account_id) if account_id is not None else None,
            full_name=data.get("full_name") or data.get("name") or "",
            email=data.get("email"),
        )

    def _request(self, method: str, path: str, params: dict[str, Any] | None = None) -> dict[str, Any] | None:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise DirectoryError(f"Directory request failed: {exc}") from exc
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise DirectoryError(
                f"Directory error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response.json()
