from __future__ import annotations

from typing import Protocol
from uuid import uuid4

from quotelink.domain import rules
from quotelink.domain.models import Account, Contact
from quotelink.services.utils import utc_now_iso
from quotelink.store.sqlite import SqliteStore


class AccountsDirectory(Protocol):
    def get_account(self, account_id: str) -> Account | None: ...

    def get_contact(self, contact_id: str) -> Contact | None: ...


class LocalDirectory:
    """Directory backed by the workspace's own accounts and contacts tables."""

    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    def get_account(self, account_id: str) -> Account | None:
        row = self.store.fetch_one(
            "SELECT account_id, name, domain FROM accounts WHERE account_id = ?",
            (account_id,),
        )
        if row is None:
            return None
        return Account(account_id=row["account_id"], name=row["name"], domain=row["domain"])

    def get_contact(self, contact_id: str) -> Contact | None:
        row = self.store.fetch_one(
            "SELECT contact_id, account_id, full_name, email FROM contacts WHERE contact_id = ?",
            (contact_id,),
        )
        if row is None:
            return None
        return Contact(
            contact_id=row["contact_id"],
            account_id=row["account_id"],
            full_name=row["full_name"],
            email=row["email"],
        )


def add_account(store: SqliteStore, name: str, domain: str | None = None) -> str:
    rules.require(name, "name")
    if domain:
        row = store.fetch_one("SELECT account_id FROM accounts WHERE domain = ?", (domain,))
        if row:
            return row["account_id"]
    now = utc_now_iso()
    account_id = str(uuid4())
    store.execute(
        "INSERT INTO accounts (account_id, name, domain, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
        (account_id, name, domain, now, now),
    )
    return account_id


def add_contact(
    store: SqliteStore, account_id: str | None, full_name: str, email: str | None = None
) -> str:
    rules.require(full_name, "name")
    if email:
        row = store.fetch_one("SELECT contact_id FROM contacts WHERE email = ?", (email,))
        if row:
            return row["contact_id"]
    now = utc_now_iso()
    contact_id = str(uuid4())
    store.execute(
        "INSERT INTO contacts (contact_id, account_id, full_name, email, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (contact_id, account_id, full_name, email, now, now),
    )
    return contact_id
