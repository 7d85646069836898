"""
Shared fixtures for the loan back office tests
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import pytest
import pytest_asyncio

from loan_backoffice.config import BackofficeConfig
from loan_backoffice.errors import UpstreamStoreError
from loan_backoffice.lifecycle import LoanLifecycle
from loan_backoffice.storage import Filter, InMemoryRecordStore, RecordStore


FIXED_NOW = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


class FailingStore(RecordStore):
    """
    In-memory store that raises UpstreamStoreError on chosen calls.

    fail_on("insert", "installments") fails the next insert into that table;
    call=None fails every call of that verb on that table.
    keep_on_delete("installments", 2) makes deletes on that table succeed but
    leave the last two matching rows in place.
    """

    def __init__(self, inner: Optional[InMemoryRecordStore] = None):
        self.inner = inner or InMemoryRecordStore()
        self._failures: Dict[tuple, Optional[Set[int]]] = {}
        self._counts: Dict[tuple, int] = {}
        self._kept_on_delete: Dict[str, int] = {}

    def fail_on(self, verb: str, table: str, call: Optional[int] = 1):
        """Fail the given call counted from now on (1 = the next call)"""
        key = (verb, table)
        self._counts[key] = 0
        if call is None:
            self._failures[key] = None
        else:
            self._failures.setdefault(key, set()).add(call)

    def keep_on_delete(self, table: str, count: int):
        """Make deletes on table remove all but the last count matching rows"""
        self._kept_on_delete[table] = count

    def _check(self, verb: str, table: str):
        key = (verb, table)
        self._counts[key] = self._counts.get(key, 0) + 1
        if key not in self._failures:
            return
        calls = self._failures[key]
        if calls is None or self._counts[key] in calls:
            raise UpstreamStoreError(f"injected failure on {verb} {table}", step=f"{verb} {table}")

    async def select(self, table, filters=None, order=None, limit=None, offset=None):
        self._check("select", table)
        return await self.inner.select(table, filters, order=order, limit=limit, offset=offset)

    async def insert(self, table, rows, returning=True):
        self._check("insert", table)
        return await self.inner.insert(table, rows, returning=returning)

    async def update(self, table, filters, values):
        self._check("update", table)
        return await self.inner.update(table, filters, values)

    async def delete(self, table, filters):
        self._check("delete", table)
        kept = self._kept_on_delete.get(table)
        if kept is None:
            return await self.inner.delete(table, filters)
        rows = await self.inner.select(table, filters)
        doomed = [row["id"] for row in rows[:max(0, len(rows) - kept)]]
        if not doomed:
            return []
        return await self.inner.delete(table, {"id": Filter("in", doomed)})

    def dump(self, table: str):
        return self.inner.dump(table)


@pytest.fixture
def config():
    return BackofficeConfig()


@pytest.fixture
def store():
    return FailingStore()


@pytest.fixture
def lifecycle(store, config):
    return LoanLifecycle(store, config=config, clock=lambda: FIXED_NOW)


async def seed_application(store: RecordStore, status: str = "verification",
                           requested_amount: Any = "10000", tenure: Any = 3,
                           repayment_type: Optional[str] = "monthly", **extra) -> str:
    """Insert a loan application row and return its id"""
    row = {
        "user_id": "user-1",
        "requested_amount": str(requested_amount),
        "loan_purpose": "business",
        "status": status,
        "stage": status,
        "tenure": tenure,
        "repayment_type": repayment_type,
    }
    row.update(extra)
    rows = await store.insert("loan_applications", row)
    return rows[0]["id"]


async def seed_receipt(store: RecordStore, installment_id: str, amount: Any,
                       **extra) -> str:
    """Insert an unconfirmed payment receipt and return its id"""
    row = {
        "installment_id": installment_id,
        "user_id": "user-1",
        "file_url": "https://files.example.com/receipt.jpg",
        "received_at": "2024-01-14T09:00:00+00:00",
        "payment_confirmed": False,
        "amount": str(amount),
        "status": "pending",
    }
    row.update(extra)
    rows = await store.insert("payment_receipts", row)
    return rows[0]["id"]


async def seed_loan(store: RecordStore, total_repayment: Any = "100.00",
                    installment_amounts=("100.00",), status: str = "running",
                    amount_paid: Any = "0.00") -> Dict[str, Any]:
    """Insert a loan with a simple schedule; returns the loan id and installment ids"""
    loans = await store.insert("loans", {
        "application_id": "app-seeded",
        "user_id": "user-1",
        "principal_amount": "80.00",
        "total_repayment": str(total_repayment),
        "amount_paid": str(amount_paid),
        "repayment_type": "monthly",
        "tenure": len(installment_amounts),
        "start_date": "2024-01-01",
        "end_date": "2024-04-01",
        "status": status,
    })
    loan_id = loans[0]["id"]
    installments = await store.insert("installments", [
        {
            "loan_id": loan_id,
            "installment_number": number,
            "due_date": f"2024-0{number + 1}-01",
            "amount_due": str(amount),
            "amount_paid": "0.00",
            "payment_verified": False,
            "status": "pending",
        }
        for number, amount in enumerate(installment_amounts, start=1)
    ])
    return {"loan_id": loan_id, "installment_ids": [row["id"] for row in installments]}


@pytest_asyncio.fixture
async def approved_loan(store, lifecycle):
    """Loan created by approving a 10000 / 3 month / monthly application"""
    application_id = await seed_application(store)
    result = await lifecycle.approve_application(application_id, actor="admin-1")
    return result["loan"]
