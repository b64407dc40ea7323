"""Token ledger: charges, administrative adjustments and usage history."""

from datetime import datetime

from pydantic import BaseModel

from visionstudio.core.config import get_settings
from visionstudio.core.exceptions import BadRequestError, ForbiddenError
from visionstudio.core.logging import get_logger
from visionstudio.core.pagination import history_window
from visionstudio.stores.base import get_stores
from visionstudio.stores.records import AdjustResult, ChargeResult, UsageRecord

log = get_logger(__name__)

ADJUSTMENT_LABEL = "administrative adjustment"


class UsageRow(BaseModel):
    username: str
    label: str
    delta: int
    reference_id: str | None = None
    created_at: datetime


class ConservationReport(BaseModel):
    account_id: str
    balance: int
    initial_grant: int
    sum_of_deltas: int

    @property
    def expected_balance(self) -> int:
        return self.initial_grant + self.sum_of_deltas

    @property
    def holds(self) -> bool:
        return self.balance == self.expected_balance


async def get_balance(account_id: str) -> int:
    account = await get_stores().ledger.get_account(account_id)
    return account.token_balance


async def charge(
    account_id: str,
    amount: int,
    label: str,
    idempotency_key: str | None = None,
    reference_id: str | None = None,
) -> ChargeResult:
    """
    Debit `amount` and append one usage record, all-or-nothing.
    With BALANCE_POLICY=reject an insufficient balance raises InsufficientBalanceError
    and nothing is written; otherwise the balance may go negative (logged).
    Repeating an idempotency_key returns the original record without debiting again.
    """
    if amount < 0:
        raise BadRequestError("Charge amount must be non-negative")
    settings = get_settings()
    result = await get_stores().ledger.charge(
        account_id,
        amount,
        label,
        allow_negative=settings.balance_policy == "allow_negative",
        idempotency_key=idempotency_key,
        reference_id=reference_id,
    )
    if result.duplicate:
        log.info("ledger_charge_duplicate", account_id=account_id, idempotency_key=idempotency_key)
        return result
    log.info("ledger_charge", account_id=account_id, amount=amount, label=label, balance=result.balance)
    if result.balance < 0:
        log.warning("ledger_balance_negative", account_id=account_id, balance=result.balance)
    return result


async def adjust(account_id: str, new_balance: int, actor_is_admin: bool) -> AdjustResult:
    """Administrative absolute set. Credits are always recorded; debits only with ADJUSTMENT_LOGGING=both."""
    if not actor_is_admin:
        raise ForbiddenError("Only administrators can adjust balances")
    settings = get_settings()
    result = await get_stores().ledger.set_balance(
        account_id,
        new_balance,
        ADJUSTMENT_LABEL,
        record_debits=settings.adjustment_logging == "both",
    )
    log.info(
        "ledger_adjust",
        account_id=account_id,
        previous_balance=result.previous_balance,
        balance=result.balance,
        delta=result.delta,
        recorded=result.record is not None,
    )
    return result


async def list_usage(account_id: str, period: str | None = None, page: int = 1) -> list[UsageRecord]:
    window = history_window(period, page, get_settings().history_page_size)
    return await get_stores().ledger.list_usage(
        account_id, since=window.since, limit=window.limit, offset=window.offset
    )


async def list_all_usage(period: str | None = None, page: int = 1) -> list[UsageRow]:
    """Every account's usage joined with usernames; deleted accounts show as '(deleted)'."""
    stores = get_stores()
    window = history_window(period, page, get_settings().history_page_size)
    records = await stores.ledger.list_usage(None, since=window.since, limit=window.limit, offset=window.offset)
    usernames = {a.id: a.username for a in await stores.ledger.list_accounts()}
    return [
        UsageRow(
            username=usernames.get(r.account_id, "(deleted)"),
            label=r.label,
            delta=r.delta,
            reference_id=r.reference_id,
            created_at=r.created_at,
        )
        for r in records
    ]


async def verify_conservation(account_id: str) -> ConservationReport:
    stores = get_stores()
    account = await stores.ledger.get_account(account_id)
    total = await stores.ledger.sum_deltas(account_id)
    report = ConservationReport(
        account_id=account_id,
        balance=account.token_balance,
        initial_grant=account.initial_grant,
        sum_of_deltas=total,
    )
    if not report.holds:
        log.warning("ledger_conservation_broken", account_id=account_id, balance=report.balance,
                    expected=report.expected_balance)
    return report
