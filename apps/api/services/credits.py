"""Credit ledger: free monthly allotment plus paid/bonus balance with expiring grants."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from config import settings
from services.stores import RecordStore

logger = logging.getLogger(__name__)

GrantKind = Literal["purchase", "invite-earned", "invite-bonus"]
TransactionKind = Literal["purchase", "spend", "refund", "invite-earned", "invite-bonus"]

ERROR_INSUFFICIENT = "insufficient credits"
ERROR_SELF_INVITE = "cannot invite self"
ERROR_ALREADY_INVITED = "already invited"
ERROR_INVITE_LIMIT = "monthly invite limit reached"
ERROR_UNKNOWN_PACKAGE = "unknown package"
ERROR_FREE_PACKAGE = "free package cannot be purchased"


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    price_cents: int
    credits: int
    expires_in_days: Optional[int] = None


CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    "free": CreditPackage(id="free", name="Free", price_cents=0, credits=3),
    "small": CreditPackage(id="small", name="Small", price_cents=2900, credits=20),
    "medium": CreditPackage(id="medium", name="Medium", price_cents=7900, credits=60),
    "large": CreditPackage(id="large", name="Large", price_cents=19900, credits=150),
    "xlarge": CreditPackage(id="xlarge", name="Extra Large", price_cents=49900, credits=400),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_transaction_id() -> str:
    return f"txn_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _add_one_month(moment: datetime) -> datetime:
    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    day = min(moment.day, 28)
    return moment.replace(year=year, month=month, day=day)


def _next_month_start(now: datetime) -> datetime:
    return _add_one_month(_month_start(now))


class Grant(BaseModel):
    id: str
    amount: int
    kind: GrantKind
    created_at: datetime
    expires_at: Optional[datetime] = None
    counterparty_id: Optional[str] = None
    package_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


class Transaction(BaseModel):
    id: str
    amount: int
    kind: TransactionKind
    description: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    reference_id: Optional[str] = None


class FreeTier(BaseModel):
    monthly_limit: int
    used_this_month: int = 0
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.monthly_limit - self.used_this_month)


class Account(BaseModel):
    id: str
    balance: int = 0
    total_earned: int = 0
    total_spent: int = 0
    grants: List[Grant] = Field(default_factory=list)
    free_tier: FreeTier
    transactions: List[Transaction] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    def expired_grant_amount(self, now: datetime) -> int:
        return sum(grant.amount for grant in self.grants if grant.is_expired(now))

    def valid_balance(self, now: datetime) -> int:
        return max(0, self.balance - self.expired_grant_amount(now))


@dataclass(frozen=True)
class AvailableCredits:
    total: int
    paid: int
    free: int
    free_remaining: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "paid": self.paid,
            "free": self.free,
            "free_remaining": self.free_remaining,
        }


@dataclass(frozen=True)
class SpendResult:
    success: bool
    new_balance: int
    transaction_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    success: bool
    new_balance: int
    transaction_id: str


@dataclass(frozen=True)
class InviteResult:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class PurchaseResult:
    success: bool
    new_balance: int = 0
    transaction_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class _AccountLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class CreditLedger:
    """Business rules over one account record per user id.

    Every read-modify-write on an account runs under that account's lock, so
    concurrent spends on one account never interleave while different
    accounts proceed independently.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        free_monthly_credits: Optional[int] = None,
        referrer_bonus: Optional[int] = None,
        invitee_bonus: Optional[int] = None,
        max_invites_per_month: Optional[int] = None,
        invite_expires_days: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.free_monthly_credits = (
            settings.FREE_MONTHLY_CREDITS if free_monthly_credits is None else free_monthly_credits
        )
        self.referrer_bonus = settings.INVITE_REFERRER_BONUS if referrer_bonus is None else referrer_bonus
        self.invitee_bonus = settings.INVITE_INVITEE_BONUS if invitee_bonus is None else invitee_bonus
        self.max_invites_per_month = (
            settings.INVITE_MAX_PER_MONTH if max_invites_per_month is None else max_invites_per_month
        )
        self.invite_expires_days = (
            settings.INVITE_CREDIT_EXPIRES_DAYS if invite_expires_days is None else invite_expires_days
        )
        self.clock = clock
        self._locks: Dict[str, _AccountLock] = {}

    @asynccontextmanager
    async def _lock_for(self, user_id: str) -> AsyncIterator[None]:
        """Serialize work on one account; the lock is dropped once nobody holds or awaits it."""
        entry = self._locks.get(user_id)
        if entry is None:
            entry = self._locks[user_id] = _AccountLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(user_id, None)

    def _new_account(self, user_id: str, now: datetime) -> Account:
        return Account(
            id=user_id,
            free_tier=FreeTier(
                monthly_limit=max(int(self.free_monthly_credits), 0),
                used_this_month=0,
                reset_at=_next_month_start(now),
            ),
            created_at=now,
            updated_at=now,
        )

    async def _persist(self, account: Account) -> None:
        await self.store.put(account.id, account.model_dump(mode="json"))

    async def _load_account(self, user_id: str, now: datetime) -> Account:
        """Fetch or lazily create the account, applying any due free-tier reset."""
        raw = await self.store.get(user_id)
        if raw is None:
            account = self._new_account(user_id, now)
            await self._persist(account)
            logger.info("Created credit account for %s", user_id)
            return account

        account = Account.model_validate(raw)
        if now >= account.free_tier.reset_at:
            reset_at = account.free_tier.reset_at
            while reset_at <= now:
                reset_at = _add_one_month(reset_at)
            account.free_tier.used_this_month = 0
            account.free_tier.reset_at = reset_at
            account.updated_at = now
            await self._persist(account)
            logger.info("Reset free tier for %s; next reset at %s", user_id, reset_at.isoformat())
        return account

    @staticmethod
    def _available(account: Account, now: datetime) -> AvailableCredits:
        paid = account.valid_balance(now)
        free_remaining = account.free_tier.remaining
        return AvailableCredits(
            total=paid + free_remaining,
            paid=paid,
            free=free_remaining,
            free_remaining=free_remaining,
        )

    def _record_credit(
        self,
        account: Account,
        *,
        amount: int,
        kind: TransactionKind,
        description: str,
        now: datetime,
        expires_at: Optional[datetime] = None,
        reference_id: Optional[str] = None,
    ) -> Transaction:
        transaction = Transaction(
            id=_new_transaction_id(),
            amount=amount,
            kind=kind,
            description=description,
            created_at=now,
            expires_at=expires_at,
            reference_id=reference_id,
        )
        account.balance += amount
        account.total_earned += amount
        account.transactions.append(transaction)
        account.updated_at = now
        return transaction

    async def get_available(self, user_id: str) -> AvailableCredits:
        now = self.clock()
        async with self._lock_for(user_id):
            account = await self._load_account(user_id, now)
        return self._available(account, now)

    async def get_account(self, user_id: str) -> Account:
        now = self.clock()
        async with self._lock_for(user_id):
            return await self._load_account(user_id, now)

    async def spend(
        self,
        user_id: str,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
    ) -> SpendResult:
        """Consume paid credit first, then the free tier. All-or-nothing."""
        if int(amount) <= 0:
            raise ValueError("amount must be greater than 0")
        amount = int(amount)
        now = self.clock()
        async with self._lock_for(user_id):
            account = await self._load_account(user_id, now)
            available = self._available(account, now)
            if available.total < amount:
                return SpendResult(
                    success=False,
                    new_balance=available.total,
                    error=ERROR_INSUFFICIENT,
                )

            remaining = amount
            from_paid = min(available.paid, remaining)
            account.balance -= from_paid
            remaining -= from_paid
            if remaining > 0:
                account.free_tier.used_this_month += remaining

            transaction = Transaction(
                id=_new_transaction_id(),
                amount=-amount,
                kind="spend",
                description=description,
                created_at=now,
                reference_id=reference_id,
            )
            account.total_spent += amount
            account.transactions.append(transaction)
            account.updated_at = now
            await self._persist(account)

        return SpendResult(
            success=True,
            new_balance=self._available(account, now).total,
            transaction_id=transaction.id,
        )

    async def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference_id: Optional[str] = None,
    ) -> RefundResult:
        """Credit ``amount`` back into the paid balance, never into the free tier."""
        if int(amount) <= 0:
            raise ValueError("amount must be greater than 0")
        now = self.clock()
        async with self._lock_for(user_id):
            account = await self._load_account(user_id, now)
            transaction = self._record_credit(
                account,
                amount=int(amount),
                kind="refund",
                description=f"Refund: {reason}",
                now=now,
                reference_id=reference_id,
            )
            await self._persist(account)
        logger.info("Refunded %s credit(s) to %s: %s", amount, user_id, reason)
        return RefundResult(
            success=True,
            new_balance=self._available(account, now).total,
            transaction_id=transaction.id,
        )

    def _add_grant(
        self,
        account: Account,
        *,
        amount: int,
        kind: GrantKind,
        description: str,
        now: datetime,
        expires_at: Optional[datetime] = None,
        counterparty_id: Optional[str] = None,
        package_id: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> Transaction:
        transaction = self._record_credit(
            account,
            amount=amount,
            kind=kind,
            description=description,
            now=now,
            expires_at=expires_at,
            reference_id=reference_id,
        )
        account.grants.append(
            Grant(
                id=transaction.id,
                amount=amount,
                kind=kind,
                created_at=now,
                expires_at=expires_at,
                counterparty_id=counterparty_id,
                package_id=package_id,
            )
        )
        return transaction

    async def grant_invite_reward(self, referrer_id: str, invitee_id: str) -> InviteResult:
        """Reward both sides of an invite with credits that expire together."""
        if referrer_id == invitee_id:
            return InviteResult(success=False, error=ERROR_SELF_INVITE)

        now = self.clock()
        first, second = sorted((referrer_id, invitee_id))
        async with self._lock_for(first), self._lock_for(second):
            referrer = await self._load_account(referrer_id, now)
            invitee = await self._load_account(invitee_id, now)

            already_invited = any(
                grant.kind == "invite-bonus" and grant.counterparty_id == referrer_id
                for grant in invitee.grants
            )
            if already_invited:
                return InviteResult(success=False, error=ERROR_ALREADY_INVITED)

            month_start = _month_start(now)
            invites_this_month = sum(
                1
                for grant in referrer.grants
                if grant.kind == "invite-earned" and grant.created_at >= month_start
            )
            if invites_this_month >= self.max_invites_per_month:
                return InviteResult(success=False, error=ERROR_INVITE_LIMIT)

            expires_at = now + timedelta(days=self.invite_expires_days)
            self._add_grant(
                referrer,
                amount=self.referrer_bonus,
                kind="invite-earned",
                description="Invite reward",
                now=now,
                expires_at=expires_at,
                counterparty_id=invitee_id,
            )
            self._add_grant(
                invitee,
                amount=self.invitee_bonus,
                kind="invite-bonus",
                description="Welcome bonus from invite",
                now=now,
                expires_at=expires_at,
                counterparty_id=referrer_id,
            )
            await self._persist(referrer)
            await self._persist(invitee)

        logger.info("Granted invite reward: referrer=%s invitee=%s", referrer_id, invitee_id)
        return InviteResult(success=True)

    async def add_purchase(
        self,
        user_id: str,
        *,
        credits: int,
        description: str = "Credit purchase",
        package_id: Optional[str] = None,
        billing_reference: Optional[str] = None,
        expires_in_days: Optional[int] = None,
    ) -> PurchaseResult:
        """Append a purchase grant; entry point for confirmed payments."""
        if int(credits) <= 0:
            raise ValueError("credits must be greater than 0")
        now = self.clock()
        expires_at = now + timedelta(days=expires_in_days) if expires_in_days else None
        async with self._lock_for(user_id):
            account = await self._load_account(user_id, now)
            transaction = self._add_grant(
                account,
                amount=int(credits),
                kind="purchase",
                description=description,
                now=now,
                expires_at=expires_at,
                package_id=package_id,
                reference_id=billing_reference,
            )
            await self._persist(account)
        return PurchaseResult(
            success=True,
            new_balance=self._available(account, now).total,
            transaction_id=transaction.id,
        )

    async def purchase_package(
        self,
        user_id: str,
        package_id: str,
        billing_reference: Optional[str] = None,
    ) -> PurchaseResult:
        package = CREDIT_PACKAGES.get(package_id)
        if package is None:
            return PurchaseResult(success=False, error=ERROR_UNKNOWN_PACKAGE)
        if package.price_cents == 0:
            return PurchaseResult(success=False, error=ERROR_FREE_PACKAGE)
        return await self.add_purchase(
            user_id,
            credits=package.credits,
            description=f"Purchased {package.name} package",
            package_id=package.id,
            billing_reference=billing_reference,
            expires_in_days=package.expires_in_days,
        )

    async def get_summary(self, user_id: str, limit: int = 30) -> Dict[str, Any]:
        now = self.clock()
        async with self._lock_for(user_id):
            account = await self._load_account(user_id, now)
        available = self._available(account, now)
        recent = sorted(account.transactions, key=lambda item: item.created_at, reverse=True)[:limit]
        return {
            **available.as_dict(),
            "total_earned": account.total_earned,
            "total_spent": account.total_spent,
            "free_monthly_credits": account.free_tier.monthly_limit,
            "free_reset_at": account.free_tier.reset_at.isoformat(),
            "recent_entries": [
                {
                    "id": entry.id,
                    "kind": entry.kind,
                    "amount": entry.amount,
                    "description": entry.description,
                    "created_at": entry.created_at.isoformat(),
                    "expires_at": entry.expires_at.isoformat() if entry.expires_at else None,
                }
                for entry in recent
            ],
        }
