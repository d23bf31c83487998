"""Shareable invite codes that route redemptions into the credit ledger."""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from services.credits import CreditLedger, InviteResult
from services.stores import RecordStore

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6
MAX_CODE_ATTEMPTS = 10
ERROR_INVALID_CODE = "invalid invite code"


class InviteCode(BaseModel):
    code: str
    owner_id: str
    created_at: datetime
    invitees: List[str] = Field(default_factory=list)
    total_earned: int = 0


class InviteRegistry:
    """Maps each user to one invite code and each code back to its owner."""

    def __init__(self, codes: RecordStore, owners: RecordStore, ledger: CreditLedger) -> None:
        self.codes = codes
        self.owners = owners
        self.ledger = ledger
        self._lock = asyncio.Lock()

    @staticmethod
    def _random_code() -> str:
        return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))

    async def get_or_create_code(self, user_id: str) -> str:
        async with self._lock:
            owner = await self.owners.get(user_id)
            if owner:
                return owner["code"]

            for _ in range(MAX_CODE_ATTEMPTS):
                code = self._random_code()
                if await self.codes.get(code) is None:
                    break
            else:
                raise RuntimeError("Could not allocate a unique invite code")

            record = InviteCode(code=code, owner_id=user_id, created_at=datetime.now(timezone.utc))
            await self.codes.put(code, record.model_dump(mode="json"))
            await self.owners.put(user_id, {"code": code})
            logger.info("Allocated invite code %s for %s", code, user_id)
            return code

    async def get_stats(self, user_id: str) -> Dict[str, Any]:
        code = await self.get_or_create_code(user_id)
        raw = await self.codes.get(code)
        record = InviteCode.model_validate(raw)
        return {
            "code": record.code,
            "total_invites": len(record.invitees),
            "total_earned": record.total_earned,
            "invitees": list(record.invitees),
        }

    async def redeem(self, code: str, invitee_id: str) -> InviteResult:
        normalized = (code or "").strip().upper()
        async with self._lock:
            raw = await self.codes.get(normalized)
            if raw is None:
                return InviteResult(success=False, error=ERROR_INVALID_CODE)
            record = InviteCode.model_validate(raw)

            result = await self.ledger.grant_invite_reward(record.owner_id, invitee_id)
            if not result.success:
                return result

            record.invitees.append(invitee_id)
            record.total_earned += self.ledger.referrer_bonus
            await self.codes.put(normalized, record.model_dump(mode="json"))
        return result
