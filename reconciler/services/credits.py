"""Credit ledger: debits at job creation, idempotent refunds on job failure."""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from reconciler.db.models import JobKind, UsageLog, User

logger = logging.getLogger(__name__)


class RefundStatus(str, enum.Enum):
    REFUNDED = "refunded"
    ALREADY_REFUNDED = "already_refunded"
    NOTHING_TO_REFUND = "nothing_to_refund"


@dataclass
class RefundResult:
    status: RefundStatus
    amount: int = 0
    entry_id: Optional[str] = None

    @property
    def refunded(self) -> bool:
        return self.status == RefundStatus.REFUNDED


def refund_idempotency_key(job_id: str, reason_tag: str) -> str:
    return f"refund:{job_id}:{reason_tag}"


def _kind_value(job_kind) -> Optional[str]:
    if job_kind is None:
        return None
    return job_kind.value if isinstance(job_kind, JobKind) else str(job_kind)


class CreditLedger:
    """
    Append-only usage ledger plus the user's running ``credits_used`` balance.

    Each public method runs in its own session and transaction. Balance
    changes are single SQL expressions, never read-modify-write.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def charge(
        self,
        job_id: str,
        owner_id: str,
        amount: int,
        job_kind=JobKind.GENERATION,
        reason: Optional[str] = None,
    ) -> UsageLog:
        """
        Debit credits for a job.

        Args:
            job_id: Local job record id
            owner_id: User being charged
            amount: Positive number of credits
            job_kind: Kind of job, recorded as the ledger action
            reason: Free-text audit note

        Returns:
            The debit ledger entry
        """
        if amount <= 0:
            raise ValueError(f"Charge amount must be positive, got {amount}")

        kind = _kind_value(job_kind)
        entry = UsageLog(
            user_id=owner_id,
            job_id=job_id,
            job_kind=kind,
            action=kind or "charge",
            credits_used=amount,
            reason=reason,
        )
        async with self.session_factory() as db:
            db.add(entry)
            await db.execute(
                update(User)
                .where(User.id == owner_id)
                .values(credits_used=User.credits_used + amount)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        logger.info(f"Charged {amount} credits job={job_id} owner={owner_id}")
        return entry

    async def refund(
        self,
        job_id: str,
        owner_id: str,
        reason_tag: str,
        job_kind=None,
        amount: Optional[int] = None,
    ) -> RefundResult:
        """
        Reverse the most recent unreversed debit for a job.

        Safe to call any number of times for the same (job_id, reason_tag):
        only the first call writes. A missing debit is not an error.

        Args:
            job_id: Local job record id
            owner_id: Owner whose balance is credited back
            reason_tag: Why the job is refunded, e.g. "generation" or "training"
            job_kind: Kind of job, recorded on the refund entry
            amount: Credits to return; defaults to the debit amount

        Returns:
            RefundResult describing what happened
        """
        key = refund_idempotency_key(job_id, reason_tag)

        async with self.session_factory() as db:
            already = await db.scalar(select(UsageLog.id).where(UsageLog.idempotency_key == key))
            if already is not None:
                logger.info(f"Refund already recorded job={job_id} owner={owner_id} key={key}")
                return RefundResult(status=RefundStatus.ALREADY_REFUNDED, entry_id=already)

            debit = await self._latest_unreversed_debit(db, job_id, owner_id)
            if debit is None:
                logger.info(f"No refundable debit job={job_id} owner={owner_id}")
                return RefundResult(status=RefundStatus.NOTHING_TO_REFUND)

            refund_amount = debit.credits_used
            if amount:
                if amount != debit.credits_used:
                    logger.warning(
                        f"Job charge {amount} differs from ledger debit {debit.credits_used} "
                        f"job={job_id} owner={owner_id}"
                    )
                refund_amount = amount

            entry = UsageLog(
                user_id=owner_id,
                job_id=job_id,
                job_kind=_kind_value(job_kind) or debit.job_kind,
                action=f"{reason_tag}_refund",
                credits_used=-refund_amount,
                reverses_id=debit.id,
                idempotency_key=key,
                reason=f"Refund for failed {reason_tag}",
                details={"original_entry_id": debit.id},
            )
            db.add(entry)

            try:
                await db.flush()
                entry_id = entry.id
                await db.execute(
                    update(User)
                    .where(User.id == owner_id)
                    .values(credits_used=User.credits_used - refund_amount)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            except IntegrityError:
                # A concurrent delivery wrote the same refund first
                await db.rollback()
                logger.info(f"Refund lost race to concurrent delivery job={job_id} owner={owner_id}")
                return RefundResult(status=RefundStatus.ALREADY_REFUNDED)

        logger.info(f"Refunded {refund_amount} credits job={job_id} owner={owner_id} reason={reason_tag}")
        return RefundResult(status=RefundStatus.REFUNDED, amount=refund_amount, entry_id=entry_id)

    async def _latest_unreversed_debit(
        self, db: AsyncSession, job_id: str, owner_id: str
    ) -> Optional[UsageLog]:
        reversal = aliased(UsageLog)
        result = await db.execute(
            select(UsageLog)
            .where(
                UsageLog.job_id == job_id,
                UsageLog.user_id == owner_id,
                UsageLog.credits_used > 0,
                ~exists().where(reversal.reverses_id == UsageLog.id),
            )
            .order_by(UsageLog.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def balance(self, owner_id: str) -> Optional[int]:
        """Current ``credits_used`` for a user, or None if the user does not exist."""
        async with self.session_factory() as db:
            return await db.scalar(select(User.credits_used).where(User.id == owner_id))
