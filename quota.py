"""Per-account byte quota ledger; every method runs in the caller's session."""

import logging

from sqlalchemy import case, func, select, update

from config import GIB
from errors import InvalidRequest, NotFound, QuotaExceeded
from models import Account, File, Plan, UploadSession

logger = logging.getLogger(__name__)

DEFAULT_PLAN_QUOTAS = {
    Plan.FREE: 15 * GIB,
    Plan.PRO: 100 * GIB,
}


class QuotaLedger:
    def __init__(self, plan_quotas=None):
        self.plan_quotas = dict(DEFAULT_PLAN_QUOTAS)
        if plan_quotas:
            self.plan_quotas.update(plan_quotas)

    @classmethod
    def from_config(cls, config):
        return cls({
            Plan.FREE: config["FREE_TIER_QUOTA_BYTES"],
            Plan.PRO: config["PRO_TIER_QUOTA_BYTES"],
        })

    def quota_for(self, plan) -> int:
        try:
            return self.plan_quotas[Plan(plan)]
        except (KeyError, ValueError):
            raise InvalidRequest(f"Unknown plan: {plan}")

    def reserve(self, session, account_id: int, delta: int) -> int:
        """Add ``delta`` bytes to the account, or raise ``QuotaExceeded``.

        Returns the new ``used_bytes``. Nothing is changed on failure.
        """
        if delta < 0:
            raise InvalidRequest("Cannot reserve a negative number of bytes")

        # A concurrent plan change makes the guarded UPDATE miss; retry once
        # with the fresh plan before reporting the quota as exceeded.
        for _ in range(2):
            plan = session.execute(
                select(Account.plan).where(Account.id == account_id)
            ).scalar_one_or_none()
            if plan is None:
                raise NotFound("Account not found")
            limit = self.quota_for(plan)

            result = session.execute(
                update(Account)
                .where(
                    Account.id == account_id,
                    Account.plan == plan,
                    Account.used_bytes + delta <= limit,
                )
                .values(used_bytes=Account.used_bytes + delta)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return self._used(session, account_id)

            current_plan = session.execute(
                select(Account.plan).where(Account.id == account_id)
            ).scalar_one_or_none()
            if current_plan == plan:
                break

        logger.info("Quota exceeded for account %s (requested %d bytes)", account_id, delta)
        raise QuotaExceeded()

    def release(self, session, account_id: int, delta: int) -> int:
        """Subtract ``delta`` bytes, clamping the counter at zero."""
        if delta < 0:
            logger.warning(
                "Ignoring negative quota release of %d bytes for account %s", delta, account_id
            )
            return self._used(session, account_id)
        if delta == 0:
            return self._used(session, account_id)

        used = self._used(session, account_id)
        if used < delta:
            logger.warning(
                "Quota release of %d bytes exceeds used %d bytes for account %s; clamping to 0",
                delta, used, account_id,
            )

        session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(
                used_bytes=case(
                    (Account.used_bytes > delta, Account.used_bytes - delta),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        return self._used(session, account_id)

    def reconcile(self, session, account_id: int) -> int:
        """Overwrite ``used_bytes`` with the ground truth and return it.

        Ground truth is every non-trashed file plus the declared size of every
        upload session still open, since those bytes are reserved until the
        session completes or aborts.
        """
        if session.get(Account, account_id) is None:
            raise NotFound("Account not found")

        file_bytes = session.execute(
            select(func.coalesce(func.sum(File.size_bytes), 0)).where(
                File.account_id == account_id,
                File.trashed_at.is_(None),
            )
        ).scalar_one()
        session_bytes = session.execute(
            select(func.coalesce(func.sum(UploadSession.size_bytes), 0)).where(
                UploadSession.account_id == account_id,
            )
        ).scalar_one()
        actual = max(int(file_bytes) + int(session_bytes), 0)

        previous = self._used(session, account_id)
        session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(used_bytes=actual)
            .execution_options(synchronize_session=False)
        )
        if previous != actual:
            logger.info(
                "Reconciled account %s: used_bytes %d -> %d", account_id, previous, actual
            )
        return actual

    def usage(self, session, account_id: int) -> dict:
        account = session.get(Account, account_id)
        if account is None:
            raise NotFound("Account not found")
        total = self.quota_for(account.plan)
        return {
            "usedBytes": account.used_bytes,
            "totalBytes": total,
            "usedPercentage": round(account.used_bytes * 100 / total, 2) if total else 0,
            "plan": account.plan.value,
        }

    @staticmethod
    def _used(session, account_id):
        # Counter UPDATEs bypass the identity map; drop any cached value first.
        cached = session.identity_map.get(session.identity_key(Account, account_id))
        if cached is not None:
            session.expire(cached, ["used_bytes"])
        used = session.execute(
            select(Account.used_bytes).where(Account.id == account_id)
        ).scalar_one_or_none()
        if used is None:
            raise NotFound("Account not found")
        return used
