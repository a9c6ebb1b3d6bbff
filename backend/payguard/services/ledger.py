from typing import Optional

from sqlalchemy.orm import Session

from ..models.payments import CreditBalance, CreditLedgerEntry


class CreditLedger:
    """The credit-granting collaborator. Callers guarantee at most one call per paid payment."""

    def add_credits(self, user_id: str, amount: int, related_payment_id: Optional[str] = None) -> None:
        raise NotImplementedError


class SqlCreditLedger(CreditLedger):
    """Balance row plus ledger entry on the caller's session.

    Nothing is committed here, so the grant lands in the same transaction as the
    payment status change that triggered it.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def add_credits(self, user_id, amount, related_payment_id=None):
        # increment in SQL so concurrent grants for one user don't overwrite each other
        updated = (
            self.db.query(CreditBalance)
            .filter(CreditBalance.user_id == user_id)
            .update({CreditBalance.credits: CreditBalance.credits + int(amount)}, synchronize_session=False)
        )
        if not updated:
            self.db.add(CreditBalance(user_id=user_id, credits=int(amount)))
        self.db.add(
            CreditLedgerEntry(
                user_id=user_id,
                change=int(amount),
                reason="credit_purchase",
                related_payment_id=related_payment_id,
            )
        )
        self.db.flush()


def get_balance(db: Session, user_id: str) -> int:
    credits = db.query(CreditBalance.credits).filter(CreditBalance.user_id == user_id).scalar()
    return int(credits or 0)
