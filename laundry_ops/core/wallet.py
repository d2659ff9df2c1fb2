"""
Customer wallet ledger.

Every balance change is an append-only WalletTransaction written in the same
storage transaction as the balance update, with the wallet row locked
(SELECT ... FOR UPDATE). Completed entries get consecutive ledger_sequence
numbers per wallet, so the balance can always be replayed from the ledger.
"""
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from laundry_ops.config import Settings, get_settings
from laundry_ops.database.connection import get_session_factory
from laundry_ops.database.models import Wallet, WalletTransaction, utcnow
from laundry_ops.domain.actors import Actor
from laundry_ops.domain.audit import WalletAdjustmentAudit, WalletPaymentAudit, dump_audit
from laundry_ops.domain.enums import EntryDirection, TransactionStatus, TransactionType
from laundry_ops.exceptions import (
    ConsistencyError,
    InsufficientBalanceError,
    NotFoundError,
    NotPermittedError,
    ValidationError,
)
from laundry_ops.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CREDIT_TYPES = frozenset({TransactionType.DEPOSIT, TransactionType.REFUND})
DEBIT_TYPES = frozenset(
    {TransactionType.WITHDRAWAL, TransactionType.PAYMENT, TransactionType.TRANSFER}
)

MetadataArg = Optional[Union[BaseModel, Dict[str, Any]]]


def _metadata_json(metadata: MetadataArg) -> Optional[Dict[str, Any]]:
    if isinstance(metadata, BaseModel):
        return dump_audit(metadata)
    return metadata


def direction_for(transaction_type: TransactionType) -> EntryDirection:
    """
    Ledger direction of a non-adjustment transaction type.

    Raises:
        ValidationError: For ADJUSTMENT, whose direction depends on the amount
    """
    if transaction_type in CREDIT_TYPES:
        return EntryDirection.CREDIT
    if transaction_type in DEBIT_TYPES:
        return EntryDirection.DEBIT
    raise ValidationError(
        "Balance adjustments must go through adjust_balance",
        transaction_type=transaction_type.value,
    )


class WalletLedger:
    """
    Wallet service.

    Public coroutines own their storage transaction. Methods taking a ``db``
    argument run inside the caller's transaction so payments and
    reconciliation can combine ledger writes with their own.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()

    # Lookups

    @staticmethod
    async def _find_by_customer(db: AsyncSession, customer_id: int) -> Optional[Wallet]:
        result = await db.execute(select(Wallet).where(Wallet.customer_id == customer_id))
        return result.scalar_one_or_none()

    async def get_wallet(self, customer_id: int) -> Wallet:
        """
        Get a customer's wallet.

        Raises:
            NotFoundError: If the customer has no wallet
        """
        async with self.session_factory() as db:
            wallet = await self._find_by_customer(db, customer_id)
        if wallet is None:
            raise NotFoundError(
                f"Wallet for customer {customer_id} not found", customer_id=customer_id
            )
        return wallet

    async def get_wallet_by_id(self, wallet_id: int) -> Wallet:
        """
        Get a wallet by id.

        Raises:
            NotFoundError: If the wallet does not exist
        """
        async with self.session_factory() as db:
            wallet = await db.get(Wallet, wallet_id)
        if wallet is None:
            raise NotFoundError(f"Wallet {wallet_id} not found", wallet_id=wallet_id)
        return wallet

    async def create_wallet_for_customer(
        self, customer_id: int, currency: Optional[str] = None
    ) -> Wallet:
        """
        Create the customer's wallet, or return the existing one.

        Concurrent creates race on the unique customer_id constraint; the
        loser re-reads and returns the winner's wallet.

        Args:
            customer_id: Customer id
            currency: Wallet currency (defaults to the configured currency)

        Returns:
            Wallet: The customer's wallet
        """
        async with self.session_factory() as db:
            existing = await self._find_by_customer(db, customer_id)
        if existing is not None:
            return existing

        wallet = Wallet(
            customer_id=customer_id,
            balance_fils=0,
            currency=(currency or self.settings.default_currency).upper(),
            is_active=True,
            ledger_sequence=0,
        )
        try:
            async with self.session_factory() as db, db.begin():
                db.add(wallet)
        except IntegrityError:
            logger.info("wallet_create_conflict", customer_id=customer_id)
            async with self.session_factory() as db:
                existing = await self._find_by_customer(db, customer_id)
            if existing is None:
                raise
            return existing

        logger.info(
            "wallet_created",
            wallet_id=wallet.id,
            customer_id=customer_id,
            currency=wallet.currency,
        )
        return wallet

    # In-session primitives

    @staticmethod
    async def lock_wallet(db: AsyncSession, wallet_id: int) -> Wallet:
        """
        Load a wallet row with FOR UPDATE.

        Raises:
            NotFoundError: If the wallet does not exist
        """
        result = await db.execute(
            select(Wallet)
            .where(Wallet.id == wallet_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()
        if wallet is None:
            raise NotFoundError(f"Wallet {wallet_id} not found", wallet_id=wallet_id)
        return wallet

    @staticmethod
    async def lock_wallet_for_customer(db: AsyncSession, customer_id: int) -> Wallet:
        result = await db.execute(
            select(Wallet)
            .where(Wallet.customer_id == customer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()
        if wallet is None:
            raise NotFoundError(
                f"Wallet for customer {customer_id} not found", customer_id=customer_id
            )
        return wallet

    async def post_entry(
        self,
        db: AsyncSession,
        wallet: Wallet,
        transaction_type: TransactionType,
        direction: EntryDirection,
        amount_fils: int,
        description: str,
        reference: Optional[str] = None,
        metadata: MetadataArg = None,
        require_active: bool = True,
    ) -> WalletTransaction:
        """
        Append a COMPLETED entry and move the balance.

        The wallet must already be locked by the caller.

        Raises:
            ValidationError: If the wallet is inactive or the amount is not positive
            InsufficientBalanceError: If a debit would drive the balance below zero
        """
        if amount_fils <= 0:
            metrics.record_wallet_rejection("invalid_amount")
            raise ValidationError("Amount must be positive", amount_fils=amount_fils)
        if require_active and not wallet.is_active:
            metrics.record_wallet_rejection("inactive")
            raise ValidationError(f"Wallet {wallet.id} is inactive", wallet_id=wallet.id)

        signed = amount_fils if direction is EntryDirection.CREDIT else -amount_fils
        balance_before = wallet.balance_fils
        balance_after = balance_before + signed
        if balance_after < 0:
            metrics.record_wallet_rejection("insufficient_balance")
            raise InsufficientBalanceError(
                f"Insufficient balance in wallet {wallet.id}",
                wallet_id=wallet.id,
                balance_fils=balance_before,
                requested_fils=amount_fils,
            )

        now = utcnow()
        wallet.ledger_sequence += 1
        entry = WalletTransaction(
            wallet_id=wallet.id,
            transaction_type=transaction_type,
            direction=direction,
            amount_fils=amount_fils,
            balance_before_fils=balance_before,
            balance_after_fils=balance_after,
            status=TransactionStatus.COMPLETED,
            description=description,
            reference=reference,
            meta=_metadata_json(metadata),
            ledger_sequence=wallet.ledger_sequence,
            processed_at=now,
        )
        wallet.balance_fils = balance_after
        wallet.last_transaction_at = now
        db.add(entry)
        await db.flush()

        metrics.record_wallet_transaction(
            transaction_type.value, TransactionStatus.COMPLETED.value, amount_fils
        )
        return entry

    async def open_pending_credit(
        self,
        db: AsyncSession,
        wallet: Wallet,
        amount_fils: int,
        description: str,
        reference: Optional[str] = None,
        metadata: MetadataArg = None,
        transaction_type: TransactionType = TransactionType.DEPOSIT,
    ) -> WalletTransaction:
        """
        Record a PENDING credit without moving the balance.

        Balance snapshots are placeholders until complete_pending_transaction
        recomputes them against the balance at settlement time.
        """
        if amount_fils <= 0:
            metrics.record_wallet_rejection("invalid_amount")
            raise ValidationError("Amount must be positive", amount_fils=amount_fils)
        if not wallet.is_active:
            metrics.record_wallet_rejection("inactive")
            raise ValidationError(f"Wallet {wallet.id} is inactive", wallet_id=wallet.id)

        entry = WalletTransaction(
            wallet_id=wallet.id,
            transaction_type=transaction_type,
            direction=EntryDirection.CREDIT,
            amount_fils=amount_fils,
            balance_before_fils=wallet.balance_fils,
            balance_after_fils=wallet.balance_fils,
            status=TransactionStatus.PENDING,
            description=description,
            reference=reference,
            meta=_metadata_json(metadata),
        )
        db.add(entry)
        await db.flush()
        metrics.record_wallet_transaction(
            transaction_type.value, TransactionStatus.PENDING.value, amount_fils
        )
        logger.info(
            "wallet_pending_credit_opened",
            wallet_id=wallet.id,
            transaction_id=entry.id,
            amount_fils=amount_fils,
        )
        return entry

    @staticmethod
    async def _lock_transaction(db: AsyncSession, transaction_id: int) -> WalletTransaction:
        result = await db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError(
                f"Wallet transaction {transaction_id} not found", transaction_id=transaction_id
            )
        return entry

    async def complete_pending_transaction(
        self,
        db: AsyncSession,
        transaction_id: int,
        audit: Optional[BaseModel] = None,
    ) -> bool:
        """
        Apply a PENDING entry to the balance.

        Only a PENDING entry is applied; COMPLETED or FAILED entries are left
        untouched, so repeated settlement of the same top-up credits once.

        Args:
            db: Session with an open transaction
            transaction_id: Pending wallet transaction id
            audit: Optional audit model replacing the entry metadata

        Returns:
            bool: True if the entry was completed by this call
        """
        entry = await self._lock_transaction(db, transaction_id)
        if entry.status is not TransactionStatus.PENDING:
            logger.info(
                "wallet_transaction_already_final",
                transaction_id=transaction_id,
                status=entry.status.value,
            )
            return False

        wallet = await self.lock_wallet(db, entry.wallet_id)
        balance_before = wallet.balance_fils
        balance_after = balance_before + entry.signed_amount_fils
        if balance_after < 0:
            metrics.record_wallet_rejection("insufficient_balance")
            raise InsufficientBalanceError(
                f"Insufficient balance in wallet {wallet.id}",
                wallet_id=wallet.id,
                balance_fils=balance_before,
                requested_fils=entry.amount_fils,
            )

        now = utcnow()
        wallet.ledger_sequence += 1
        wallet.balance_fils = balance_after
        wallet.last_transaction_at = now
        entry.balance_before_fils = balance_before
        entry.balance_after_fils = balance_after
        entry.status = TransactionStatus.COMPLETED
        entry.ledger_sequence = wallet.ledger_sequence
        entry.processed_at = now
        if audit is not None:
            entry.meta = dump_audit(audit)
        await db.flush()

        metrics.record_wallet_transaction(
            entry.transaction_type.value, TransactionStatus.COMPLETED.value, entry.amount_fils
        )
        logger.info(
            "wallet_pending_transaction_completed",
            transaction_id=transaction_id,
            wallet_id=wallet.id,
            balance_after_fils=balance_after,
        )
        return True

    async def fail_pending_transaction(
        self, db: AsyncSession, transaction_id: int, reason: str
    ) -> bool:
        """
        Mark a PENDING entry FAILED; the balance never moves.

        Returns:
            bool: True if the entry was failed by this call
        """
        entry = await self._lock_transaction(db, transaction_id)
        if entry.status is not TransactionStatus.PENDING:
            logger.info(
                "wallet_transaction_already_final",
                transaction_id=transaction_id,
                status=entry.status.value,
            )
            return False

        entry.status = TransactionStatus.FAILED
        entry.processed_at = utcnow()
        entry.description = f"{entry.description} (failed: {reason})"[:1000]
        await db.flush()

        metrics.record_wallet_transaction(
            entry.transaction_type.value, TransactionStatus.FAILED.value, entry.amount_fils
        )
        logger.info("wallet_pending_transaction_failed", transaction_id=transaction_id, reason=reason)
        return True

    # Public operations

    async def process_wallet_transaction(
        self,
        wallet_id: int,
        transaction_type: TransactionType,
        amount_fils: int,
        description: str,
        reference: Optional[str] = None,
        metadata: MetadataArg = None,
    ) -> WalletTransaction:
        """
        Post a deposit, withdrawal, payment, refund or transfer leg.

        Args:
            wallet_id: Wallet to post to
            transaction_type: Any type except ADJUSTMENT
            amount_fils: Positive amount in fils
            description: Ledger description
            reference: Optional external reference
            metadata: Optional audit model or dict

        Returns:
            WalletTransaction: The COMPLETED entry

        Raises:
            NotFoundError: If the wallet does not exist
            ValidationError: If the wallet is inactive, the amount is not positive
                or the type is ADJUSTMENT
            InsufficientBalanceError: If a debit exceeds the balance
        """
        transaction_type = TransactionType(transaction_type)
        direction = direction_for(transaction_type)

        async with self.session_factory() as db, db.begin():
            wallet = await self.lock_wallet(db, wallet_id)
            entry = await self.post_entry(
                db,
                wallet,
                transaction_type,
                direction,
                amount_fils,
                description,
                reference=reference,
                metadata=metadata,
            )

        logger.info(
            "wallet_transaction_processed",
            wallet_id=wallet_id,
            transaction_id=entry.id,
            transaction_type=transaction_type.value,
            amount_fils=amount_fils,
            balance_after_fils=entry.balance_after_fils,
        )
        return entry

    async def transfer(
        self,
        from_wallet_id: int,
        to_wallet_id: int,
        amount_fils: int,
        description: str,
    ) -> Tuple[WalletTransaction, WalletTransaction]:
        """
        Move funds between two wallets atomically.

        Both rows are locked in id order so opposing transfers cannot deadlock.

        Returns:
            Tuple[WalletTransaction, WalletTransaction]: (debit, credit) entries
        """
        if from_wallet_id == to_wallet_id:
            raise ValidationError("Cannot transfer to the same wallet", wallet_id=from_wallet_id)

        async with self.session_factory() as db, db.begin():
            locked = {}
            for wallet_id in sorted((from_wallet_id, to_wallet_id)):
                locked[wallet_id] = await self.lock_wallet(db, wallet_id)
            source, target = locked[from_wallet_id], locked[to_wallet_id]
            if source.currency != target.currency:
                raise ValidationError(
                    "Cannot transfer between wallets in different currencies",
                    from_currency=source.currency,
                    to_currency=target.currency,
                )

            debit = await self.post_entry(
                db,
                source,
                TransactionType.TRANSFER,
                EntryDirection.DEBIT,
                amount_fils,
                description,
                metadata=WalletPaymentAudit(counterparty_wallet_id=target.id),
            )
            credit = await self.post_entry(
                db,
                target,
                TransactionType.TRANSFER,
                EntryDirection.CREDIT,
                amount_fils,
                description,
                metadata=WalletPaymentAudit(counterparty_wallet_id=source.id),
            )

        logger.info(
            "wallet_transfer_completed",
            from_wallet_id=from_wallet_id,
            to_wallet_id=to_wallet_id,
            amount_fils=amount_fils,
        )
        return debit, credit

    async def adjust_balance(
        self,
        customer_id: int,
        actor: Actor,
        reason: str,
        new_balance_fils: Optional[int] = None,
        delta_fils: Optional[int] = None,
        admin_notes: Optional[str] = None,
        admin_email: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Privileged balance correction.

        Give either the absolute ``new_balance_fils`` or a signed ``delta_fils``.
        The wallet is created if the customer has none.

        Raises:
            NotPermittedError: If the actor is not an admin
            ValidationError: On a bad argument combination, short reason or no-op
            ConsistencyError: If the resulting balance would be negative
        """
        if not actor.is_admin:
            raise NotPermittedError(
                f"Role {actor.role.value} cannot adjust wallet balances", role=actor.role.value
            )
        if (new_balance_fils is None) == (delta_fils is None):
            raise ValidationError("Provide exactly one of new_balance_fils or delta_fils")
        reason = (reason or "").strip()
        if len(reason) < 3:
            raise ValidationError("Adjustment reason must be at least 3 characters")

        wallet_id = (await self.create_wallet_for_customer(customer_id)).id

        async with self.session_factory() as db, db.begin():
            wallet = await self.lock_wallet(db, wallet_id)
            previous = wallet.balance_fils
            target = new_balance_fils if new_balance_fils is not None else previous + delta_fils
            if target < 0:
                raise ConsistencyError(
                    "Adjustment would make the balance negative",
                    wallet_id=wallet.id,
                    balance_fils=previous,
                    target_fils=target,
                )
            diff = target - previous
            if diff == 0:
                raise ValidationError("Adjustment does not change the balance", wallet_id=wallet.id)

            audit = WalletAdjustmentAudit(
                actor_id=actor.staff_id,
                actor_role=actor.role.value,
                mode="absolute" if new_balance_fils is not None else "delta",
                reason=reason,
                admin_email=admin_email or actor.email,
                admin_notes=admin_notes,
                previous_balance_fils=previous,
                new_balance_fils=target,
            )
            entry = await self.post_entry(
                db,
                wallet,
                TransactionType.ADJUSTMENT,
                EntryDirection.CREDIT if diff > 0 else EntryDirection.DEBIT,
                abs(diff),
                f"Admin adjustment: {reason}",
                metadata=audit,
                require_active=False,
            )

        logger.warning(
            "wallet_balance_adjusted",
            wallet_id=wallet_id,
            customer_id=customer_id,
            staff_id=actor.staff_id,
            previous_balance_fils=previous,
            new_balance_fils=target,
            reason=reason,
        )
        return entry

    async def get_transaction_history(
        self, wallet_id: int, limit: int = 50, offset: int = 0
    ) -> List[WalletTransaction]:
        """Ledger entries of a wallet, newest first."""
        async with self.session_factory() as db:
            if await db.get(Wallet, wallet_id) is None:
                raise NotFoundError(f"Wallet {wallet_id} not found", wallet_id=wallet_id)
            result = await db.execute(
                select(WalletTransaction)
                .where(WalletTransaction.wallet_id == wallet_id)
                .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())
