"""Escrow settlement: hold, release and refund against the payment processor.

Each processor operation is tracked by a ``settlement_records`` row keyed
by (shipment, operation). The row carries the idempotency key sent to the
processor and moves through:

    PENDING    processor outcome unknown (not called yet, or timed out)
    CONFIRMED  processor confirmed; local state not yet committed
    COMMITTED  local state reflects the processor result
    FAILED     processor declined; nothing happened
    ABANDONED  processor effect was reversed (orphaned hold voided)

PENDING and CONFIRMED rows reuse their key on retry, so concurrent or
repeated callers converge on a single processor-side effect. A CONFIRMED
row is never sent to the processor again: its stored result is replayed
into local state.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from raven_engine import constants
from raven_engine.clients.database import (
    SettlementRecord as SettlementORM,
    Transaction as TransactionORM,
    session_scope,
    utcnow,
)
from raven_engine.clients.ledger import (
    held_transaction,
    latest_transaction,
    ledger_scope,
    load_shipment,
    offers_with_status,
)
from raven_engine.clients.notifier import NotificationSender, dispatch
from raven_engine.clients.payment_processor import PaymentProcessor, ProcessorResult
from raven_engine.core.transitions import (
    Aggregate,
    Cancel,
    ConfirmDelivery,
    Effect,
    Refund,
    Release,
    TransitionContext,
    transition,
    unwrap,
)
from raven_engine.errors import (
    AlreadyTerminalError,
    EngineError,
    PaymentCaptureFailed,
    PaymentError,
    PaymentHoldFailed,
    PaymentVoidFailed,
    VersionConflictError,
    WrongStateError,
)
from raven_engine.models.enums import (
    TERMINAL_SHIPMENT_STATUSES,
    TERMINAL_TRANSACTION_STATUSES,
    NotificationKind,
    OfferStatus,
    SettlementOperation,
    SettlementStatus,
    ShipmentStatus,
    TransactionStatus,
)
from raven_engine.models.transaction import SettlementRecord, Transaction, UserTransaction
from raven_engine.utils.fees import FeeSchedule
from raven_engine.utils.ids import generate_id, idempotency_key
from raven_engine.utils.retry import RetryPolicy

LOG = logging.getLogger(__name__)

COMMIT_ATTEMPTS = 3
CANCELLED_MESSAGE = "This delivery was cancelled."

_FAILURES = {
    SettlementOperation.HOLD: PaymentHoldFailed,
    SettlementOperation.RELEASE: PaymentCaptureFailed,
    SettlementOperation.REFUND: PaymentVoidFailed,
}
_OPEN_RECORD_STATUSES = (SettlementStatus.PENDING, SettlementStatus.CONFIRMED)


class EscrowSettlementService:
    """Moves money through the processor and mirrors it into the ledger."""

    def __init__(
        self,
        processor: PaymentProcessor,
        retry_policy: Optional[RetryPolicy] = None,
        fee_schedule: Optional[FeeSchedule] = None,
        notifier: Optional[NotificationSender] = None,
        admin_ids: Optional[Iterable[str]] = None,
    ) -> None:
        self.processor = processor
        self.retry = retry_policy or RetryPolicy()
        self.fees = fee_schedule or FeeSchedule()
        self.notifier = notifier
        self.admin_ids = frozenset(constants.ADMIN_IDS if admin_ids is None else admin_ids)

    # ------------------------------------------------------------------
    # Hold
    # ------------------------------------------------------------------

    def hold(
        self,
        shipment_id: str,
        payer_id: str,
        payee_id: str,
        amount: Decimal,
        currency: str,
    ) -> Transaction:
        """Place a hold and persist a HELD transaction once the processor confirms."""
        self._retire_superseded_hold(shipment_id, payee_id, amount)
        with ledger_scope() as db:
            load_shipment(db, shipment_id)
            if held_transaction(db, shipment_id) is not None:
                raise WrongStateError(f"Escrow is already held for shipment {shipment_id}.")
            record = self._open_record(db, shipment_id, SettlementOperation.HOLD, payer_id, payee_id, amount, currency)
            snapshot = SettlementRecord.model_validate(record, from_attributes=True)

        if snapshot.status != SettlementStatus.CONFIRMED:
            result = self.retry.run(
                lambda: self.processor.hold(payer_id, snapshot.amount, currency, snapshot.idempotency_key),
                label="hold",
            )
            snapshot = self._record_result(snapshot, result)

        transaction = self._commit_hold(snapshot)
        LOG.info(
            "Escrow held for shipment %s: %s %s (fee %s)",
            shipment_id,
            transaction.amount,
            transaction.currency,
            transaction.platform_fee,
        )
        return transaction

    def _retire_superseded_hold(self, shipment_id: str, payee_id: str, amount: Decimal) -> None:
        """Resolve an unfinished hold left by an earlier, reverted match.

        Its key may already carry a processor-side hold for another courier
        or amount, so it cannot be reused for this one.
        """
        with session_scope() as db:
            record = self._find_record(db, shipment_id, SettlementOperation.HOLD)
            if (
                record is None
                or record.status not in _OPEN_RECORD_STATUSES
                or (record.payee_id == payee_id and record.amount == amount)
            ):
                return
            snapshot = SettlementRecord.model_validate(record, from_attributes=True)

        LOG.info("Retiring superseded hold %s for shipment %s", snapshot.idempotency_key, shipment_id)
        try:
            self._reconcile_record(snapshot)
        except PaymentHoldFailed as exc:
            if exc.retryable:
                raise

    def _commit_hold(self, snapshot: SettlementRecord) -> Transaction:
        fee, payout = self.fees.split(snapshot.amount, snapshot.currency)
        with ledger_scope() as db:
            record = db.get(SettlementORM, snapshot.id)
            existing = held_transaction(db, snapshot.shipment_id)
            if existing is not None and existing.hold_reference == record.hold_reference:
                record.status = SettlementStatus.COMMITTED
                return Transaction.model_validate(existing, from_attributes=True)
            transaction = TransactionORM(
                id=generate_id(),
                shipment_id=snapshot.shipment_id,
                payer_id=record.payer_id,
                payee_id=record.payee_id,
                amount=record.amount,
                platform_fee=fee,
                payout_amount=payout,
                currency=record.currency,
                status=TransactionStatus.HELD,
                hold_reference=record.hold_reference,
                created_at=utcnow(),
            )
            db.add(transaction)
            record.status = SettlementStatus.COMMITTED
            db.flush()
            return Transaction.model_validate(transaction, from_attributes=True)

    # ------------------------------------------------------------------
    # Release / Refund
    # ------------------------------------------------------------------

    def release(self, shipment_id: str, actor_id: str) -> Transaction:
        """Capture held funds to the courier and mark the shipment DELIVERED."""
        return self._settle(shipment_id, actor_id, SettlementOperation.RELEASE)

    def refund(self, shipment_id: str, actor_id: str) -> Transaction:
        """Void the hold back to the sender and mark the shipment CANCELLED."""
        return self._settle(shipment_id, actor_id, SettlementOperation.REFUND)

    def _settle(self, shipment_id: str, actor_id: str, operation: SettlementOperation) -> Transaction:
        event = ConfirmDelivery() if operation == SettlementOperation.RELEASE else Cancel()
        expected_effect = Effect.RELEASE_PAYMENT if operation == SettlementOperation.RELEASE else Effect.REFUND_PAYMENT

        with ledger_scope() as db:
            shipment = load_shipment(db, shipment_id)
            transaction = latest_transaction(db, shipment_id)
            if transaction is None:
                if shipment.status in TERMINAL_SHIPMENT_STATUSES:
                    raise AlreadyTerminalError(f"Shipment {shipment_id} is already {shipment.status.value}.")
                raise WrongStateError(f"No escrow is held for shipment {shipment_id}; nothing to settle.")
            if transaction.status in TERMINAL_TRANSACTION_STATUSES:
                raise AlreadyTerminalError(
                    f"Transaction for shipment {shipment_id} is already {transaction.status.value}."
                )

            context = TransitionContext(
                actor_id=actor_id,
                shipment_id=shipment.id,
                sender_id=shipment.sender_id,
                courier_id=shipment.courier_id,
                transaction_status=transaction.status,
                is_admin=actor_id in self.admin_ids,
            )
            user_message = CANCELLED_MESSAGE if shipment.status == ShipmentStatus.CANCELLED else None
            outcome = unwrap(transition(Aggregate.SHIPMENT, shipment.status, event, context), user_message)
            if expected_effect not in outcome.effects:
                raise WrongStateError(f"Shipment {shipment_id} has nothing to settle.")

            if shipment.settlement_claim not in (None, operation):
                raise WrongStateError(
                    f"A {shipment.settlement_claim.value.lower()} is already in progress for shipment {shipment_id}."
                )
            shipment.settlement_claim = operation
            record = self._open_record(
                db,
                shipment_id,
                operation,
                transaction.payer_id,
                transaction.payee_id,
                transaction.amount,
                transaction.currency,
            )
            record.hold_reference = transaction.hold_reference
            db.flush()
            snapshot = SettlementRecord.model_validate(record, from_attributes=True)

        if snapshot.status != SettlementStatus.CONFIRMED:
            result = self.retry.run(lambda: self._call_processor(snapshot), label=operation.value.lower())
            snapshot = self._record_result(snapshot, result)

        settled = self._apply_settlement(snapshot)
        self._notify_settled(settled)
        return settled

    def _call_processor(self, snapshot: SettlementRecord) -> ProcessorResult:
        if snapshot.operation == SettlementOperation.HOLD:
            return self.processor.hold(snapshot.payer_id, snapshot.amount, snapshot.currency, snapshot.idempotency_key)
        if snapshot.operation == SettlementOperation.RELEASE:
            return self.processor.capture(snapshot.hold_reference, snapshot.idempotency_key)
        return self.processor.void(snapshot.hold_reference, snapshot.idempotency_key)

    def _apply_settlement(self, snapshot: SettlementRecord) -> Transaction:
        """Commit a processor-confirmed release/refund, re-reading on conflicts."""
        for attempt in range(1, COMMIT_ATTEMPTS + 1):
            try:
                return self._commit_settlement(snapshot)
            except VersionConflictError:
                if attempt == COMMIT_ATTEMPTS:
                    LOG.error(
                        "Could not commit confirmed %s for shipment %s; left for reconciliation",
                        snapshot.operation.value,
                        snapshot.shipment_id,
                    )
                    raise
                LOG.info("Settlement commit for %s conflicted, re-reading", snapshot.shipment_id)
        raise AssertionError("unreachable")

    def _commit_settlement(self, snapshot: SettlementRecord) -> Transaction:
        releasing = snapshot.operation == SettlementOperation.RELEASE
        with ledger_scope() as db:
            record = db.get(SettlementORM, snapshot.id)
            shipment = load_shipment(db, snapshot.shipment_id)
            transaction = (
                db.query(TransactionORM)
                .filter(
                    TransactionORM.shipment_id == snapshot.shipment_id,
                    TransactionORM.hold_reference == snapshot.hold_reference,
                )
                .one()
            )
            if record.status == SettlementStatus.COMMITTED:
                return Transaction.model_validate(transaction, from_attributes=True)

            outcome = transition(Aggregate.TRANSACTION, transaction.status, Release() if releasing else Refund())
            if not outcome.ok:
                LOG.warning(
                    "Processor confirmed %s for shipment %s but transaction is %s; trusting processor",
                    snapshot.operation.value,
                    snapshot.shipment_id,
                    transaction.status.value,
                )
            transaction.status = TransactionStatus.RELEASED if releasing else TransactionStatus.REFUNDED
            transaction.receipt_reference = record.receipt_reference
            transaction.settled_at = utcnow()

            shipment.status = ShipmentStatus.DELIVERED if releasing else ShipmentStatus.CANCELLED
            shipment.settlement_claim = None
            record.status = SettlementStatus.COMMITTED
            db.flush()
            LOG.info(
                "Shipment %s settled: transaction %s %s",
                shipment.id,
                transaction.id,
                transaction.status.value,
            )
            return Transaction.model_validate(transaction, from_attributes=True)

    def _notify_settled(self, transaction: Transaction) -> None:
        if transaction.status == TransactionStatus.RELEASED:
            dispatch(
                self.notifier,
                transaction.payee_id,
                NotificationKind.PAYMENT_RELEASED,
                shipment_id=transaction.shipment_id,
                amount=str(transaction.payout_amount),
            )
        else:
            for user_id in (transaction.payer_id, transaction.payee_id):
                dispatch(
                    self.notifier,
                    user_id,
                    NotificationKind.PAYMENT_REFUNDED,
                    shipment_id=transaction.shipment_id,
                    amount=str(transaction.amount),
                )

    # ------------------------------------------------------------------
    # Settlement records
    # ------------------------------------------------------------------

    def _open_record(
        self,
        db: Session,
        shipment_id: str,
        operation: SettlementOperation,
        payer_id: str,
        payee_id: str,
        amount: Decimal,
        currency: str,
    ) -> SettlementORM:
        """Fetch the in-flight record for an operation, or start a new attempt."""
        record = self._find_record(db, shipment_id, operation)
        if record is None:
            record = SettlementORM(
                id=generate_id(),
                shipment_id=shipment_id,
                operation=operation,
                attempt=1,
                idempotency_key=idempotency_key(shipment_id, operation, 1),
                status=SettlementStatus.PENDING,
                payer_id=payer_id,
                payee_id=payee_id,
                amount=amount,
                currency=currency,
            )
            db.add(record)
        elif record.status not in _OPEN_RECORD_STATUSES:
            record.attempt += 1
            record.idempotency_key = idempotency_key(shipment_id, operation, record.attempt)
            record.status = SettlementStatus.PENDING
            record.hold_reference = None
            record.receipt_reference = None
            record.failure_reason = None
        record.payer_id = payer_id
        record.payee_id = payee_id
        record.amount = amount
        record.currency = currency
        db.flush()
        return record

    @staticmethod
    def _find_record(db: Session, shipment_id: str, operation: SettlementOperation) -> Optional[SettlementORM]:
        return (
            db.query(SettlementORM)
            .filter(SettlementORM.shipment_id == shipment_id, SettlementORM.operation == operation)
            .one_or_none()
        )

    def _record_result(self, snapshot: SettlementRecord, result: ProcessorResult) -> SettlementRecord:
        """Persist a processor outcome; raises the typed payment error on failure."""
        with ledger_scope() as db:
            record = db.get(SettlementORM, snapshot.id)
            if result.success:
                record.status = SettlementStatus.CONFIRMED
                if record.operation == SettlementOperation.HOLD:
                    record.hold_reference = result.reference
                else:
                    record.receipt_reference = result.reference
                record.failure_reason = None
            else:
                record.failure_reason = result.failure_reason
                if not result.retryable:
                    record.status = SettlementStatus.FAILED
                    if record.operation != SettlementOperation.HOLD:
                        load_shipment(db, record.shipment_id).settlement_claim = None
            db.flush()
            updated = SettlementRecord.model_validate(record, from_attributes=True)

        if result.success:
            return updated

        LOG.warning(
            "Processor %s failed for shipment %s (key %s, retryable=%s): %s",
            snapshot.operation.value.lower(),
            snapshot.shipment_id,
            snapshot.idempotency_key,
            result.retryable,
            result.failure_reason,
        )
        dispatch(
            self.notifier,
            snapshot.payer_id,
            NotificationKind.PAYMENT_FAILED,
            shipment_id=snapshot.shipment_id,
            operation=snapshot.operation.value,
        )
        raise _FAILURES[snapshot.operation](
            f"{snapshot.operation.value.lower()} failed for shipment {snapshot.shipment_id}: {result.failure_reason}",
            retryable=result.retryable,
            reason=result.failure_reason,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, stale_after: Optional[timedelta] = None) -> List[SettlementRecord]:
        """Resolve settlement records left PENDING or CONFIRMED for longer than ``stale_after``."""
        if stale_after is None:
            stale_after = timedelta(seconds=constants.RECONCILE_STALE_AFTER_SECONDS)
        cutoff = utcnow() - stale_after
        with session_scope() as db:
            stale = (
                db.query(SettlementORM)
                .filter(SettlementORM.status.in_(_OPEN_RECORD_STATUSES), SettlementORM.updated_at <= cutoff)
                .order_by(SettlementORM.updated_at.asc())
                .all()
            )
            snapshots = [SettlementRecord.model_validate(obj, from_attributes=True) for obj in stale]

        resolved = []
        for snapshot in snapshots:
            try:
                resolved.append(self._reconcile_record(snapshot))
            except PaymentError as exc:
                LOG.warning("Reconciliation of %s left unresolved: %s", snapshot.idempotency_key, exc.reason)
            except EngineError:
                LOG.exception("Reconciliation of %s failed", snapshot.idempotency_key)
        return resolved

    def _reconcile_record(self, snapshot: SettlementRecord) -> SettlementRecord:
        LOG.info("Reconciling %s record %s (%s)", snapshot.operation.value, snapshot.idempotency_key, snapshot.status.value)
        if snapshot.status == SettlementStatus.PENDING:
            result = self.retry.run(lambda: self._call_processor(snapshot), label="reconcile")
            snapshot = self._record_result(snapshot, result)

        if snapshot.operation == SettlementOperation.HOLD:
            self._reconcile_hold(snapshot)
        else:
            self._apply_settlement(snapshot)
            self._notify_settled(self.get_transaction(snapshot.shipment_id))
        return self.get_settlement(snapshot.id)

    def _reconcile_hold(self, snapshot: SettlementRecord) -> None:
        with session_scope() as db:
            shipment = load_shipment(db, snapshot.shipment_id)
            accepted = offers_with_status(db, snapshot.shipment_id, OfferStatus.ACCEPTED)
            awaiting_hold = (
                shipment.status in (ShipmentStatus.MATCHED, ShipmentStatus.IN_TRANSIT)
                and shipment.courier_id == snapshot.payee_id
                and bool(accepted)
                and shipment.price == snapshot.amount
                and held_transaction(db, snapshot.shipment_id) is None
            )
        if awaiting_hold:
            self._commit_hold(snapshot)
            LOG.info("Replayed confirmed hold for shipment %s", snapshot.shipment_id)
            return

        result = self.retry.run(
            lambda: self.processor.void(snapshot.hold_reference, f"{snapshot.idempotency_key}:orphan"),
            label="orphan void",
        )
        if not result.success:
            raise PaymentVoidFailed(
                f"could not void orphaned hold {snapshot.hold_reference}: {result.failure_reason}",
                retryable=result.retryable,
                reason=result.failure_reason,
            )
        with ledger_scope() as db:
            record = db.get(SettlementORM, snapshot.id)
            record.status = SettlementStatus.ABANDONED
            record.receipt_reference = result.reference
            record.failure_reason = "hold voided: match was reverted"
        LOG.warning("Voided orphaned hold %s for shipment %s", snapshot.hold_reference, snapshot.shipment_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_transaction(self, shipment_id: str) -> Transaction:
        with session_scope() as db:
            load_shipment(db, shipment_id)
            transaction = latest_transaction(db, shipment_id)
            if transaction is None:
                raise WrongStateError(f"No escrow exists for shipment {shipment_id}.")
            return Transaction.model_validate(transaction, from_attributes=True)

    def hold_status(self, shipment_id: str) -> Optional[SettlementStatus]:
        with session_scope() as db:
            record = self._find_record(db, shipment_id, SettlementOperation.HOLD)
            return record.status if record else None

    def get_settlement(self, record_id: str) -> SettlementRecord:
        with session_scope() as db:
            return SettlementRecord.model_validate(db.get(SettlementORM, record_id), from_attributes=True)

    def list_settlements(self, shipment_id: str) -> List[SettlementRecord]:
        with session_scope() as db:
            records = (
                db.query(SettlementORM)
                .filter(SettlementORM.shipment_id == shipment_id)
                .order_by(SettlementORM.created_at.asc())
                .all()
            )
            return [SettlementRecord.model_validate(obj, from_attributes=True) for obj in records]

    def list_user_transactions(self, user_id: str) -> List[UserTransaction]:
        with session_scope() as db:
            transactions = (
                db.query(TransactionORM)
                .filter(or_(TransactionORM.payer_id == user_id, TransactionORM.payee_id == user_id))
                .order_by(TransactionORM.created_at.desc())
                .all()
            )
            return [
                UserTransaction(
                    transaction=Transaction.model_validate(obj, from_attributes=True),
                    role="sender" if obj.payer_id == user_id else "courier",
                    other_user_id=obj.payee_id if obj.payer_id == user_id else obj.payer_id,
                )
                for obj in transactions
            ]
