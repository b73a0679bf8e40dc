# apps/settlement/services.py
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from django.conf import settings
from django.db import DatabaseError, connection

from apps.notifications.services import OrderConfirmationDispatcher, build_confirmation_payload
from apps.orders.models import Order
from apps.payments.ledger import PaymentLedger
from apps.payments.models import Payment
from apps.shipping.client import ShiprocketClient
from apps.shipping.grouping import group_by_seller
from apps.shipping.services import ShipmentCreator, ShipmentFailure
from apps.utils.exceptions import CartCleanupFailed, OrderNotFound, StockDecrementFailed
from .store import DjangoSettlementStore

logger = logging.getLogger(__name__)


@dataclass
class SettlementRequest:
    """A captured payment, already authenticated by the caller."""
    order_ids: List[str]
    gateway_order_id: str
    transaction_id: str = ""
    amount: Optional[Decimal] = None
    payment_date: Optional[datetime] = None
    cart_id: Optional[str] = None
    source: str = "webhook"


@dataclass
class OrderSettlement:
    order_id: str
    payment_status: str
    shipments: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    stock_failures: list = field(default_factory=list)


@dataclass
class SettlementOutcome:
    orders: List[OrderSettlement] = field(default_factory=list)
    missing_order_ids: list = field(default_factory=list)
    skipped_order_ids: list = field(default_factory=list)
    errored_order_ids: list = field(default_factory=list)
    cart_cleared: Optional[bool] = None
    email_queued: bool = False

    @property
    def processed_orders(self):
        return len(self.orders)

    @property
    def failed_items(self):
        return [
            {"orderId": order.order_id, **failure.as_dict()}
            for order in self.orders
            for failure in order.failures
        ]

    @property
    def has_shipment_failures(self):
        return any(order.failures for order in self.orders)

    def shiprocket_results(self):
        results = []
        for order in self.orders:
            for attempt in order.shipments + order.failures:
                results.append({"orderId": order.order_id, **attempt.as_dict()})
        return results

    def as_response_data(self):
        data = {
            "processedOrders": [
                {"orderId": order.order_id, "paymentStatus": order.payment_status}
                for order in self.orders
            ],
            "shiprocketResults": self.shiprocket_results(),
        }
        if self.has_shipment_failures:
            data["failedItems"] = self.failed_items
        if self.missing_order_ids:
            data["missingOrders"] = self.missing_order_ids
        return data


class SettlementService:
    """
    Runs everything that follows a captured payment:

    1. Per order: move payment status to paid, upsert the Payment and its
       per-item allocations (one transaction per order).
    2. Per seller group: create the carrier shipment. Groups run in a thread
       pool; a failing group is recorded and its draft left for retry.
    3. Per item: decrement stock, once.
    4. Once per batch: delete the cart, queue one confirmation email.

    Only step 1 is allowed to fail a request. Replays resume where the
    idempotent writes left off.
    """

    def __init__(self, store, ledger, creator, dispatcher, max_workers=4):
        self.store = store
        self.ledger = ledger
        self.creator = creator
        self.dispatcher = dispatcher
        self.max_workers = max_workers

    def settle(self, request: SettlementRequest) -> SettlementOutcome:
        outcome = SettlementOutcome()
        order_ids = list(dict.fromkeys(str(pk) for pk in request.order_ids if pk))
        batch = []

        for order_id in order_ids:
            order = self.store.load_order(order_id)
            if order is None:
                logger.warning(f"Settlement [{request.source}]: order {order_id} not found, skipping")
                outcome.missing_order_ids.append(order_id)
                continue

            # The signature only vouches for this gateway order
            if order.payment_ref_id != request.gateway_order_id:
                logger.warning(
                    f"Settlement [{request.source}]: order {order_id} belongs to gateway order "
                    f"{order.payment_ref_id or '-'}, not {request.gateway_order_id}; skipping"
                )
                outcome.skipped_order_ids.append(order_id)
                continue

            items = self.store.order_items(order)
            # The gateway amount covers the whole checkout; split batches use each order's own total
            amount = request.amount if request.amount is not None and len(order_ids) == 1 else order.total_amount

            try:
                with self.store.atomic():
                    if not self.store.move_payment_status(order, Order.PAYMENT_PAID):
                        outcome.skipped_order_ids.append(order_id)
                        continue
                    payment = self.ledger.upsert_payment(
                        order.id,
                        request.gateway_order_id,
                        Payment.STATUS_COMPLETED,
                        request.transaction_id,
                        amount,
                        request.payment_date,
                    )
                    self.ledger.allocate_to_items(payment.id, items, Payment.STATUS_COMPLETED)
            except DatabaseError:
                # Left pending; the reconciliation sweep picks it up again
                logger.exception(f"Settlement [{request.source}]: recording payment for order {order_id} failed")
                outcome.errored_order_ids.append(order_id)
                continue

            result = OrderSettlement(order_id=str(order.id), payment_status=order.payment_status)
            self._create_shipments(order, items, result)
            self._decrement_stock(items, result)
            outcome.orders.append(result)
            batch.append((order, items))

        # A request that settled nothing leaves the customer's cart alone
        if request.cart_id and batch:
            self._clear_cart(request.cart_id, outcome)

        if batch:
            self._send_confirmation(batch, outcome)

        logger.info(
            f"Settlement [{request.source}] {request.gateway_order_id}: "
            f"{outcome.processed_orders} settled, {len(outcome.missing_order_ids)} missing, "
            f"{len(outcome.failed_items)} seller group(s) without shipment"
        )
        return outcome

    def retry_shipments(self, order_id) -> OrderSettlement:
        """Shipment stage only, for a paid order whose items still hold drafts."""
        order = self.store.load_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")

        result = OrderSettlement(order_id=str(order.id), payment_status=order.payment_status)
        if order.payment_status != Order.PAYMENT_PAID:
            logger.info(f"Shipment retry skipped for order {order_id}: payment is {order.payment_status}")
            return result

        self._create_shipments(order, self.store.order_items(order), result)
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _create_shipments(self, order, items, result):
        pending = [item for item in items if item.shipment_id is None]
        if not pending:
            return

        groups = list(group_by_seller(pending).values())
        for group, attempt in self._run_creators(groups, order):
            if not attempt.success:
                result.failures.append(attempt)
                continue
            try:
                self.store.create_shipment(attempt, group.items)
            except DatabaseError as e:
                logger.critical(
                    f"Carrier shipment {attempt.shipment_id} for order {order.id} was created "
                    f"but could not be saved: {e}"
                )
                result.failures.append(ShipmentFailure(
                    group=group,
                    error=f"Shipment {attempt.shipment_id} created at carrier but not saved",
                    code="shipment_persist_failed",
                ))
                continue
            result.shipments.append(attempt)

    def _run_creators(self, groups, order):
        """Carrier calls only; results come back in group order."""
        if len(groups) <= 1 or self.max_workers <= 1:
            return [(group, self._create_one(group, order)) for group in groups]

        workers = min(self.max_workers, len(groups))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="shipment") as pool:
            futures = [pool.submit(self._create_in_worker, group, order) for group in groups]
            return [(group, future.result()) for group, future in zip(groups, futures)]

    def _create_in_worker(self, group, order):
        try:
            return self._create_one(group, order)
        finally:
            connection.close()

    def _create_one(self, group, order):
        try:
            return self.creator.create_for_seller_group(group, order)
        except Exception as e:
            # Scoped to this seller whatever went wrong
            logger.exception(f"Unexpected shipment error for order {order.id} seller {group.seller_id}")
            return ShipmentFailure(group=group, error=str(e), code="shipment_error")

    def _decrement_stock(self, items, result):
        for item in items:
            try:
                self.store.decrement_stock(item)
            except StockDecrementFailed as e:
                logger.error(e.message)
                result.stock_failures.append(str(item.id))

    def _clear_cart(self, cart_id, outcome):
        try:
            outcome.cart_cleared = self.store.delete_cart(cart_id)
        except CartCleanupFailed as e:
            logger.warning(e.message)
            outcome.cart_cleared = False
            return
        if not outcome.cart_cleared:
            logger.info(f"Cart {cart_id} already gone")

    def _send_confirmation(self, batch, outcome):
        base_order = batch[0][0]
        if not self.store.claim_confirmation(base_order.id):
            logger.info(f"Confirmation for order {base_order.id} already sent")
            return

        payload = build_confirmation_payload([
            (order, items, self.store.payments_for_order(order.id))
            for order, items in batch
        ])
        outcome.email_queued = self.dispatcher.send_order_confirmation(payload)
        if not outcome.email_queued:
            self.store.release_confirmation(base_order.id)


def build_settlement_service():
    store = DjangoSettlementStore()
    return SettlementService(
        store=store,
        ledger=PaymentLedger(store),
        creator=ShipmentCreator(ShiprocketClient.from_settings()),
        dispatcher=OrderConfirmationDispatcher(),
        max_workers=settings.SETTLEMENT_SHIPMENT_WORKERS,
    )
