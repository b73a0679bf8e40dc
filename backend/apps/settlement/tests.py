import contextlib
import threading
import uuid
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase

from apps.catalog.models import SellerProfile, Product, ProductVariant
from apps.orders.models import Cart, Order, OrderItem
from apps.payments.ledger import PaymentLedger
from apps.payments.models import Payment
from apps.settlement.services import SettlementRequest, SettlementService
from apps.settlement.store import DjangoSettlementStore, SettlementStore
from apps.shipping.models import PickupLocation, DraftShipment
from apps.shipping.services import ShipmentFailure, ShipmentResult
from apps.utils.exceptions import CartCleanupFailed, OrderNotFound, StockDecrementFailed

User = get_user_model()


class InMemoryStore(SettlementStore):
    """Dict-backed store with the same idempotency keys as the ORM one."""

    def __init__(self, orders=(), carts=()):
        self.orders = {str(order.id): order for order in orders}
        self.carts = set(carts)
        self.payments = {}
        self.refunds = {}
        self.allocations = {}
        self.shipments = []
        self.stock_moves = []
        self.confirmed = set()
        self._ids = 0

    def _next_id(self):
        self._ids += 1
        return self._ids

    def atomic(self):
        return contextlib.nullcontext()

    def load_order(self, order_id):
        return self.orders.get(str(order_id))

    def order_items(self, order):
        return list(order.items)

    def order_ids_for_gateway_reference(self, gateway_order_id):
        return [pk for pk, order in self.orders.items() if order.payment_ref_id == gateway_order_id]

    def move_payment_status(self, order, new_status):
        if order.payment_status == new_status:
            return True
        if new_status not in Order.PAYMENT_TRANSITIONS[order.payment_status]:
            return False
        order.payment_status = new_status
        return True

    def claim_confirmation(self, order_id):
        if str(order_id) in self.confirmed:
            return False
        self.confirmed.add(str(order_id))
        return True

    def release_confirmation(self, order_id):
        self.confirmed.discard(str(order_id))

    def upsert_payment(self, order_id, gateway_order_id, status, transaction_id, amount, payment_date):
        key = (str(order_id), gateway_order_id)
        payment = self.payments.get(key)
        created = payment is None
        if created:
            payment = self.payments[key] = SimpleNamespace(
                id=self._next_id(), order_id=str(order_id), gateway="razorpay",
                gateway_order_id=gateway_order_id, refund_of=None,
            )
        payment.status = status
        payment.transaction_id = transaction_id
        payment.amount = amount
        payment.payment_date = payment_date
        return payment, created

    def find_payments_by_transaction(self, transaction_id):
        return [p for p in self.payments.values() if transaction_id and p.transaction_id == transaction_id]

    def refunded_total(self, original_payment, exclude_refund_id=None):
        return sum(
            (r.amount for r in self.refunds.values()
             if r.refund_of is original_payment and r.transaction_id != exclude_refund_id),
            Decimal("0.00"),
        )

    def payments_for_order(self, order_id):
        rows = list(self.payments.values()) + list(self.refunds.values())
        return [p for p in rows if p.order_id == str(order_id)]

    def get_or_create_refund(self, original_payment, amount, refund_gateway_id, refunded_at):
        key = (refund_gateway_id, original_payment.id)
        refund = self.refunds.get(key)
        if refund is not None:
            return refund, False
        refund = self.refunds[key] = SimpleNamespace(
            id=self._next_id(), order_id=original_payment.order_id, gateway="razorpay",
            gateway_order_id=original_payment.gateway_order_id, transaction_id=refund_gateway_id,
            status=Payment.STATUS_REFUNDED, amount=amount, payment_date=refunded_at,
            refund_of=original_payment,
        )
        return refund, True

    def upsert_item_allocation(self, key, order_item_id, payment_id, amount, status):
        self.allocations[key] = SimpleNamespace(
            order_item_id=order_item_id, payment_id=payment_id, amount=amount, status=status,
        )

    def create_shipment(self, result, items):
        self.shipments.append(result)
        for item in items:
            item.shipment_id = result.shipment_id
            item.draft_shipment = None

    def decrement_stock(self, item):
        if item.stock_decremented:
            return False
        self.stock_moves.append((item.product_variant.sku, item.quantity))
        item.stock_decremented = True
        return True

    def delete_cart(self, cart_id):
        if cart_id in self.carts:
            self.carts.remove(cart_id)
            return True
        return False


class FakeCreator:
    """Succeeds for every seller except those listed in `failing`/`crashing`."""

    def __init__(self, failing=(), crashing=()):
        self.failing = set(failing)
        self.crashing = set(crashing)
        self.calls = []
        self.threads = set()
        self._lock = threading.Lock()

    def create_for_seller_group(self, group, order):
        with self._lock:
            self.calls.append(group.seller_id)
            self.threads.add(threading.get_ident())
        if group.seller_id in self.crashing:
            raise RuntimeError("carrier SDK exploded")
        if group.seller_id in self.failing:
            return ShipmentFailure(group=group, error="No pickup location", code="no_pickup_location")
        return ShipmentResult(
            group=group,
            shipment_id=f"SHIP-{order.id}-{group.seller_id}",
            carrier_order_id=f"CO-{group.seller_id}",
            awb_code=f"AWB-{group.seller_id}",
            courier_company_id="12",
            courier_name="Delhivery",
            pickup_location_id=1,
            shipping_charge=Decimal("40.00"),
        )


_item_ids = iter(range(1, 10_000))


def make_item(seller, price="100.00", quantity=1):
    product = SimpleNamespace(name=f"Product of {seller.store_name}", seller=seller, hsn_code="", weight=None)
    variant = SimpleNamespace(product=product, sku=f"SKU-{next(_item_ids)}", name="Default", price=Decimal(price))
    return SimpleNamespace(
        id=next(_item_ids),
        seller=None,
        seller_id=None,
        product_variant=variant,
        quantity=quantity,
        price_at_purchase=Decimal(price),
        discount_amount_at_purchase=Decimal("0.00"),
        gst_amount_at_purchase=Decimal("0.00"),
        shipping_charge=Decimal("40.00"),
        status="pending",
        draft_shipment=SimpleNamespace(pickup_location=None),
        shipment_id=None,
        stock_decremented=False,
    )


def make_order(items, total="200.00", ref="order_rzp_1", payment_status=Order.PAYMENT_PENDING, user_id=1):
    return SimpleNamespace(
        id=uuid.uuid4(),
        user_id=user_id,
        user=SimpleNamespace(pk=user_id, email="buyer@example.com"),
        shipping_address=None,
        payment_ref_id=ref,
        payment_status=payment_status,
        status="created",
        total_amount=Decimal(total),
        created_at=datetime(2024, 1, 1, tzinfo=dt_timezone.utc),
        items=items,
    )


class SettlementServiceTestCase(TestCase):
    def setUp(self):
        self.alpha = SimpleNamespace(id=1, store_name="Alpha")
        self.beta = SimpleNamespace(id=2, store_name="Beta")
        self.items = [make_item(self.alpha), make_item(self.beta, quantity=2), make_item(self.alpha)]
        self.order = make_order(self.items, total="400.00")
        self.store = InMemoryStore([self.order], carts={"cart-1"})
        self.creator = FakeCreator()
        self.dispatcher = MagicMock()
        self.dispatcher.send_order_confirmation.return_value = True

    def _service(self, max_workers=1):
        return SettlementService(
            store=self.store,
            ledger=PaymentLedger(self.store),
            creator=self.creator,
            dispatcher=self.dispatcher,
            max_workers=max_workers,
        )

    def _request(self, order_ids=None, **kwargs):
        kwargs.setdefault("gateway_order_id", "order_rzp_1")
        kwargs.setdefault("transaction_id", "pay_1")
        return SettlementRequest(order_ids=order_ids or [str(self.order.id)], **kwargs)

    def test_full_settlement(self):
        outcome = self._service().settle(self._request(amount=Decimal("400.00"), cart_id="cart-1"))

        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        payment = self.store.payments[(str(self.order.id), "order_rzp_1")]
        self.assertEqual(payment.status, Payment.STATUS_COMPLETED)
        self.assertEqual(payment.amount, Decimal("400.00"))
        self.assertEqual(len(self.store.allocations), 3)

        self.assertEqual(self.creator.calls, ["1", "2"])
        self.assertEqual(len(self.store.shipments), 2)
        self.assertTrue(all(item.shipment_id for item in self.items))
        self.assertEqual(len(self.store.stock_moves), 3)

        self.assertTrue(outcome.cart_cleared)
        self.assertTrue(outcome.email_queued)
        self.dispatcher.send_order_confirmation.assert_called_once()
        self.assertFalse(outcome.has_shipment_failures)

    def test_one_seller_failing_does_not_block_the_other(self):
        self.creator.failing = {"2"}

        outcome = self._service().settle(self._request())

        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual([s.group.seller_id for s in self.store.shipments], ["1"])
        self.assertIsNone(self.items[1].shipment_id)
        self.assertIsNotNone(self.items[1].draft_shipment)
        # Stock moves for every item, shipped or not
        self.assertEqual(len(self.store.stock_moves), 3)

        data = outcome.as_response_data()
        self.assertEqual(data["processedOrders"], [{"orderId": str(self.order.id), "paymentStatus": "paid"}])
        self.assertEqual(len(data["shiprocketResults"]), 2)
        self.assertEqual(len(data["failedItems"]), 1)
        self.assertEqual(data["failedItems"][0]["sellerGroup"]["sellerId"], "2")
        self.assertEqual(data["failedItems"][0]["code"], "no_pickup_location")

    def test_unexpected_creator_error_is_scoped_to_its_group(self):
        self.creator.crashing = {"1"}

        outcome = self._service().settle(self._request())

        failures = outcome.orders[0].failures
        self.assertEqual(len(failures), 1)
        self.assertEqual(failures[0].code, "shipment_error")
        self.assertIn("exploded", failures[0].error)
        self.assertEqual([s.group.seller_id for s in self.store.shipments], ["2"])

    def test_replay_is_idempotent(self):
        self.creator.failing = {"2"}
        service = self._service()
        service.settle(self._request(cart_id="cart-1"))

        self.creator.failing = set()
        outcome = service.settle(self._request(cart_id="cart-1"))

        self.assertEqual(len(self.store.payments), 1)
        self.assertEqual(len(self.store.allocations), 3)
        # Only the group that failed the first time is sent again
        self.assertEqual(self.creator.calls, ["1", "2", "2"])
        self.assertEqual(len(self.store.stock_moves), 3)
        self.assertFalse(outcome.cart_cleared)
        self.dispatcher.send_order_confirmation.assert_called_once()
        self.assertFalse(outcome.email_queued)

    def test_orders_of_another_gateway_order_are_skipped(self):
        self.order.payment_ref_id = "order_rzp_other"

        outcome = self._service().settle(self._request())

        self.assertEqual(outcome.skipped_order_ids, [str(self.order.id)])
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)
        self.assertEqual(self.store.payments, {})
        self.assertEqual(self.creator.calls, [])
        self.dispatcher.send_order_confirmation.assert_not_called()

    def test_missing_orders_are_reported(self):
        outcome = self._service().settle(self._request(order_ids=[str(uuid.uuid4()), str(self.order.id)]))

        self.assertEqual(len(outcome.missing_order_ids), 1)
        self.assertEqual(outcome.processed_orders, 1)
        self.assertIn("missingOrders", outcome.as_response_data())

    def test_refunded_order_is_not_settled_again(self):
        self.order.payment_status = Order.PAYMENT_REFUNDED

        outcome = self._service().settle(self._request())

        self.assertEqual(outcome.skipped_order_ids, [str(self.order.id)])
        self.assertEqual(self.order.payment_status, Order.PAYMENT_REFUNDED)
        self.assertEqual(self.store.payments, {})

    def test_split_checkout_uses_each_orders_total_and_one_email(self):
        second = make_order([make_item(self.beta)], total="100.00")
        self.store.orders[str(second.id)] = second

        outcome = self._service().settle(self._request(
            order_ids=[str(self.order.id), str(second.id)], amount=Decimal("500.00"),
        ))

        self.assertEqual(outcome.processed_orders, 2)
        self.assertEqual(self.store.payments[(str(self.order.id), "order_rzp_1")].amount, Decimal("400.00"))
        self.assertEqual(self.store.payments[(str(second.id), "order_rzp_1")].amount, Decimal("100.00"))

        self.dispatcher.send_order_confirmation.assert_called_once()
        payload = self.dispatcher.send_order_confirmation.call_args.args[0]
        self.assertEqual(payload["id"], str(self.order.id))
        self.assertEqual(payload["_metadata"]["totalOrders"], 2)
        self.assertEqual(len(payload["items"]), 4)
        self.assertEqual(payload["totalAmount"], "500.00")

    def test_duplicate_ids_settle_once(self):
        outcome = self._service().settle(self._request(order_ids=[str(self.order.id)] * 3))
        self.assertEqual(outcome.processed_orders, 1)

    def test_ledger_failure_leaves_order_for_reconciliation(self):
        self.store.upsert_payment = MagicMock(side_effect=DatabaseError("deadlock"))

        outcome = self._service().settle(self._request())

        self.assertEqual(outcome.errored_order_ids, [str(self.order.id)])
        self.assertEqual(outcome.processed_orders, 0)
        self.assertEqual(self.creator.calls, [])
        self.dispatcher.send_order_confirmation.assert_not_called()

    def test_stock_and_cart_failures_are_reported_not_raised(self):
        self.store.decrement_stock = MagicMock(side_effect=StockDecrementFailed("locked"))
        self.store.delete_cart = MagicMock(side_effect=CartCleanupFailed("gone wrong"))

        outcome = self._service().settle(self._request(cart_id="cart-1"))

        self.assertEqual(len(outcome.orders[0].stock_failures), 3)
        self.assertFalse(outcome.cart_cleared)
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        self.assertTrue(outcome.email_queued)

    def test_failed_enqueue_releases_the_confirmation_claim(self):
        self.dispatcher.send_order_confirmation.return_value = False
        service = self._service()

        service.settle(self._request())
        self.assertNotIn(str(self.order.id), self.store.confirmed)

        self.dispatcher.send_order_confirmation.return_value = True
        outcome = service.settle(self._request())
        self.assertTrue(outcome.email_queued)
        self.assertEqual(self.dispatcher.send_order_confirmation.call_count, 2)

    def test_seller_groups_run_on_worker_threads(self):
        outcome = self._service(max_workers=4).settle(self._request())

        self.assertEqual(sorted(self.creator.calls), ["1", "2"])
        self.assertNotIn(threading.get_ident(), self.creator.threads)
        # Results stay in seller order whatever finished first
        self.assertEqual([s.group.seller_id for s in outcome.orders[0].shipments], ["1", "2"])

    def test_retry_shipments(self):
        self.creator.failing = {"2"}
        service = self._service()
        service.settle(self._request())
        self.creator.failing = set()

        result = service.retry_shipments(self.order.id)

        self.assertEqual([s.group.seller_id for s in result.shipments], ["2"])
        self.assertTrue(all(item.shipment_id for item in self.items))

    def test_retry_shipments_requires_paid_order(self):
        result = self._service().retry_shipments(self.order.id)
        self.assertEqual(result.shipments, [])
        self.assertEqual(self.creator.calls, [])

        with self.assertRaises(OrderNotFound):
            self._service().retry_shipments(uuid.uuid4())


class DjangoSettlementStoreTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="buyer", password="pass")
        seller = SellerProfile.objects.create(user=User.objects.create_user(username="s1"), store_name="Alpha")
        product = Product.objects.create(seller=seller, name="Tee")
        self.variant = ProductVariant.objects.create(product=product, sku="TEE", price=Decimal("100.00"),
                                                     stock_quantity=5)
        pickup = PickupLocation.objects.create(seller=seller, location_id="9001", nickname="WH", address="x",
                                               city="c", state="s", pin_code="560001")
        self.order = Order.objects.create(user=self.user, payment_ref_id="order_rzp_1", total_amount=Decimal("200"))
        self.draft = DraftShipment.objects.create(pickup_location=pickup)
        self.item = OrderItem.objects.create(order=self.order, product_variant=self.variant, seller=seller,
                                             quantity=2, price_at_purchase=Decimal("100.00"),
                                             draft_shipment=self.draft)
        self.store = DjangoSettlementStore()

    def test_load_order_tolerates_bad_ids(self):
        self.assertIsNone(self.store.load_order("not-a-uuid"))
        self.assertIsNone(self.store.load_order(uuid.uuid4()))
        loaded = self.store.load_order(str(self.order.id))
        self.assertEqual([item.id for item in self.store.order_items(loaded)], [self.item.id])

    def test_move_payment_status(self):
        self.assertTrue(self.store.move_payment_status(self.order, Order.PAYMENT_PAID))
        self.order.refresh_from_db()
        self.assertEqual((self.order.payment_status, self.order.status), (Order.PAYMENT_PAID, "confirmed"))

        self.assertTrue(self.store.move_payment_status(self.order, Order.PAYMENT_PAID))
        self.assertFalse(self.store.move_payment_status(self.order, Order.PAYMENT_FAILED))
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)

    def test_confirmation_claim_is_exclusive(self):
        self.assertTrue(self.store.claim_confirmation(self.order.id))
        self.assertFalse(self.store.claim_confirmation(self.order.id))
        self.store.release_confirmation(self.order.id)
        self.assertTrue(self.store.claim_confirmation(self.order.id))

    def test_stock_decrements_once(self):
        self.assertTrue(self.store.decrement_stock(self.item))
        self.assertFalse(self.store.decrement_stock(self.item))
        self.variant.refresh_from_db()
        self.assertEqual(self.variant.stock_quantity, 3)

    def test_stock_may_go_negative(self):
        ProductVariant.objects.filter(pk=self.variant.pk).update(stock_quantity=1)
        self.store.decrement_stock(self.item)
        self.variant.refresh_from_db()
        self.assertEqual(self.variant.stock_quantity, -1)

    def test_create_shipment_consumes_the_draft(self):
        result = ShipmentResult(
            group=None, shipment_id="SHIP1", carrier_order_id="CO1", awb_code="AWB1",
            courier_company_id="12", courier_name="Delhivery", pickup_location_id=self.draft.pickup_location_id,
            shipping_charge=Decimal("40.00"),
        )

        shipment = self.store.create_shipment(result, [self.item])

        self.item.refresh_from_db()
        self.assertEqual(self.item.shipment_id, shipment.id)
        self.assertIsNone(self.item.draft_shipment_id)
        self.assertFalse(DraftShipment.objects.filter(pk=self.draft.pk).exists())

    def test_delete_cart(self):
        cart = Cart.objects.create(user=self.user)
        self.assertTrue(self.store.delete_cart(str(cart.id)))
        self.assertFalse(self.store.delete_cart(str(cart.id)))
        with self.assertRaises(CartCleanupFailed):
            self.store.delete_cart("not-a-uuid")
