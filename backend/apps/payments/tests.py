import hashlib
import hmac
import json
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from django.contrib.auth import get_user_model
from django.core import mail
from django.core.cache import cache
from django.test import TestCase, override_settings
from django.utils import timezone

from apps.catalog.models import SellerProfile, Product, ProductVariant
from apps.customers.models import ShippingAddress
from apps.orders.models import Order, OrderItem, Cart, CartItem
from apps.payments.ledger import PaymentLedger, proportional_shares
from apps.payments.models import Payment, OrderItemPayment
from apps.payments.services import PaymentEventService, ReconciliationService, paise_to_amount
from apps.payments.signatures import (
    require_webhook_signature,
    verify_payment_signature,
    verify_webhook_signature,
)
from apps.settlement.store import DjangoSettlementStore
from apps.shipping.client import ShiprocketClient
from apps.shipping.models import PickupLocation, DraftShipment, Shipment
from apps.shipping.responses import AwbAssignment, CarrierOrder, CarrierPickupLocation
from apps.utils.exceptions import InvalidRefundState, SignatureMismatch

User = get_user_model()

WEBHOOK_SECRET = "test_webhook_secret"
KEY_SECRET = "test_key_secret"


def sign(message, secret):
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class MarketplaceFixtureMixin:
    """One customer, two sellers with a pickup location each, one two-seller order."""

    def setUp(self):
        cache.clear()
        self.user = User.objects.create_user(
            username="buyer", email="buyer@example.com", password="pass", first_name="Asha", last_name="Rao"
        )
        self.address = ShippingAddress.objects.create(
            user=self.user, full_name="Asha Rao", phone="+91 98765 43210", street="12 MG Road",
            city="Bengaluru", state="Karnataka", zip_code="560001",
        )
        self.sellers = []
        self.variants = []
        self.pickups = []
        for index, name in enumerate(["Alpha", "Beta"], start=1):
            seller_user = User.objects.create_user(username=f"seller{index}", password="pass")
            seller = SellerProfile.objects.create(user=seller_user, store_name=name)
            product = Product.objects.create(seller=seller, name=f"{name} Tee", hsn_code="6109")
            self.variants.append(ProductVariant.objects.create(
                product=product, sku=f"{name.upper()}-TEE", price=Decimal("100.00"), stock_quantity=10,
            ))
            self.pickups.append(PickupLocation.objects.create(
                seller=seller, location_id=f"900{index}", nickname=f"{name} WH", address="1 Road",
                city="Bengaluru", state="KA", pin_code="560001",
            ))
            self.sellers.append(seller)

        self.order = Order.objects.create(
            user=self.user, shipping_address=self.address, payment_ref_id="order_rzp_1",
            total_amount=Decimal("400.00"),
        )
        self.item_a = self._item(0, quantity=1, price="100.00")
        self.item_b = self._item(1, quantity=3, price="100.00")

    def _item(self, seller_index, quantity, price):
        draft = DraftShipment.objects.create(
            pickup_location=self.pickups[seller_index], courier_service_id="12", courier_name="Delhivery",
        )
        return OrderItem.objects.create(
            order=self.order, product_variant=self.variants[seller_index], seller=self.sellers[seller_index],
            quantity=quantity, price_at_purchase=Decimal(price), draft_shipment=draft,
        )


def carrier_patches():
    locations = [CarrierPickupLocation(id="9001", nickname="Alpha WH"),
                 CarrierPickupLocation(id="9002", nickname="Beta WH")]
    counter = iter(range(1, 100))

    def create_order(self, payload):
        n = next(counter)
        return CarrierOrder(shipment_id=f"SHIP{n}", carrier_order_id=f"CO{n}", courier_company_id="12")

    return [
        patch.object(ShiprocketClient, "get_pickup_locations", return_value=locations),
        patch.object(ShiprocketClient, "create_order", autospec=True, side_effect=create_order),
        patch.object(ShiprocketClient, "assign_awb",
                     return_value=AwbAssignment(awb_code="AWB1", courier_company_id="12", courier_name="Delhivery")),
    ]


class SignatureTestCase(TestCase):
    def test_webhook_signature_over_raw_bytes(self):
        body = b'{"event":"payment.captured","payload":{}}'
        self.assertTrue(verify_webhook_signature(body, sign(body, "s3cret"), "s3cret"))
        # Same JSON, different bytes
        self.assertFalse(verify_webhook_signature(b'{"payload":{},"event":"payment.captured"}',
                                                  sign(body, "s3cret"), "s3cret"))

    def test_empty_inputs_never_match(self):
        self.assertFalse(verify_webhook_signature(b"", sign(b"", "s"), "s"))
        self.assertFalse(verify_webhook_signature(b"{}", "", "s"))
        self.assertFalse(verify_webhook_signature(b"{}", sign(b"{}", "s"), ""))

    def test_non_ascii_signature_does_not_raise(self):
        self.assertFalse(verify_webhook_signature(b"{}", "sïgnature", "s"))

    def test_payment_signature(self):
        signature = sign("order_1|pay_1", KEY_SECRET)
        self.assertTrue(verify_payment_signature("order_1", "pay_1", signature, KEY_SECRET))
        self.assertFalse(verify_payment_signature("order_1", "pay_2", signature, KEY_SECRET))
        self.assertFalse(verify_payment_signature("", "pay_1", signature, KEY_SECRET))

    def test_require_raises(self):
        with self.assertRaises(SignatureMismatch):
            require_webhook_signature(b"{}", "bad", "s")


class ProportionalSharesTestCase(TestCase):
    def test_split_follows_item_amounts(self):
        shares = proportional_shares(Decimal("200.00"), [Decimal("100.00"), Decimal("300.00")], Decimal("400.00"))
        self.assertEqual(shares, [Decimal("50.00"), Decimal("150.00")])

    def test_last_item_absorbs_rounding(self):
        shares = proportional_shares(Decimal("100.00"), [Decimal("1")] * 3, Decimal("3"))
        self.assertEqual(shares, [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")])
        self.assertEqual(sum(shares), Decimal("100.00"))

    def test_zero_original_is_invalid(self):
        with self.assertRaises(InvalidRefundState):
            proportional_shares(Decimal("10"), [Decimal("10")], Decimal("0"))


class PaymentLedgerTestCase(MarketplaceFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.store = DjangoSettlementStore()
        self.ledger = PaymentLedger(self.store)
        self.items = [self.item_a, self.item_b]

    def _capture(self, status=Payment.STATUS_COMPLETED, transaction_id="pay_1"):
        payment = self.ledger.upsert_payment(
            self.order.id, "order_rzp_1", status, transaction_id, Decimal("400.00"), timezone.now()
        )
        self.ledger.allocate_to_items(payment.id, self.items, status)
        return payment

    def test_upsert_and_allocation_are_idempotent(self):
        first = self._capture()
        second = self._capture()

        self.assertEqual(first.id, second.id)
        self.assertEqual(Payment.objects.count(), 1)
        self.assertEqual(OrderItemPayment.objects.count(), 2)
        allocation = OrderItemPayment.objects.get(pk=f"{self.item_b.id}_{first.id}")
        self.assertEqual(allocation.amount, Decimal("300.00"))

    def test_authorized_row_is_promoted_to_completed(self):
        authorized = self._capture(status=Payment.STATUS_AUTHORIZED)
        completed = self._capture(status=Payment.STATUS_COMPLETED)

        self.assertEqual(authorized.id, completed.id)
        self.assertEqual(Payment.objects.get().status, Payment.STATUS_COMPLETED)
        self.assertEqual(
            set(OrderItemPayment.objects.values_list("status", flat=True)), {Payment.STATUS_COMPLETED}
        )

    def test_refund_is_split_proportionally(self):
        original = self._capture()

        refund = self.ledger.record_refund(original, self.items, Decimal("200.00"), "rfnd_1", timezone.now())

        self.assertEqual(refund.status, Payment.STATUS_REFUNDED)
        self.assertEqual(refund.refund_of_id, original.id)
        shares = dict(
            OrderItemPayment.objects.filter(payment=refund).values_list("order_item_id", "amount")
        )
        self.assertEqual(shares, {self.item_a.id: Decimal("50.00"), self.item_b.id: Decimal("150.00")})

        original.refresh_from_db()
        self.assertEqual(original.status, Payment.STATUS_COMPLETED)
        self.assertEqual(original.amount, Decimal("400.00"))

    def test_refund_replay_is_idempotent(self):
        original = self._capture()
        first = self.ledger.record_refund(original, self.items, Decimal("200.00"), "rfnd_1", timezone.now())
        second = self.ledger.record_refund(original, self.items, Decimal("200.00"), "rfnd_1", timezone.now())

        self.assertEqual(first.id, second.id)
        self.assertEqual(Payment.objects.filter(status=Payment.STATUS_REFUNDED).count(), 1)
        self.assertEqual(OrderItemPayment.objects.filter(payment=first).count(), 2)

    def test_refund_larger_than_payment_is_rejected(self):
        original = self._capture()
        with self.assertRaises(InvalidRefundState):
            self.ledger.record_refund(original, self.items, Decimal("400.01"), "rfnd_2", timezone.now())
        with self.assertRaises(InvalidRefundState):
            self.ledger.record_refund(original, self.items, Decimal("10.00"), "", timezone.now())
        self.assertFalse(Payment.objects.filter(status=Payment.STATUS_REFUNDED).exists())


    def test_earlier_refunds_count_towards_the_cap(self):
        original = self._capture()
        self.ledger.record_refund(original, self.items, Decimal("300.00"), "rfnd_a", timezone.now())

        with self.assertRaises(InvalidRefundState):
            self.ledger.record_refund(original, self.items, Decimal("300.00"), "rfnd_b", timezone.now())

        # A replay of the refund already counted is not an over-refund
        self.ledger.record_refund(original, self.items, Decimal("300.00"), "rfnd_a", timezone.now())
        self.ledger.record_refund(original, self.items, Decimal("100.00"), "rfnd_c", timezone.now())
        self.assertEqual(self.ledger.refunded_total(original), Decimal("400.00"))

    def test_split_refund_follows_what_is_left_on_each_payment(self):
        first = self._capture()
        other_order = Order.objects.create(
            user=self.user, shipping_address=self.address, payment_ref_id="order_rzp_1",
            total_amount=Decimal("100.00"),
        )
        second = self.ledger.upsert_payment(
            other_order.id, "order_rzp_1", Payment.STATUS_COMPLETED, "pay_1", Decimal("100.00"), timezone.now()
        )

        shares = self.ledger.split_refund([first, second], Decimal("250.00"), "rfnd_1")
        self.assertEqual([(p.id, s) for p, s in shares], [(first.id, Decimal("200.00")), (second.id, Decimal("50.00"))])

        with self.assertRaises(InvalidRefundState):
            self.ledger.split_refund([first, second], Decimal("500.01"), "rfnd_2")


class PaymentTransitionTestCase(TestCase):
    def test_transitions_only_move_forward(self):
        order = Order(payment_status=Order.PAYMENT_PAID, total_amount=Decimal("1"))
        self.assertTrue(order.can_transition_payment_to(Order.PAYMENT_REFUNDED))
        self.assertFalse(order.can_transition_payment_to(Order.PAYMENT_FAILED))
        self.assertFalse(order.can_transition_payment_to(Order.PAYMENT_PENDING))

        order.payment_status = Order.PAYMENT_FAILED
        self.assertTrue(order.can_transition_payment_to(Order.PAYMENT_PAID))

        order.payment_status = Order.PAYMENT_REFUNDED
        self.assertFalse(order.can_transition_payment_to(Order.PAYMENT_PAID))


class WebhookAPITestCase(MarketplaceFixtureMixin, TestCase):
    url = "/api/v1/payments/webhook/"

    def setUp(self):
        super().setUp()
        for patcher in carrier_patches():
            patcher.start()
            self.addCleanup(patcher.stop)

    def _event(self, event="payment.captured", **entity):
        entity.setdefault("id", "pay_1")
        entity.setdefault("order_id", "order_rzp_1")
        entity.setdefault("amount", 40000)
        entity.setdefault("created_at", 1700000000)
        node = "refund" if event == "refund.processed" else "payment"
        return json.dumps({"event": event, "payload": {node: {"entity": entity}}}).encode()

    def _post(self, body, signature=None, event_id=None):
        headers = {"HTTP_X_RAZORPAY_SIGNATURE": signature if signature is not None else sign(body, WEBHOOK_SECRET)}
        if event_id:
            headers["HTTP_X_RAZORPAY_EVENT_ID"] = event_id
        return self.client.post(self.url, data=body, content_type="application/json", **headers)

    def test_bad_signature_is_401_and_writes_nothing(self):
        response = self._post(self._event(), signature="0" * 64)

        self.assertEqual(response.status_code, 401)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)
        self.assertFalse(Payment.objects.exists())
        self.assertFalse(Shipment.objects.exists())

    def test_missing_signature_is_400(self):
        response = self.client.post(self.url, data=self._event(), content_type="application/json")
        self.assertEqual(response.status_code, 400)

    @override_settings(RAZORPAY_WEBHOOK_SECRET="")
    def test_missing_secret_is_500(self):
        response = self._post(self._event())
        self.assertEqual(response.status_code, 500)

    def test_unparseable_body_is_500(self):
        body = b"not json"
        response = self._post(body, signature=sign(body, WEBHOOK_SECRET))
        self.assertEqual(response.status_code, 500)

    def test_payment_captured_settles_the_order(self):
        response = self._post(self._event(), event_id="evt_1")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True, "message": "Webhook received"})

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual(self.order.status, "confirmed")
        self.assertIsNotNone(self.order.confirmation_sent_at)

        payment = Payment.objects.get()
        self.assertEqual(payment.status, Payment.STATUS_COMPLETED)
        self.assertEqual(payment.transaction_id, "pay_1")
        self.assertEqual(payment.amount, Decimal("400.00"))
        self.assertEqual(OrderItemPayment.objects.count(), 2)

        self.assertEqual(Shipment.objects.count(), 2)
        self.assertFalse(DraftShipment.objects.exists())
        self.assertFalse(OrderItem.objects.filter(shipment__isnull=True).exists())

        self.variants[1].refresh_from_db()
        self.assertEqual(self.variants[1].stock_quantity, 7)

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["buyer@example.com"])

    def test_redelivery_changes_nothing(self):
        self._post(self._event(), event_id="evt_1")
        self._post(self._event(), event_id="evt_1")
        # Same event under a new delivery id still finds nothing left to do
        self._post(self._event(), event_id="evt_1b")

        self.assertEqual(Payment.objects.count(), 1)
        self.assertEqual(OrderItemPayment.objects.count(), 2)
        self.assertEqual(Shipment.objects.count(), 2)
        self.assertEqual(ShiprocketClient.create_order.call_count, 2)
        self.variants[0].refresh_from_db()
        self.assertEqual(self.variants[0].stock_quantity, 9)
        self.assertEqual(len(mail.outbox), 1)

    def test_carrier_failure_still_confirms_payment(self):
        ShiprocketClient.get_pickup_locations.return_value = [CarrierPickupLocation(id="9001", nickname="Alpha WH")]

        response = self._post(self._event())

        self.assertEqual(response.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual(Shipment.objects.count(), 1)
        self.item_b.refresh_from_db()
        self.assertIsNone(self.item_b.shipment_id)
        self.assertIsNotNone(self.item_b.draft_shipment_id)

    def test_unknown_order_is_acknowledged(self):
        response = self._post(self._event(order_id="order_rzp_unknown"))
        self.assertEqual(response.status_code, 200)
        self.assertFalse(Payment.objects.exists())

    def test_unhandled_event_is_acknowledged(self):
        response = self._post(self._event(event="order.paid"))
        self.assertEqual(response.status_code, 200)
        self.assertFalse(Payment.objects.exists())

    def test_failed_after_paid_does_not_regress(self):
        self._post(self._event())
        self._post(self._event(event="payment.failed", id="pay_2"))

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual(Payment.objects.get().status, Payment.STATUS_COMPLETED)

    def test_partial_refund_keeps_the_order_paid(self):
        self._post(self._event())
        response = self._post(self._event(event="refund.processed", id="rfnd_1", payment_id="pay_1", amount=20000))

        self.assertEqual(response.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        refund = Payment.objects.get(status=Payment.STATUS_REFUNDED)
        self.assertEqual(refund.amount, Decimal("200.00"))
        self.assertEqual(
            sorted(OrderItemPayment.objects.filter(payment=refund).values_list("amount", flat=True)),
            [Decimal("50.00"), Decimal("150.00")],
        )

    def test_full_refund_marks_the_order_refunded(self):
        self._post(self._event())
        self._post(self._event(event="refund.processed", id="rfnd_1", payment_id="pay_1", amount=20000))
        self._post(self._event(event="refund.processed", id="rfnd_2", payment_id="pay_1", amount=20000))

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_REFUNDED)
        self.assertEqual(Payment.objects.filter(status=Payment.STATUS_REFUNDED).count(), 2)

    def test_second_refund_past_the_payment_is_not_recorded(self):
        self._post(self._event())
        self._post(self._event(event="refund.processed", id="rfnd_a", payment_id="pay_1", amount=30000))
        response = self._post(self._event(event="refund.processed", id="rfnd_b", payment_id="pay_1", amount=30000))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            list(Payment.objects.filter(status=Payment.STATUS_REFUNDED).values_list("transaction_id", flat=True)),
            ["rfnd_a"],
        )

    def _split_checkout(self):
        """Same gateway order, one order per seller: 100 and 300."""
        second = Order.objects.create(
            user=self.user, shipping_address=self.address, payment_ref_id="order_rzp_1",
            total_amount=Decimal("300.00"),
        )
        OrderItem.objects.filter(pk=self.item_b.pk).update(order=second)
        Order.objects.filter(pk=self.order.pk).update(total_amount=Decimal("100.00"))
        return second

    def test_split_checkout_full_refund(self):
        second = self._split_checkout()
        self._post(self._event())
        self.assertEqual(
            sorted(Payment.objects.filter(transaction_id="pay_1").values_list("amount", flat=True)),
            [Decimal("100.00"), Decimal("300.00")],
        )

        response = self._post(self._event(event="refund.processed", id="rfnd_full", payment_id="pay_1", amount=40000))

        self.assertEqual(response.status_code, 200)
        refunds = Payment.objects.filter(status=Payment.STATUS_REFUNDED, transaction_id="rfnd_full")
        self.assertEqual(
            {(str(r.order_id), r.amount) for r in refunds},
            {(str(self.order.id), Decimal("100.00")), (str(second.id), Decimal("300.00"))},
        )
        for order in (self.order, second):
            order.refresh_from_db()
            self.assertEqual(order.payment_status, Order.PAYMENT_REFUNDED)

        # Redelivery records nothing new
        self._post(self._event(event="refund.processed", id="rfnd_full", payment_id="pay_1", amount=40000))
        self.assertEqual(Payment.objects.filter(status=Payment.STATUS_REFUNDED).count(), 2)

    def test_split_checkout_partial_refund_is_shared_across_orders(self):
        second = self._split_checkout()
        self._post(self._event())

        self._post(self._event(event="refund.processed", id="rfnd_1", payment_id="pay_1", amount=20000))

        shares = dict(
            Payment.objects.filter(status=Payment.STATUS_REFUNDED).values_list("order_id", "amount")
        )
        self.assertEqual(shares, {self.order.id: Decimal("50.00"), second.id: Decimal("150.00")})
        item_refunds = dict(
            OrderItemPayment.objects.filter(status=Payment.STATUS_REFUNDED).values_list("order_item_id", "amount")
        )
        self.assertEqual(item_refunds, {self.item_a.id: Decimal("50.00"), self.item_b.id: Decimal("150.00")})
        second.refresh_from_db()
        self.assertEqual(second.payment_status, Order.PAYMENT_PAID)


class PaymentEventServiceTestCase(MarketplaceFixtureMixin, TestCase):
    def _entity(self, **kwargs):
        entity = {"id": "pay_1", "order_id": "order_rzp_1", "amount": 40000, "created_at": 1700000000}
        entity.update(kwargs)
        return entity

    def test_authorized_then_captured_reuses_the_payment_row(self):
        settlement = MagicMock()
        service = PaymentEventService(settlement=settlement)

        recorded = service.handle_payment_authorized(self._entity())

        self.assertEqual(recorded, [str(self.order.id)])
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_AUTHORIZED)
        self.assertEqual(Payment.objects.get().status, Payment.STATUS_AUTHORIZED)
        settlement.settle.assert_not_called()

        service.handle_payment_captured(self._entity())
        request = settlement.settle.call_args.args[0]
        self.assertEqual(request.order_ids, [str(self.order.id)])
        self.assertEqual(request.amount, Decimal("400.00"))
        self.assertEqual(request.source, "webhook")

    def test_malformed_payload(self):
        service = PaymentEventService(settlement=MagicMock())
        with self.assertRaises(Exception) as ctx:
            service.dispatch("payment.captured", {"payload": {}})
        self.assertEqual(ctx.exception.code, "malformed_event")

    def test_dispute_reads_dispute_entity(self):
        Payment.objects.create(order=self.order, gateway_order_id="order_rzp_1", transaction_id="pay_1",
                               amount=Decimal("400.00"), status=Payment.STATUS_COMPLETED)
        Order.objects.filter(pk=self.order.pk).update(payment_status=Order.PAYMENT_PAID)

        PaymentEventService(settlement=MagicMock()).dispatch("payment.dispute.created", {
            "payload": {"dispute": {"entity": {"id": "disp_1", "payment_id": "pay_1", "amount": 40000}}}
        })

        self.assertTrue(Payment.objects.filter(status=Payment.STATUS_REFUNDED, transaction_id="disp_1").exists())

    def test_paise_conversion(self):
        self.assertEqual(paise_to_amount(49999), Decimal("499.99"))
        self.assertEqual(paise_to_amount(None), Decimal("0.00"))


class VerifyPaymentAPITestCase(MarketplaceFixtureMixin, TestCase):
    url = "/api/v1/payments/verify/"

    def setUp(self):
        super().setUp()
        for patcher in carrier_patches():
            patcher.start()
            self.addCleanup(patcher.stop)
        self.cart = Cart.objects.create(user=self.user)
        CartItem.objects.create(cart=self.cart, product_variant=self.variants[0], quantity=1)

    def _body(self, **overrides):
        body = {
            "gatewayOrderId": "order_rzp_1",
            "gatewayPaymentId": "pay_1",
            "signature": sign("order_rzp_1|pay_1", KEY_SECRET),
            "orderDbId": str(self.order.id),
            "allOrderIds": [str(self.order.id)],
            "cartId": str(self.cart.id),
        }
        body.update(overrides)
        return body

    def test_verified_payment_settles_and_clears_cart(self):
        response = self.client.post(self.url, data=self._body(), content_type="application/json")

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data["success"])
        self.assertEqual(data["message"], "Payment verified and all Shiprocket orders created. Processed 1 orders.")
        self.assertEqual(data["data"]["processedOrders"], [{"orderId": str(self.order.id), "paymentStatus": "paid"}])
        self.assertEqual(len(data["data"]["shiprocketResults"]), 2)
        self.assertNotIn("failedItems", data["data"])
        self.assertFalse(Cart.objects.filter(pk=self.cart.pk).exists())
        self.assertEqual(len(mail.outbox), 1)

    def test_invalid_signature_is_400_and_writes_nothing(self):
        response = self.client.post(self.url, data=self._body(signature="f" * 64), content_type="application/json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"success": False, "message": "Invalid signature"})
        self.assertFalse(Payment.objects.exists())
        self.assertTrue(Cart.objects.filter(pk=self.cart.pk).exists())

    def test_missing_fields_are_400(self):
        body = self._body()
        del body["orderDbId"]
        response = self.client.post(self.url, data=body, content_type="application/json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "validation_error")

    def test_unknown_orders_are_404(self):
        missing = "00000000-0000-4000-8000-000000000000"
        response = self.client.post(
            self.url, data=self._body(orderDbId=missing, allOrderIds=[missing]), content_type="application/json",
        )
        self.assertEqual(response.status_code, 404)

    def test_partial_shipment_failure_is_reported(self):
        ShiprocketClient.get_pickup_locations.return_value = [CarrierPickupLocation(id="9001", nickname="Alpha WH")]

        response = self.client.post(self.url, data=self._body(), content_type="application/json")

        data = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertIn("some Shiprocket orders failed", data["message"])
        self.assertEqual(len(data["data"]["failedItems"]), 1)
        self.assertEqual(data["data"]["failedItems"][0]["code"], "invalid_pickup_location")


class ReconciliationTestCase(MarketplaceFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        Order.objects.filter(pk=self.order.pk).update(updated_at=timezone.now() - timedelta(hours=1))
        self.gateway = MagicMock()
        self.settlement = MagicMock()
        self.settlement.settle.return_value = SimpleNamespace(processed_orders=1)

    def test_paid_gateway_orders_are_settled(self):
        self.gateway.order.fetch.return_value = {"id": "order_rzp_1", "status": "paid"}
        self.gateway.order.payments.return_value = {"items": [
            {"id": "pay_0", "status": "failed", "amount": 40000},
            {"id": "pay_1", "status": "captured", "amount": 40000, "created_at": 1700000000},
        ]}

        result = ReconciliationService(settlement=self.settlement, gateway=self.gateway).reconcile_stuck_payments()

        self.assertEqual(result, {"checked": 1, "settled": 1})
        request = self.settlement.settle.call_args.args[0]
        self.assertEqual(request.transaction_id, "pay_1")
        self.assertEqual(request.source, "reconciliation")
        self.assertEqual(request.order_ids, [str(self.order.id)])

    def test_unpaid_gateway_orders_are_left_alone(self):
        self.gateway.order.fetch.return_value = {"id": "order_rzp_1", "status": "attempted"}

        result = ReconciliationService(settlement=self.settlement, gateway=self.gateway).reconcile_stuck_payments()

        self.assertEqual(result, {"checked": 1, "settled": 0})
        self.settlement.settle.assert_not_called()

    def test_recent_orders_are_not_checked(self):
        Order.objects.filter(pk=self.order.pk).update(updated_at=timezone.now())
        service = ReconciliationService(settlement=self.settlement, gateway=self.gateway)
        self.assertEqual(service.stuck_gateway_references(), [])


class PaymentListAPITestCase(MarketplaceFixtureMixin, TestCase):
    url = "/api/v1/payments/"

    def setUp(self):
        super().setUp()
        self.other_order = Order.objects.create(
            user=self.user, shipping_address=self.address, payment_ref_id="order_rzp_2",
            total_amount=Decimal("50.00"),
        )
        Payment.objects.create(order=self.order, gateway_order_id="order_rzp_1", transaction_id="pay_1",
                               amount=Decimal("400.00"), status=Payment.STATUS_COMPLETED)
        Payment.objects.create(order=self.other_order, gateway_order_id="order_rzp_2", transaction_id="pay_2",
                               amount=Decimal("50.00"), status=Payment.STATUS_FAILED)
        self.staff = User.objects.create_user(username="support", password="pass", is_staff=True)

    def test_customers_are_refused(self):
        self.client.force_login(self.user)
        response = self.client.get(self.url)
        self.assertEqual(response.status_code, 403)

    def test_anonymous_is_refused(self):
        response = self.client.get(self.url)
        self.assertIn(response.status_code, (401, 403))

    def test_staff_filters_by_status(self):
        self.client.force_login(self.staff)
        response = self.client.get(self.url, {"status": Payment.STATUS_COMPLETED})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 1)
        row = response.data["results"][0]
        self.assertEqual(row["transaction_id"], "pay_1")
        self.assertEqual(row["amount"], "400.00")

    def test_staff_filters_by_gateway_order(self):
        self.client.force_login(self.staff)
        response = self.client.get(self.url, {"gateway_order_id": "order_rzp_2"})

        self.assertEqual([row["transaction_id"] for row in response.data["results"]], ["pay_2"])
