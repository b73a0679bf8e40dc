from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import patch

from django.core import mail
from django.test import TestCase
from kombu.exceptions import OperationalError

from apps.notifications.services import OrderConfirmationDispatcher, build_confirmation_payload
from apps.notifications.tasks import render_confirmation_text, send_order_confirmation_email


def _user(pk=1, email="buyer@example.com"):
    return SimpleNamespace(pk=pk, email=email, get_full_name=lambda: "Asha Rao")


def _order(pk, total, user_id=1, email="buyer@example.com"):
    return SimpleNamespace(
        id=pk, user_id=user_id, user=_user(user_id, email), status="confirmed", payment_status="paid",
        total_amount=Decimal(total), created_at=datetime(2024, 5, 1, 10, 30, tzinfo=dt_timezone.utc),
        shipping_address=SimpleNamespace(
            full_name="Asha Rao", phone="9876543210", street="12 MG Road", landmark="", city="Bengaluru",
            state="Karnataka", zip_code="560001", country="India",
        ),
    )


def _item(pk, name, quantity=1, price="100.00"):
    seller = SimpleNamespace(id=7, store_name="Alpha")
    product = SimpleNamespace(name=name, seller=seller)
    return SimpleNamespace(
        id=pk, quantity=quantity, price_at_purchase=Decimal(price),
        discount_amount_at_purchase=Decimal("0.00"), gst_amount_at_purchase=Decimal("18.00"),
        shipping_charge=Decimal("40.00"), status="pending", seller_id=7,
        product_variant=SimpleNamespace(name="M", sku=f"SKU-{pk}", price=Decimal(price), product=product),
    )


def _payment(gateway_order_id="order_rzp_1", amount="100.00"):
    return SimpleNamespace(
        gateway="razorpay", transaction_id="pay_1", gateway_order_id=gateway_order_id, status="completed",
        amount=Decimal(amount), payment_date=datetime(2024, 5, 1, 10, 31, tzinfo=dt_timezone.utc),
    )


class ConfirmationPayloadTestCase(TestCase):
    def test_batch_is_flattened_under_the_first_order(self):
        batch = [
            (_order("o-1", "300.00"), [_item(1, "Tee", 2), _item(2, "Cap")], [_payment(amount="300.00")]),
            (_order("o-2", "100.00"), [_item(3, "Mug")], [_payment(amount="100.00")]),
        ]

        payload = build_confirmation_payload(batch)

        self.assertEqual(payload["id"], "o-1")
        self.assertEqual(payload["totalAmount"], "400.00")
        self.assertEqual(payload["user"], {"id": "1", "email": "buyer@example.com", "name": "Asha Rao"})
        self.assertEqual([item["id"] for item in payload["items"]], ["1", "2", "3"])
        self.assertEqual(len(payload["payments"]), 2)
        self.assertEqual(payload["_metadata"], {"totalOrders": 2, "orderIds": ["o-1", "o-2"]})
        self.assertEqual(payload["shippingAddress"]["zipCode"], "560001")
        self.assertEqual(payload["items"][0]["productVariant"]["product"]["seller"]["storeName"], "Alpha")
        self.assertEqual(payload["createdAt"], "2024-05-01T10:30:00+00:00")

    def test_mixed_customers_warns_and_uses_first(self):
        batch = [
            (_order("o-1", "100.00", user_id=1), [], []),
            (_order("o-2", "100.00", user_id=2, email="other@example.com"), [], []),
        ]

        with self.assertLogs("apps.notifications.services", level="WARNING") as logs:
            payload = build_confirmation_payload(batch)

        self.assertEqual(payload["user"]["email"], "buyer@example.com")
        self.assertIn("spans 2 customers", logs.output[0])


class ConfirmationEmailTaskTestCase(TestCase):
    def _payload(self, email="buyer@example.com", orders=1):
        batch = [(_order(f"o-{n}", "100.00", email=email), [_item(n, "Tee")], []) for n in range(orders)]
        return build_confirmation_payload(batch)

    def test_email_sent(self):
        result = send_order_confirmation_email.apply(args=[self._payload()]).get()

        self.assertEqual(result, "Sent")
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].subject, "Order #o-0 Confirmed")
        self.assertIn("Tee x 1", mail.outbox[0].body)

    def test_no_recipient_is_dropped(self):
        result = send_order_confirmation_email.apply(args=[self._payload(email="")]).get()

        self.assertEqual(result, "No Recipient")
        self.assertEqual(len(mail.outbox), 0)

    def test_split_checkout_text(self):
        text = render_confirmation_text(self._payload(orders=2))
        self.assertIn("Ships as 2 orders.", text)
        self.assertIn("Total paid: 200.00", text)


class DispatcherTestCase(TestCase):
    def test_queued(self):
        payload = build_confirmation_payload([(_order("o-1", "100.00"), [], [])])
        with patch("apps.notifications.tasks.send_order_confirmation_email.delay") as mock_delay:
            self.assertTrue(OrderConfirmationDispatcher().send_order_confirmation(payload))
        mock_delay.assert_called_once_with(payload)

    def test_broker_down_returns_false(self):
        payload = build_confirmation_payload([(_order("o-1", "100.00"), [], [])])
        with patch("apps.notifications.tasks.send_order_confirmation_email.delay",
                   side_effect=OperationalError("broker unreachable")):
            self.assertFalse(OrderConfirmationDispatcher().send_order_confirmation(payload))
