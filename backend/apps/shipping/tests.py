import uuid
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import requests
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from apps.catalog.models import SellerProfile, Product, ProductVariant
from apps.orders.models import Order, OrderItem
from apps.shipping.client import ShiprocketClient, shiprocket_breaker, TOKEN_CACHE_KEY
from apps.shipping.grouping import group_by_seller, seller_totals
from apps.shipping.models import PickupLocation, DraftShipment
from apps.shipping.responses import AwbAssignment, CarrierOrder, CarrierPickupLocation, parse_pickup_locations
from apps.shipping.services import (
    ShipmentCreator,
    carrier_order_reference,
    format_phone,
    sanitize_hsn,
)
from apps.shipping.tasks import retry_draft_shipments
from apps.utils.exceptions import CarrierAPIError, InvalidPhoneNumber

User = get_user_model()


def make_seller(pk, name="Store"):
    return SimpleNamespace(id=pk, store_name=name)


def make_item(pk, seller, price="100.00", quantity=1, item_seller=None, pickup=None,
              courier_service_id=None, hsn_code="6109", weight=None):
    product = SimpleNamespace(name=f"Product {pk}", hsn_code=hsn_code, weight=weight, seller=seller)
    variant = SimpleNamespace(product=product, sku=f"SKU-{pk}", name="Default", price=Decimal(price))
    draft = None
    if pickup is not None:
        draft = SimpleNamespace(pickup_location=pickup, courier_service_id=courier_service_id,
                                courier_name="Delhivery")
    return SimpleNamespace(
        id=pk,
        seller=item_seller,
        seller_id=item_seller.id if item_seller else None,
        product_variant=variant,
        quantity=quantity,
        price_at_purchase=Decimal(price),
        discount_amount_at_purchase=Decimal("0.00"),
        gst_amount_at_purchase=Decimal("18.00"),
        shipping_charge=Decimal("40.00"),
        draft_shipment=draft,
        shipment_id=None,
    )


def make_order(phone="+91 98765-43210"):
    address = SimpleNamespace(
        full_name="Asha Rao", phone=phone, street="12 MG Road", landmark="", city="Bengaluru",
        state="Karnataka", zip_code="560001", country="India",
    )
    return SimpleNamespace(
        id=uuid.UUID("7b2f1c3e-0000-4000-8000-000000000001"),
        user=SimpleNamespace(email="asha@example.com"),
        shipping_address=address,
    )


def _response(status_code, data):
    response = MagicMock()
    response.status_code = status_code
    response.reason = "Error" if status_code >= 400 else "OK"
    response.json.return_value = data
    if status_code >= 500:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Server Error")
    return response


class ResponseParsingTestCase(TestCase):
    def test_carrier_order_requires_shipment_id(self):
        with self.assertRaises(CarrierAPIError):
            CarrierOrder.from_response({"order_id": 55, "message": "Invalid pincode"})

        order = CarrierOrder.from_response({"order_id": 55, "shipment_id": 901, "courier_company_id": 12})
        self.assertEqual(order.shipment_id, "901")
        self.assertEqual(order.courier_company_id, "12")

    def test_awb_found_in_each_envelope(self):
        nested = {"response": {"data": {"awb_code": "AWB1", "courier_company_id": 10, "courier_name": "Xpress"}}}
        flat = {"data": {"awb_code": "AWB2"}, "courier_name": "Blue Dart"}
        top = {"awb_code": "AWB3", "courier_company_id": 7}

        self.assertEqual(AwbAssignment.from_response(nested).awb_code, "AWB1")
        self.assertEqual(AwbAssignment.from_response(nested).courier_company_id, "10")
        self.assertEqual(AwbAssignment.from_response(flat).courier_name, "Blue Dart")
        self.assertEqual(AwbAssignment.from_response(top).awb_code, "AWB3")

    def test_missing_awb_is_a_failure(self):
        data = {"awb_assign_status": 0, "response": {"data": {"awb_assign_error": "Courier not serviceable"}}}
        with self.assertRaises(CarrierAPIError) as ctx:
            AwbAssignment.from_response(data)
        self.assertIn("Courier not serviceable", ctx.exception.message)

    def test_parse_pickup_locations(self):
        locations = parse_pickup_locations({"data": {"shipping_address": [
            {"id": 9001, "pickup_location": "Main WH", "pin_code": 560001},
            {"pickup_location": "no id"},
        ]}})
        self.assertEqual(locations, [CarrierPickupLocation(id="9001", nickname="Main WH", pin_code="560001")])


class ShiprocketClientTestCase(TestCase):
    def setUp(self):
        cache.clear()
        shiprocket_breaker.reset()
        self.client = ShiprocketClient("https://carrier.test/v1/external/", "ops@example.com", "pw")

    @patch("apps.shipping.client.requests.request")
    def test_login_once_then_reuse_token(self, mock_request):
        mock_request.side_effect = [
            _response(200, {"token": "tok-1"}),
            _response(200, {"order_id": 1, "shipment_id": 11}),
            _response(200, {"order_id": 2, "shipment_id": 22}),
        ]

        self.client.create_order({"order_id": "A"})
        second = self.client.create_order({"order_id": "B"})

        self.assertEqual(second.shipment_id, "22")
        self.assertEqual(mock_request.call_count, 3)
        login_call = mock_request.call_args_list[0]
        self.assertEqual(login_call.args[1], "https://carrier.test/v1/external/auth/login")
        self.assertEqual(
            mock_request.call_args_list[2].kwargs["headers"]["Authorization"], "Bearer tok-1"
        )

    @patch("apps.shipping.client.requests.request")
    def test_expired_token_is_refreshed_once(self, mock_request):
        cache.set(TOKEN_CACHE_KEY, "stale")
        mock_request.side_effect = [
            _response(401, {"message": "Token expired"}),
            _response(200, {"token": "fresh"}),
            _response(200, {"awb_code": "AWB9"}),
        ]

        assignment = self.client.assign_awb("11", courier_id="12")

        self.assertEqual(assignment.awb_code, "AWB9")
        self.assertEqual(cache.get(TOKEN_CACHE_KEY), "fresh")
        self.assertEqual(mock_request.call_args_list[2].kwargs["json"], {"shipment_id": "11", "courier_id": 12})

    @patch("apps.shipping.client.requests.request")
    def test_rejection_raises_without_tripping_breaker(self, mock_request):
        cache.set(TOKEN_CACHE_KEY, "tok")
        mock_request.return_value = _response(422, {"message": "Pickup location not found"})

        for _ in range(6):
            with self.assertRaises(CarrierAPIError) as ctx:
                self.client.create_order({})
            self.assertIn("Pickup location not found", ctx.exception.message)

        self.assertFalse(shiprocket_breaker.is_open())

    @patch("apps.shipping.client.requests.request")
    def test_server_errors_open_the_circuit(self, mock_request):
        cache.set(TOKEN_CACHE_KEY, "tok")
        mock_request.return_value = _response(502, {})

        for _ in range(5):
            with self.assertRaises(CarrierAPIError):
                self.client.get_pickup_locations()

        with self.assertRaises(CarrierAPIError) as ctx:
            self.client.get_pickup_locations()
        self.assertEqual(ctx.exception.code, "carrier_unavailable")
        self.assertEqual(mock_request.call_count, 5)

    def test_missing_credentials(self):
        client = ShiprocketClient("https://carrier.test", "", "")
        with self.assertRaises(CarrierAPIError) as ctx:
            client.get_pickup_locations()
        self.assertEqual(ctx.exception.code, "config_error")


class GroupingTestCase(TestCase):
    def test_items_grouped_by_seller_in_first_seen_order(self):
        alpha, beta = make_seller(1, "Alpha"), make_seller(2, "Beta")
        items = [make_item(10, alpha), make_item(11, beta), make_item(12, alpha)]

        groups = group_by_seller(items)

        self.assertEqual(list(groups), ["1", "2"])
        self.assertEqual(groups["1"].item_ids, ["10", "12"])
        self.assertEqual(groups["2"].seller_name, "Beta")

    def test_line_item_seller_wins_over_product_owner(self):
        owner, reseller = make_seller(1, "Owner"), make_seller(5, "Reseller")
        groups = group_by_seller([make_item(10, owner, item_seller=reseller)])
        self.assertEqual(list(groups), ["5"])

    def test_seller_totals(self):
        seller = make_seller(1)
        group = group_by_seller([
            make_item(1, seller, price="100.00", quantity=2, weight=Decimal("1.250")),
            make_item(2, seller, price="50.00"),
        ])["1"]

        totals = seller_totals(group)

        self.assertEqual(totals.subtotal, Decimal("250.00"))
        self.assertEqual(totals.shipping, Decimal("80.00"))
        self.assertEqual(totals.gst, Decimal("36.00"))
        self.assertEqual(totals.weight, Decimal("3.000"))


class PayloadHelpersTestCase(TestCase):
    def test_format_phone(self):
        self.assertEqual(format_phone("+91 98765-43210"), "919876543210")
        self.assertEqual(format_phone("09876543210"), "9876543210")
        with self.assertRaises(InvalidPhoneNumber):
            format_phone("n/a")

    def test_sanitize_hsn(self):
        self.assertEqual(sanitize_hsn("HSN 6109.10", "123456789"), "610910")
        self.assertEqual(sanitize_hsn("", "123456789"), "123456789")
        self.assertEqual(sanitize_hsn("N/A", "123456789"), "123456789")
        self.assertEqual(sanitize_hsn("1" * 20, "123456789"), "1" * 15)

    def test_carrier_order_reference(self):
        reference = carrier_order_reference("7b2f1c3e-aaaa", "42", now_ms=1700000123456)
        self.assertEqual(reference, "ORD_7b2f1c3e_42_123456")
        self.assertLessEqual(len(carrier_order_reference(uuid.uuid4(), uuid.uuid4())), 50)


class ShipmentCreatorTestCase(TestCase):
    def setUp(self):
        self.seller = make_seller(1, "Alpha")
        self.pickup = SimpleNamespace(id=3, seller_id=1, location_id="9001", nickname="Main WH")
        self.order = make_order()
        self.client = MagicMock()
        self.client.get_pickup_locations.return_value = [CarrierPickupLocation(id="9001", nickname="Main WH")]
        self.client.create_order.return_value = CarrierOrder(
            shipment_id="SHIP1", carrier_order_id="CO1", courier_company_id="77"
        )
        self.creator = ShipmentCreator(self.client, default_hsn="123456789")

    def _group(self, **item_kwargs):
        item_kwargs.setdefault("pickup", self.pickup)
        return group_by_seller([make_item(10, self.seller, **item_kwargs)])["1"]

    def test_preferred_courier_success(self):
        self.client.assign_awb.return_value = AwbAssignment(awb_code="AWB1", courier_name="Delhivery")

        result = self.creator.create_for_seller_group(self._group(courier_service_id="12"), self.order)

        self.assertTrue(result.success)
        self.assertEqual(result.awb_code, "AWB1")
        self.assertEqual(result.courier_company_id, "12")
        self.assertEqual(result.pickup_location_id, 3)
        self.client.assign_awb.assert_called_once_with("SHIP1", courier_id="12")

    def test_falls_back_to_suggested_then_auto(self):
        self.client.assign_awb.side_effect = [
            CarrierAPIError("Courier not serviceable"),
            CarrierAPIError("Courier not serviceable"),
            AwbAssignment(awb_code="AWB-AUTO", courier_company_id="99"),
        ]

        result = self.creator.create_for_seller_group(self._group(courier_service_id="12"), self.order)

        self.assertTrue(result.success)
        self.assertEqual(result.courier_company_id, "99")
        tried = [c.kwargs["courier_id"] for c in self.client.assign_awb.call_args_list]
        self.assertEqual(tried, ["12", "77", None])

    def test_suggested_courier_used_when_preferred_refuses(self):
        self.client.assign_awb.side_effect = [
            CarrierAPIError("Courier not serviceable"),
            AwbAssignment(awb_code="AWB77"),
        ]

        result = self.creator.create_for_seller_group(self._group(courier_service_id="12"), self.order)

        self.assertTrue(result.success)
        self.assertEqual(result.awb_code, "AWB77")
        self.assertEqual(result.courier_company_id, "77")
        tried = [c.kwargs["courier_id"] for c in self.client.assign_awb.call_args_list]
        self.assertEqual(tried, ["12", "77"])

    def test_suggestion_equal_to_preferred_is_not_retried(self):
        self.client.create_order.return_value = CarrierOrder(
            shipment_id="SHIP1", carrier_order_id="CO1", courier_company_id="12"
        )
        self.client.assign_awb.side_effect = [
            CarrierAPIError("Courier not serviceable"),
            AwbAssignment(awb_code="AWB-AUTO", courier_company_id="55"),
        ]

        result = self.creator.create_for_seller_group(self._group(courier_service_id="12"), self.order)

        self.assertTrue(result.success)
        self.assertEqual(result.courier_company_id, "55")
        tried = [c.kwargs["courier_id"] for c in self.client.assign_awb.call_args_list]
        self.assertEqual(tried, ["12", None])

    def test_seller_totals_computed_once_per_group(self):
        self.client.assign_awb.return_value = AwbAssignment(awb_code="AWB1")

        with patch("apps.shipping.services.seller_totals", wraps=seller_totals) as totals:
            result = self.creator.create_for_seller_group(self._group(courier_service_id="12"), self.order)

        self.assertTrue(result.success)
        self.assertEqual(totals.call_count, 1)

    def test_every_tier_failing_is_a_group_failure(self):
        self.client.assign_awb.side_effect = CarrierAPIError("No courier")

        result = self.creator.create_for_seller_group(self._group(), self.order)

        self.assertFalse(result.success)
        self.assertEqual(result.code, "awb_assignment_failed")
        self.assertIn("No courier", result.error)
        self.assertEqual(result.as_dict()["sellerGroup"]["itemIds"], ["10"])

    def test_missing_draft_means_no_pickup_location(self):
        group = group_by_seller([make_item(10, self.seller)])["1"]
        result = self.creator.create_for_seller_group(group, self.order)

        self.assertEqual(result.code, "no_pickup_location")
        self.client.create_order.assert_not_called()

    def test_pickup_of_another_seller_is_rejected(self):
        foreign = SimpleNamespace(id=4, seller_id=2, location_id="9001", nickname="Main WH")
        result = self.creator.create_for_seller_group(self._group(pickup=foreign), self.order)
        self.assertEqual(result.code, "no_pickup_location")

    def test_unknown_pickup_location_is_rejected(self):
        self.client.get_pickup_locations.return_value = [CarrierPickupLocation(id="1", nickname="Other")]
        result = self.creator.create_for_seller_group(self._group(), self.order)

        self.assertEqual(result.code, "invalid_pickup_location")
        self.client.create_order.assert_not_called()

    def test_bad_phone_fails_before_carrier_order(self):
        result = self.creator.create_for_seller_group(self._group(), make_order(phone="---"))

        self.assertEqual(result.code, "invalid_phone_number")
        self.client.create_order.assert_not_called()

    def test_payload(self):
        group = self._group(hsn_code="", weight=None)
        payload = self.creator.build_payload(group, self.order, "Main WH")

        self.assertEqual(payload["pickup_location"], "Main WH")
        self.assertEqual(payload["billing_customer_name"], "Asha")
        self.assertEqual(payload["billing_last_name"], "Rao")
        self.assertEqual(payload["billing_phone"], "919876543210")
        self.assertEqual(payload["payment_method"], "Prepaid")
        self.assertEqual(payload["sub_total"], 100.0)
        self.assertEqual(payload["weight"], 0.5)
        self.assertEqual(payload["order_items"][0]["hsn"], "123456789")
        self.assertTrue(payload["order_id"].startswith("ORD_7b2f1c3e_1_"))


class RetryDraftShipmentsTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="buyer", email="buyer@example.com", password="pass")
        seller_user = User.objects.create_user(username="seller", password="pass")
        self.seller = SellerProfile.objects.create(user=seller_user, store_name="Alpha")
        product = Product.objects.create(seller=self.seller, name="Tee")
        self.variant = ProductVariant.objects.create(product=product, sku="TEE-1", price=Decimal("100.00"))
        self.pickup = PickupLocation.objects.create(
            seller=self.seller, location_id="9001", nickname="Main WH", address="1 Road",
            city="Bengaluru", state="KA", pin_code="560001",
        )

    def _order_with_draft(self, payment_status, age_minutes):
        order = Order.objects.create(user=self.user, total_amount=Decimal("100.00"),
                                     payment_ref_id="order_rzp_1", payment_status=payment_status)
        draft = DraftShipment.objects.create(
            pickup_location=self.pickup, created_at=timezone.now() - timedelta(minutes=age_minutes)
        )
        OrderItem.objects.create(order=order, product_variant=self.variant, seller=self.seller,
                                 quantity=1, price_at_purchase=Decimal("100.00"), draft_shipment=draft)
        return order

    @patch("apps.settlement.services.build_settlement_service")
    def test_only_stale_paid_drafts_are_retried(self, mock_build):
        stale_paid = self._order_with_draft(Order.PAYMENT_PAID, age_minutes=60)
        self._order_with_draft(Order.PAYMENT_PAID, age_minutes=1)
        self._order_with_draft(Order.PAYMENT_PENDING, age_minutes=60)
        mock_build.return_value.retry_shipments.return_value = SimpleNamespace(shipments=[object()], failures=[])

        result = retry_draft_shipments()

        mock_build.return_value.retry_shipments.assert_called_once_with(stale_paid.id)
        self.assertEqual(result, {"orders": 1, "shipments": 1, "failures": 0})

    @patch("apps.settlement.services.build_settlement_service")
    def test_nothing_to_retry(self, mock_build):
        self.assertEqual(retry_draft_shipments(), {"orders": 0, "shipments": 0, "failures": 0})
        mock_build.assert_not_called()


class CheckPickupLocationsCommandTestCase(TestCase):
    def setUp(self):
        seller_user = User.objects.create_user(username="seller", password="pass")
        self.seller = SellerProfile.objects.create(user=seller_user, store_name="Alpha")
        self.known = PickupLocation.objects.create(
            seller=self.seller, location_id="9001", nickname="main wh", address="1 Road",
            city="Bengaluru", state="KA", pin_code="560001",
        )
        PickupLocation.objects.create(
            seller=self.seller, location_id="404", nickname="Ghost", address="2 Road",
            city="Bengaluru", state="KA", pin_code="560002",
        )

    @patch("apps.shipping.management.commands.check_pickup_locations.ShiprocketClient.from_settings")
    def test_reports_and_fixes(self, mock_from_settings):
        mock_from_settings.return_value.get_pickup_locations.return_value = [
            CarrierPickupLocation(id="9001", nickname="Main WH"),
        ]
        out = StringIO()

        call_command("check_pickup_locations", "--fix-nicknames", stdout=out)

        output = out.getvalue()
        self.assertIn("'Ghost' (id 404) is not registered", output)
        self.assertIn("1 unregistered, 1 nickname mismatches", output)
        self.known.refresh_from_db()
        self.assertEqual(self.known.nickname, "Main WH")
