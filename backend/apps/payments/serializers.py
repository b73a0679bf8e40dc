# apps/payments/serializers.py
from rest_framework import serializers
from .models import Payment


class VerifyPaymentSerializer(serializers.Serializer):
    """Checkout callback body. Keys are camelCase on the wire."""
    gatewayOrderId = serializers.CharField(source="gateway_order_id", max_length=100)
    gatewayPaymentId = serializers.CharField(source="gateway_payment_id", max_length=100)
    signature = serializers.CharField(max_length=256)
    orderDbId = serializers.CharField(source="order_db_id", max_length=64)
    allOrderIds = serializers.ListField(
        child=serializers.CharField(max_length=64),
        source="all_order_ids",
        required=False,
        allow_empty=True,
        max_length=50,
    )
    cartId = serializers.CharField(source="cart_id", max_length=64, required=False, allow_blank=True, allow_null=True)

    def get_order_ids(self):
        data = self.validated_data
        return data.get("all_order_ids") or [data["order_db_id"]]


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = (
            "id",
            "order",
            "refund_of",
            "amount",
            "status",
            "gateway",
            "gateway_order_id",
            "transaction_id",
            "payment_date",
            "created_at"
        )
        read_only_fields = fields
