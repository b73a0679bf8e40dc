from django.contrib import admin
from django.contrib import messages
from django.utils.html import format_html
from django.utils.timezone import localtime
from import_export import resources, fields
from import_export.admin import ImportExportModelAdmin
from import_export.widgets import ForeignKeyWidget
from django.contrib.auth import get_user_model

from apps.utils.exceptions import BusinessLogicException
from .models import Order, OrderItem, Cart, CartItem

User = get_user_model()


class OrderResource(resources.ModelResource):
    user = fields.Field(
        column_name='user_email',
        attribute='user',
        widget=ForeignKeyWidget(User, 'email')
    )

    class Meta:
        model = Order
        fields = (
            'id',
            'user',
            'payment_ref_id',
            'payment_status',
            'status',
            'total_amount',
            'confirmation_sent_at',
            'created_at',
            'updated_at',
        )
        export_order = fields


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    can_delete = False
    fields = (
        'product_variant', 'seller', 'quantity', 'price_at_purchase',
        'subtotal', 'shipment_info', 'stock_decremented', 'status',
    )
    readonly_fields = (
        'product_variant', 'seller', 'quantity', 'price_at_purchase',
        'subtotal', 'shipment_info', 'stock_decremented',
    )

    def subtotal(self, obj):
        if obj.price_at_purchase is None or obj.quantity is None:
            return "₹0.00"
        return f"₹{obj.line_total:.2f}"
    subtotal.short_description = "Subtotal"

    def shipment_info(self, obj):
        if obj.shipment_id:
            return format_html(
                '<b>{}</b><br><small>AWB {}</small>',
                obj.shipment.carrier_shipment_id,
                obj.shipment.awb_code or "-",
            )
        if obj.draft_shipment_id:
            return format_html('<span style="color:#fd7e14;">Draft #{}</span>', obj.draft_shipment_id)
        return format_html('<span style="color:red;">No shipment</span>')
    shipment_info.short_description = "Shipment"


@admin.register(Order)
class OrderAdmin(ImportExportModelAdmin):
    resource_class = OrderResource
    list_display = (
        'id',
        'customer_email',
        'payment_ref_id',
        'payment_badge',
        'status',
        'total_amount_display',
        'confirmation_sent',
        'created_at_date',
    )
    list_filter = (
        'payment_status',
        'status',
        'created_at',
    )
    search_fields = (
        'id',
        'payment_ref_id',
        'user__email',
        'user__username',
    )
    list_select_related = ('user',)
    raw_id_fields = ('user', 'shipping_address')
    readonly_fields = ('payment_status', 'confirmation_sent_at', 'created_at', 'updated_at')
    inlines = [OrderItemInline]
    list_per_page = 25
    actions = ['retry_shipments']

    def customer_email(self, obj):
        return obj.user.email or obj.user.get_username()
    customer_email.short_description = "Customer"
    customer_email.admin_order_field = 'user__email'

    def total_amount_display(self, obj):
        return f"₹{obj.total_amount:.2f}"
    total_amount_display.short_description = "Total"
    total_amount_display.admin_order_field = 'total_amount'

    def payment_badge(self, obj):
        colors = {
            Order.PAYMENT_PENDING: '#ffc107',
            Order.PAYMENT_AUTHORIZED: '#17a2b8',
            Order.PAYMENT_PAID: '#28a745',
            Order.PAYMENT_FAILED: '#dc3545',
            Order.PAYMENT_REFUNDED: '#6f42c1',
        }
        color = colors.get(obj.payment_status, '#6c757d')
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 8px; border-radius: 4px; font-size: 0.8em;">{}</span>',
            color,
            obj.get_payment_status_display()
        )
    payment_badge.short_description = "Payment"

    def confirmation_sent(self, obj):
        return bool(obj.confirmation_sent_at)
    confirmation_sent.boolean = True
    confirmation_sent.short_description = "Email"

    def created_at_date(self, obj):
        if obj.created_at:
            return localtime(obj.created_at).strftime('%d/%m/%Y %H:%M')
        return "N/A"
    created_at_date.short_description = "Created"
    created_at_date.admin_order_field = 'created_at'

    @admin.action(description='Retry carrier shipments for selected paid orders')
    def retry_shipments(self, request, queryset):
        from apps.settlement.services import build_settlement_service

        service = build_settlement_service()
        created = failed = 0
        for order in queryset.filter(payment_status=Order.PAYMENT_PAID):
            try:
                result = service.retry_shipments(order.id)
            except BusinessLogicException as e:
                self.message_user(request, f"Order {order.id}: {e.message}", level=messages.ERROR)
                continue
            created += len(result.shipments)
            failed += len(result.failures)

        level = messages.WARNING if failed else messages.SUCCESS
        self.message_user(request, f"{created} shipments created, {failed} seller groups still failing.", level=level)


class CartItemInline(admin.TabularInline):
    model = CartItem
    extra = 0
    raw_id_fields = ('product_variant',)


@admin.register(Cart)
class CartAdmin(admin.ModelAdmin):
    list_display = ('id', 'user', 'item_count', 'updated_at')
    search_fields = ('id', 'user__email')
    raw_id_fields = ('user',)
    inlines = [CartItemInline]

    def item_count(self, obj):
        return obj.items.count()
    item_count.short_description = "Items"
