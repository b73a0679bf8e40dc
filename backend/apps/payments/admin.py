from django.contrib import admin
from django.utils.html import format_html
from django.utils.timezone import localtime
from import_export import resources, fields
from import_export.admin import ImportExportModelAdmin
from import_export.widgets import ForeignKeyWidget

from apps.orders.models import Order
from .models import Payment, OrderItemPayment


class PaymentResource(resources.ModelResource):
    order = fields.Field(
        column_name='order_id',
        attribute='order',
        widget=ForeignKeyWidget(Order, 'id')
    )

    class Meta:
        model = Payment
        fields = (
            'id',
            'order',
            'gateway',
            'gateway_order_id',
            'transaction_id',
            'amount',
            'status',
            'refund_of',
            'payment_date',
            'created_at',
        )
        export_order = fields


class OrderItemPaymentInline(admin.TabularInline):
    model = OrderItemPayment
    extra = 0
    can_delete = False
    fields = ('id', 'order_item', 'amount', 'status', 'updated_at')
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Payment)
class PaymentAdmin(ImportExportModelAdmin):
    resource_class = PaymentResource
    list_display = (
        'id',
        'order_info',
        'gateway_order_id',
        'transaction_id',
        'amount_display',
        'status_badge',
        'refund_info',
        'payment_date_display',
    )
    list_filter = (
        'status',
        'gateway',
        'created_at',
    )
    search_fields = (
        'id',
        'order__id',
        'gateway_order_id',
        'transaction_id',
    )
    list_select_related = ('order', 'refund_of')
    raw_id_fields = ('order', 'refund_of')
    list_per_page = 25
    inlines = [OrderItemPaymentInline]

    fieldsets = (
        ('Payment Information', {
            'fields': ('order', 'gateway', 'amount', 'status', 'payment_date')
        }),
        ('Gateway Details', {
            'fields': ('gateway_order_id', 'transaction_id', 'refund_of'),
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    # The ledger is written by webhooks only
    readonly_fields = (
        'order', 'gateway', 'amount', 'status', 'payment_date',
        'gateway_order_id', 'transaction_id', 'refund_of',
        'created_at', 'updated_at',
    )

    def has_add_permission(self, request):
        return False

    def order_info(self, obj):
        return f"Order #{str(obj.order_id)[:8]}"
    order_info.short_description = "Order"
    order_info.admin_order_field = 'order__id'

    def amount_display(self, obj):
        sign = "-" if obj.status == Payment.STATUS_REFUNDED else ""
        return f"{sign}₹{obj.amount:.2f}"
    amount_display.short_description = "Amount"
    amount_display.admin_order_field = 'amount'

    def refund_info(self, obj):
        if obj.refund_of_id:
            return f"Refund of #{obj.refund_of_id}"
        return "-"
    refund_info.short_description = "Refund"

    def status_badge(self, obj):
        colors = {
            Payment.STATUS_AUTHORIZED: '#ffc107',
            Payment.STATUS_COMPLETED: '#28a745',
            Payment.STATUS_FAILED: '#dc3545',
            Payment.STATUS_REFUNDED: '#6f42c1',
        }
        color = colors.get(obj.status, '#6c757d')
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 8px; border-radius: 4px; font-size: 0.8em;">{}</span>',
            color,
            obj.get_status_display()
        )
    status_badge.short_description = "Status"

    def payment_date_display(self, obj):
        if obj.payment_date:
            return localtime(obj.payment_date).strftime('%d/%m/%Y %H:%M')
        return "N/A"
    payment_date_display.short_description = "Paid At"
    payment_date_display.admin_order_field = 'payment_date'


@admin.register(OrderItemPayment)
class OrderItemPaymentAdmin(admin.ModelAdmin):
    list_display = ('id', 'order_item', 'payment', 'amount', 'status', 'updated_at')
    list_filter = ('status',)
    search_fields = ('id', 'payment__gateway_order_id', 'payment__transaction_id')
    list_select_related = ('order_item', 'payment')
    raw_id_fields = ('order_item', 'payment')
    readonly_fields = ('id', 'order_item', 'payment', 'amount', 'status', 'created_at', 'updated_at')
    list_per_page = 50

    def has_add_permission(self, request):
        return False
