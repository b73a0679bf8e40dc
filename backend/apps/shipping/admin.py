from django.contrib import admin
from django.utils.html import format_html
from django.utils.timezone import localtime

from .models import PickupLocation, DraftShipment, Shipment


@admin.register(PickupLocation)
class PickupLocationAdmin(admin.ModelAdmin):
    list_display = ('nickname', 'seller', 'location_id', 'city', 'pin_code', 'is_default')
    list_filter = ('is_default', 'state')
    search_fields = ('nickname', 'location_id', 'seller__store_name', 'pin_code')
    list_select_related = ('seller',)
    raw_id_fields = ('seller',)


@admin.register(DraftShipment)
class DraftShipmentAdmin(admin.ModelAdmin):
    list_display = ('id', 'pickup_location', 'courier_name', 'courier_service_id', 'shipping_charge', 'created_at')
    search_fields = ('courier_name', 'pickup_location__nickname')
    list_select_related = ('pickup_location',)
    raw_id_fields = ('pickup_location',)


@admin.register(Shipment)
class ShipmentAdmin(admin.ModelAdmin):
    list_display = (
        'carrier_shipment_id',
        'carrier_order_id',
        'awb_code',
        'courier_name',
        'status_badge',
        'shipping_charge',
        'created_at_date',
    )
    list_filter = ('status', 'courier_name', 'created_at')
    search_fields = ('carrier_shipment_id', 'carrier_order_id', 'awb_code')
    raw_id_fields = ('pickup_location',)
    readonly_fields = ('carrier_shipment_id', 'carrier_order_id', 'created_at', 'updated_at')
    list_per_page = 25

    def status_badge(self, obj):
        colors = {
            'NEW': '#ffc107',
            'PICKUP_SCHEDULED': '#17a2b8',
            'IN_TRANSIT': '#007bff',
            'DELIVERED': '#28a745',
            'CANCELLED': '#dc3545',
        }
        color = colors.get(obj.status, '#6c757d')
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 8px; border-radius: 4px; font-size: 0.8em;">{}</span>',
            color,
            obj.get_status_display()
        )
    status_badge.short_description = "Status"

    def created_at_date(self, obj):
        return localtime(obj.created_at).strftime('%d/%m/%Y %H:%M')
    created_at_date.short_description = "Created"
    created_at_date.admin_order_field = 'created_at'
