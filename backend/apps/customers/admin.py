from django.contrib import admin

from .models import ShippingAddress


@admin.register(ShippingAddress)
class ShippingAddressAdmin(admin.ModelAdmin):
    list_display = ('full_name', 'user', 'phone', 'city', 'zip_code', 'is_default')
    list_filter = ('is_default', 'state')
    search_fields = ('full_name', 'phone', 'user__email', 'zip_code')
    raw_id_fields = ('user',)
