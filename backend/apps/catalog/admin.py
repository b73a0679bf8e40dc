from django.contrib import admin
from django.utils.html import format_html
from import_export import resources, fields, widgets
from import_export.admin import ImportExportModelAdmin

from .models import SellerProfile, Product, ProductVariant


class ProductVariantResource(resources.ModelResource):
    product = fields.Field(
        column_name='product',
        attribute='product',
        widget=widgets.ForeignKeyWidget(Product, 'name')
    )

    class Meta:
        model = ProductVariant
        import_id_fields = ('sku',)
        fields = ('id', 'product', 'name', 'sku', 'price', 'stock_quantity', 'is_active')


class ProductVariantInline(admin.TabularInline):
    model = ProductVariant
    extra = 0
    fields = ('name', 'sku', 'price', 'stock_quantity', 'is_active')


@admin.register(SellerProfile)
class SellerProfileAdmin(admin.ModelAdmin):
    list_display = ('store_name', 'user', 'phone', 'is_active', 'pickup_count', 'created_at')
    list_filter = ('is_active',)
    search_fields = ('store_name', 'user__email', 'phone')
    raw_id_fields = ('user',)

    def pickup_count(self, obj):
        return obj.pickup_locations.count()
    pickup_count.short_description = "Pickup Locations"


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ('name', 'seller', 'hsn_code', 'weight', 'is_active', 'created_at')
    list_filter = ('is_active', 'seller')
    search_fields = ('name', 'hsn_code', 'seller__store_name')
    list_select_related = ('seller',)
    inlines = [ProductVariantInline]


@admin.register(ProductVariant)
class ProductVariantAdmin(ImportExportModelAdmin):
    resource_class = ProductVariantResource
    list_display = ('sku', 'product', 'price', 'stock_display', 'is_active')
    list_filter = ('is_active',)
    search_fields = ('sku', 'name', 'product__name')
    list_select_related = ('product',)

    def stock_display(self, obj):
        # Oversold variants go negative
        if obj.stock_quantity < 0:
            return format_html('<b style="color:#dc3545;">{}</b>', obj.stock_quantity)
        return obj.stock_quantity
    stock_display.short_description = "Stock"
    stock_display.admin_order_field = 'stock_quantity'
