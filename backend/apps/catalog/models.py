from django.conf import settings
from django.db import models

User = settings.AUTH_USER_MODEL


class SellerProfile(models.Model):
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="seller_profile")
    store_name = models.CharField(max_length=255)
    phone = models.CharField(max_length=20, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.store_name


class Product(models.Model):
    seller = models.ForeignKey(SellerProfile, on_delete=models.CASCADE, related_name="products")

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    # Free text from the seller form; sanitised before it reaches the carrier
    hsn_code = models.CharField(max_length=50, blank=True)
    # Kilograms per unit. Empty means the carrier default is used.
    weight = models.DecimalField(max_digits=8, decimal_places=3, null=True, blank=True)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.name


class ProductVariant(models.Model):
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="variants")

    name = models.CharField(max_length=255, blank=True)
    sku = models.CharField(max_length=100, unique=True, db_index=True)
    price = models.DecimalField(max_digits=10, decimal_places=2)
    # Signed: concurrent settlements may oversell and take it below zero
    stock_quantity = models.IntegerField(default=0)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.product.name} - {self.name or self.sku}"
