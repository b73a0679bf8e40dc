# apps/payments/urls.py
from django.urls import path
from .views import PaymentListAPIView, PaymentWebhookAPIView, VerifyPaymentAPIView

urlpatterns = [
    path("", PaymentListAPIView.as_view(), name="payment-list"),
    path("verify/", VerifyPaymentAPIView.as_view(), name="payment-verify"),
    path("webhook/", PaymentWebhookAPIView.as_view(), name="payment-webhook"),
]
