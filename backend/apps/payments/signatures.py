# apps/payments/signatures.py
import hmac
import hashlib

from apps.utils.exceptions import SignatureMismatch


def _hex_hmac(message: bytes, secret: str) -> str:
    return hmac.new(
        key=secret.encode('utf-8'),
        msg=message,
        digestmod=hashlib.sha256
    ).hexdigest()


def _matches(message: bytes, signature: str, secret: str) -> bool:
    if not (message and signature and secret):
        return False
    expected = _hex_hmac(message, secret)
    # Constant time; compare bytes so non-ASCII input cannot raise
    return hmac.compare_digest(expected.encode('utf-8'), signature.encode('utf-8'))


def verify_webhook_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """
    HMAC-SHA256 over the exact bytes received. Never pass a re-serialised
    body: key order and whitespace changes break the signature.
    """
    if isinstance(raw_body, str):
        raw_body = raw_body.encode('utf-8')
    return _matches(raw_body, signature, secret)


def verify_payment_signature(gateway_order_id: str, gateway_payment_id: str, signature: str, secret: str) -> bool:
    """Checkout callback variant: the signed message is `order_id|payment_id`."""
    if not (gateway_order_id and gateway_payment_id):
        return False
    message = f"{gateway_order_id}|{gateway_payment_id}".encode('utf-8')
    return _matches(message, signature, secret)


def require_webhook_signature(raw_body, signature, secret):
    if not verify_webhook_signature(raw_body, signature, secret):
        raise SignatureMismatch("Invalid webhook signature")


def require_payment_signature(gateway_order_id, gateway_payment_id, signature, secret):
    if not verify_payment_signature(gateway_order_id, gateway_payment_id, signature, secret):
        raise SignatureMismatch("Invalid signature")
