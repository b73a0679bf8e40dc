# apps/notifications/tasks.py
from celery import shared_task
from celery.utils.log import get_task_logger
from django.conf import settings
from django.core.mail import send_mail

logger = get_task_logger(__name__)


def render_confirmation_text(payload):
    lines = [f"Thank you! Your order #{payload['id']} is confirmed.", ""]
    for item in payload.get("items", []):
        product = item["productVariant"]["product"]["name"]
        lines.append(f"- {product} x {item['quantity']} @ {item['priceAtPurchase']}")
    lines.append("")
    lines.append(f"Total paid: {payload['totalAmount']}")
    if payload["_metadata"]["totalOrders"] > 1:
        lines.append(f"Ships as {payload['_metadata']['totalOrders']} orders.")
    return "\n".join(lines)


@shared_task(
    bind=True,
    max_retries=5,
    default_retry_delay=60,
    autoretry_for=(OSError,),
    retry_backoff=True, # Exponential Backoff
    retry_backoff_max=600, # Cap wait time at 10 mins
    queue='high_priority'
)
def send_order_confirmation_email(self, payload):
    """
    One email per checkout, built from the flattened settlement payload.
    SMTP / network errors retry with backoff; a payload without a
    recipient is not recoverable and is dropped.
    """
    recipient = (payload.get("user") or {}).get("email")
    if not recipient:
        logger.error(f"Order {payload.get('id')} has no customer email. Skipping.")
        return "No Recipient"

    send_mail(
        subject=f"Order #{payload['id']} Confirmed",
        message=render_confirmation_text(payload),
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[recipient],
        fail_silently=False,
    )
    logger.info(f"Confirmation email sent for Order {payload['id']}")
    return "Sent"
