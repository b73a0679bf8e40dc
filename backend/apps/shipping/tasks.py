# apps/shipping/tasks.py
from datetime import timedelta
from celery import shared_task
from celery.utils.log import get_task_logger
from django.conf import settings
from django.utils import timezone

from apps.orders.models import Order
from apps.utils.exceptions import OrderNotFound

logger = get_task_logger(__name__)

@shared_task
def retry_draft_shipments(limit=50):
    """
    Beat-driven (every 15 mins). Paid orders whose items still hold a
    draft shipment had a carrier failure at settlement; try them again.
    """
    from apps.settlement.services import build_settlement_service

    cutoff = timezone.now() - timedelta(minutes=settings.DRAFT_SHIPMENT_RETRY_AFTER_MINUTES)
    order_ids = list(
        Order.objects.filter(
            payment_status=Order.PAYMENT_PAID,
            items__draft_shipment__isnull=False,
            items__shipment__isnull=True,
            items__draft_shipment__created_at__lt=cutoff,
        )
        .order_by("updated_at")
        .values_list("id", flat=True)
        .distinct()[:limit]
    )
    if not order_ids:
        return {"orders": 0, "shipments": 0, "failures": 0}

    service = build_settlement_service()
    shipments = failures = 0
    for order_id in order_ids:
        try:
            result = service.retry_shipments(order_id)
        except OrderNotFound as e:
            logger.warning(e.message)
            continue
        shipments += len(result.shipments)
        failures += len(result.failures)

    logger.info(f"Draft retry: {len(order_ids)} orders, {shipments} shipments created, {failures} still failing")
    return {"orders": len(order_ids), "shipments": shipments, "failures": failures}
