# apps/shipping/grouping.py
from dataclasses import dataclass, field
from decimal import Decimal

DEFAULT_UNIT_WEIGHT = Decimal("0.5")  # kg
ZERO = Decimal("0.00")


@dataclass
class SellerGroup:
    """One order's line items that belong to a single seller."""
    seller_id: str
    seller_name: str
    items: list = field(default_factory=list)

    @property
    def item_ids(self):
        return [str(item.id) for item in self.items]


@dataclass(frozen=True)
class SellerTotals:
    subtotal: Decimal
    shipping: Decimal
    gst: Decimal
    discount: Decimal
    weight: Decimal


def resolve_seller(item):
    """Direct seller on the line item, else the product's owner."""
    if item.seller is not None:
        return item.seller
    return item.product_variant.product.seller


def group_by_seller(items):
    """
    Partition items by seller. Groups come out in first-seen order and each
    group keeps the items in their original relative order.
    """
    groups = {}
    for item in items:
        seller = resolve_seller(item)
        seller_id = str(seller.id) if seller is not None else ""
        group = groups.get(seller_id)
        if group is None:
            group = groups[seller_id] = SellerGroup(
                seller_id=seller_id,
                seller_name=getattr(seller, "store_name", "") if seller is not None else "",
            )
        group.items.append(item)
    return groups


def seller_totals(group):
    subtotal = shipping = gst = discount = ZERO
    weight = Decimal("0")
    for item in group.items:
        subtotal += item.price_at_purchase * item.quantity
        shipping += item.shipping_charge or ZERO
        gst += item.gst_amount_at_purchase or ZERO
        discount += item.discount_amount_at_purchase or ZERO
        unit_weight = item.product_variant.product.weight or DEFAULT_UNIT_WEIGHT
        weight += Decimal(unit_weight) * item.quantity
    return SellerTotals(subtotal=subtotal, shipping=shipping, gst=gst, discount=discount, weight=weight)
