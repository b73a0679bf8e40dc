# apps/shipping/responses.py
"""
Typed views over Shiprocket responses.

The carrier does not nest its payloads consistently (the AWB endpoint alone
has been seen answering in three envelope shapes), so nothing outside this
module reads raw response dicts.
"""
from dataclasses import dataclass, field
from typing import Optional

from apps.utils.exceptions import CarrierAPIError

# Checked in order; the first envelope carrying an awb_code wins
AWB_ENVELOPES = (
    ("response", "data"),
    ("data",),
    (),
)


def _str_or_none(value) -> Optional[str]:
    if value in (None, ""):
        return None
    return str(value)


def _dig(data, path):
    node = data
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node if isinstance(node, dict) else None


@dataclass(frozen=True)
class CarrierOrder:
    shipment_id: str
    carrier_order_id: str
    status: str = "NEW"
    courier_company_id: Optional[str] = None
    courier_name: Optional[str] = None

    @classmethod
    def from_response(cls, data):
        if not isinstance(data, dict) or not data.get("shipment_id"):
            message = data.get("message") if isinstance(data, dict) else None
            raise CarrierAPIError(
                f"Shiprocket create-order returned no shipment_id: {message or 'unexpected response'}"
            )
        return cls(
            shipment_id=str(data["shipment_id"]),
            carrier_order_id=str(data.get("order_id") or ""),
            status=data.get("status") or "NEW",
            courier_company_id=_str_or_none(data.get("courier_company_id")),
            courier_name=_str_or_none(data.get("courier_name")),
        )


@dataclass(frozen=True)
class AwbAssignment:
    awb_code: str
    courier_company_id: Optional[str] = None
    courier_name: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_response(cls, data):
        """
        A 200 without an AWB is how Shiprocket reports a courier refusing the
        shipment, so it is treated as a failed assignment.
        """
        if not isinstance(data, dict):
            raise CarrierAPIError("Shiprocket AWB response is not an object")

        for path in AWB_ENVELOPES:
            envelope = _dig(data, path)
            if envelope and envelope.get("awb_code"):
                return cls(
                    awb_code=str(envelope["awb_code"]),
                    courier_company_id=_str_or_none(
                        envelope.get("courier_company_id") or data.get("courier_company_id")
                    ),
                    courier_name=_str_or_none(envelope.get("courier_name") or data.get("courier_name")),
                    raw=data,
                )

        error = (
            (_dig(data, ("response", "data")) or {}).get("awb_assign_error")
            or data.get("message")
            or "no awb_code in response"
        )
        raise CarrierAPIError(f"Shiprocket did not assign an AWB: {error}")


@dataclass(frozen=True)
class CarrierPickupLocation:
    id: str
    nickname: str
    pin_code: str = ""


def parse_pickup_locations(data):
    """`GET /settings/company/pickup` -> data.shipping_address[]"""
    addresses = ((data or {}).get("data") or {}).get("shipping_address") or []
    return [
        CarrierPickupLocation(
            id=str(entry.get("id")),
            nickname=entry.get("pickup_location") or "",
            pin_code=str(entry.get("pin_code") or ""),
        )
        for entry in addresses
        if isinstance(entry, dict) and entry.get("id") is not None
    ]
