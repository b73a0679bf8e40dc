from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status

class BusinessLogicException(Exception):
    """
    Base class for domain-specific errors (e.g., NoPickupLocation, InvalidRefundState).
    These are expected operational errors, not 500s.
    """
    default_code = "invalid_request"

    def __init__(self, message, code=None):
        self.message = message
        self.code = code or self.default_code
        super().__init__(message)


# ------------------------------------------------------------------------------
# Settlement taxonomy
# ------------------------------------------------------------------------------

class SignatureMismatch(BusinessLogicException):
    """Fatal: the request is not from the gateway. Nothing may be mutated."""
    default_code = "signature_mismatch"


class OrderNotFound(BusinessLogicException):
    default_code = "order_not_found"


class ShipmentError(BusinessLogicException):
    """
    Scoped to a single seller group. Collected by the orchestrator,
    never allowed to fail the payment confirmation.
    """
    default_code = "shipment_error"


class NoPickupLocation(ShipmentError):
    default_code = "no_pickup_location"


class InvalidPickupLocation(ShipmentError):
    default_code = "invalid_pickup_location"


class InvalidPhoneNumber(ShipmentError):
    default_code = "invalid_phone_number"


class AwbAssignmentFailed(ShipmentError):
    default_code = "awb_assignment_failed"


class CarrierAPIError(ShipmentError):
    default_code = "carrier_error"


class StockDecrementFailed(BusinessLogicException):
    default_code = "stock_decrement_failed"


class CartCleanupFailed(BusinessLogicException):
    default_code = "cart_cleanup_failed"


class InvalidRefundState(BusinessLogicException):
    default_code = "invalid_refund_state"


def custom_exception_handler(exc, context):
    """
    Custom DRF Exception Handler.
    Maps BusinessLogicException to HTTP 400 (401 for signature failures)
    with a standard error structure.
    """
    response = exception_handler(exc, context)

    if isinstance(exc, BusinessLogicException):
        http_status = (
            status.HTTP_401_UNAUTHORIZED
            if isinstance(exc, SignatureMismatch)
            else status.HTTP_400_BAD_REQUEST
        )
        return Response(
            {
                "success": False,
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "type": "BusinessLogicError"
                }
            },
            status=http_status
        )

    if response is not None and response.status_code == 400:
        if "error" not in response.data:
            response.data = {
                "success": False,
                "error": {
                    "code": "validation_error",
                    "details": response.data
                }
            }

    return response
