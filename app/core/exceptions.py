"""
Custom exception hierarchy for the payment orchestrator.

All application-level exceptions inherit from AppException so they can be
caught by a single global handler.

Gateway failures split into two families:

  * transport / protocol faults raised by the gateway client
    (GatewayClientError, GatewayServerError, ResponseShapeError), and
  * expected business outcomes detected by the orchestrator
    (BusinessDecline, ValidationMismatch).

Only GatewayServerError is retryable.
"""


class AppException(Exception):
    """Base for all app exceptions."""

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: dict | None = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ExternalServiceError(AppException):
    """Raised when a call to the payment gateway fails."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        error_code: str = "EXTERNAL_SERVICE_ERROR",
        status_code: int = 502,
    ):
        super().__init__(
            status_code=status_code,
            error_code=error_code,
            message=message,
            details=details,
        )


class GatewayClientError(ExternalServiceError):
    """The gateway rejected the request (HTTP 4xx). Never retried."""

    retryable = False

    def __init__(
        self,
        message: str,
        upstream_status: int,
        cause: str | None = None,
        explanation: str | None = None,
    ):
        self.upstream_status = upstream_status
        self.cause = cause
        self.explanation = explanation
        super().__init__(
            message=message,
            error_code="GATEWAY_CLIENT_ERROR",
            details={
                "upstream_status": upstream_status,
                "cause": cause,
                "explanation": explanation,
            },
        )


class GatewayServerError(ExternalServiceError):
    """HTTP 5xx, transport failure or an unparsable body. Retryable."""

    retryable = True

    def __init__(self, message: str, upstream_status: int | None = None):
        self.upstream_status = upstream_status
        super().__init__(
            message=message,
            error_code="GATEWAY_SERVER_ERROR",
            details={"upstream_status": upstream_status},
        )


class ResponseShapeError(ExternalServiceError):
    """A well-formed response is missing fields the caller relies on."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(
            message=message,
            error_code="GATEWAY_RESPONSE_INVALID",
            details=details,
        )


class BusinessDecline(AppException):
    """The gateway answered, but did not approve (or recommend) the operation."""

    def __init__(self, message: str = "Payment was declined.", details: dict | None = None):
        super().__init__(
            status_code=402,
            error_code="PAYMENT_DECLINED",
            message=message,
            details=details,
        )


class ValidationMismatch(AppException):
    """Gateway order disagrees with the local order on amount or currency."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(
            status_code=409,
            error_code="PAYMENT_MISMATCH",
            message=message,
            details=details,
        )


class OperationNotAllowed(AppException):
    """A post-authorization operation was rejected locally."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(
            status_code=409,
            error_code="OPERATION_NOT_ALLOWED",
            message=message,
            details=details,
        )


class OrderNotFound(AppException):
    def __init__(self, order_id: str):
        super().__init__(
            status_code=404,
            error_code="ORDER_NOT_FOUND",
            message=f"Order {order_id} not found",
            details={"order_id": order_id},
        )


class OrderBusy(AppException):
    """Another handler currently holds the lock for this order."""

    def __init__(self, order_id: str):
        super().__init__(
            status_code=409,
            error_code="ORDER_BUSY",
            message=f"Order {order_id} is being processed by another request",
            details={"order_id": order_id},
        )
