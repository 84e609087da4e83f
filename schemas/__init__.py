# schemas/__init__.py
from .payment import (
     PaymentPrepareRequest,
     PaymentPrepareResponse,
     PaymentConfirmRequest,
     PaymentConfirmResponse,
     PaymentCancelRequest,
     PaymentCancelResponse,
     PaymentStatusResponse,
     ErrorResponse,
)

__all__ = [
     "PaymentPrepareRequest",
     "PaymentPrepareResponse",
     "PaymentConfirmRequest",
     "PaymentConfirmResponse",
     "PaymentCancelRequest",
     "PaymentCancelResponse",
     "PaymentStatusResponse",
     "ErrorResponse",
]
