# gateways/__init__.py
import logging
from typing import Dict

from config import Settings
from .base import GatewayAdapter, GatewayResult, GatewayTimeoutError, GatewayRequestFailed
from .tosspayments import TossPaymentsGateway
from .iamport import IamportGateway

logger = logging.getLogger(__name__)


def build_gateways(settings: Settings, session=None) -> Dict[str, GatewayAdapter]:
     """
     Adapter lookup table keyed by provider name.
     Providers without credentials are left out.
     """
     gateways: Dict[str, GatewayAdapter] = {}

     if settings.toss_secret_key:
          gateways[TossPaymentsGateway.provider] = TossPaymentsGateway(
               secret_key=settings.toss_secret_key,
               client_key=settings.toss_client_key,
               api_url=settings.toss_api_url,
               session=session,
               timeout=settings.gateway_timeout,
          )

     if settings.iamport_key and settings.iamport_secret:
          gateways[IamportGateway.provider] = IamportGateway(
               imp_key=settings.iamport_key,
               imp_secret=settings.iamport_secret,
               user_code=settings.iamport_user_code,
               api_url=settings.iamport_api_url,
               session=session,
               timeout=settings.gateway_timeout,
          )

     if not gateways:
          logger.warning("No payment gateway credentials configured")
     return gateways


__all__ = [
     "GatewayAdapter",
     "GatewayResult",
     "GatewayTimeoutError",
     "GatewayRequestFailed",
     "TossPaymentsGateway",
     "IamportGateway",
     "build_gateways",
]
