# services/order_id.py
import time
import uuid

ORDER_ID_PREFIX = "ORDER"


def generate_order_id() -> str:
     """
     ORDER_<epoch millis>_<8 hex chars>.

     Unique with overwhelming probability and safe for URLs and logs. Not a
     secret. The payments primary key is the final guard against collisions.
     """
     timestamp = int(time.time() * 1000)
     suffix = uuid.uuid4().hex[:8]
     return f"{ORDER_ID_PREFIX}_{timestamp}_{suffix}"
