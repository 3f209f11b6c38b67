import logging

import response_utils as resp
import request_utils as req
import validation_utils as valid
import business_logic_utils as biz
import auth_utils as auth
from order_manager import OrderManager

logger = logging.getLogger()
logger.setLevel(logging.INFO)

@biz.handle_preflight
@biz.handle_business_logic_error
@valid.handle_validation_error
def lambda_handler(event, context):
    """Create a pending order with its line items for the authenticated user"""

    # Validate the payload before touching credentials
    order_data = valid.validate_payload(req.get_json_body(event), valid.CREATE_ORDER_SCHEMA)
    idempotency_key = req.get_idempotency_key(event)

    identity = auth.resolve_identity(event)

    result = OrderManager.create_order(
        identity=identity,
        order_data=order_data,
        idempotency_key=idempotency_key
    )

    return resp.success_response(result)
