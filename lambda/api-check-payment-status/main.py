import logging

import response_utils as resp
import request_utils as req
import validation_utils as valid
import business_logic_utils as biz
import auth_utils as auth
from payment_manager import PaymentManager

logger = logging.getLogger()
logger.setLevel(logging.INFO)

@biz.handle_preflight
@biz.handle_business_logic_error
@valid.handle_validation_error
def lambda_handler(event, context):
    """Return the payment status of an order"""

    request_data = valid.validate_payload(req.get_json_body(event), valid.PAYMENT_STATUS_SCHEMA)
    identity = auth.resolve_identity(event)

    result = PaymentManager.check_status(identity, request_data['order_id'])

    return resp.success_response(result)
