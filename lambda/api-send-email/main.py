import logging

import response_utils as resp
import request_utils as req
import validation_utils as valid
import business_logic_utils as biz
import auth_utils as auth
from email_manager import EmailManager

logger = logging.getLogger()
logger.setLevel(logging.INFO)

@biz.handle_preflight
@biz.handle_business_logic_error
@valid.handle_validation_error
def lambda_handler(event, context):
    """Send (or log) a sanitized HTML email on behalf of the caller"""

    email_data = valid.validate_payload(req.get_json_body(event), valid.SEND_EMAIL_SCHEMA)
    identity = auth.resolve_identity(event)

    result = EmailManager.send_email(identity, email_data)

    return resp.success_response(result)
