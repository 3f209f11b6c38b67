import logging

import response_utils as resp
import request_utils as req
import validation_utils as valid
import business_logic_utils as biz
import auth_utils as auth
from ai_chat_manager import AiChatManager

logger = logging.getLogger()
logger.setLevel(logging.INFO)

@biz.handle_preflight
@biz.handle_business_logic_error
@valid.handle_validation_error
def lambda_handler(event, context):
    """Reply to a support chat conversation"""

    chat_data = valid.validate_payload(req.get_json_body(event), valid.AI_CHAT_SCHEMA)
    identity = auth.resolve_identity(event)

    result = AiChatManager.chat(identity, chat_data)

    return resp.success_response(result)
