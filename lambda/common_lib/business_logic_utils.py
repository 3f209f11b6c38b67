"""
Business logic utilities for common operations across Lambda functions
This module provides unified access to all business logic managers
"""

import functools
import logging

import request_utils as req
import response_utils as resp
from ai_chat_manager import AiChatManager
from email_manager import EmailManager
from exceptions import BusinessLogicError, EffectFailedError
from hosting_manager import HostingManager
from order_manager import OrderManager
from payment_manager import PaymentManager
from telemetry_utils import get_telemetry_sink

logger = logging.getLogger(__name__)


def _error_context(func, args):
    context = {'handler': func.__name__}
    if len(args) >= 2 and isinstance(args[0], dict):
        context['request_id'] = req.get_request_id(args[0], args[1])
    return context


def handle_preflight(func):
    """Decorator answering CORS pre-flight requests before any other stage runs"""
    @functools.wraps(func)
    def wrapper(event, context, *args, **kwargs):
        if req.is_preflight(event):
            return resp.preflight_response()
        return func(event, context, *args, **kwargs)
    return wrapper


def handle_business_logic_error(func):
    """Decorator to handle BusinessLogicError exceptions"""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except EffectFailedError as e:
            logger.error(f"EffectFailedError in {func.__name__}: {e.message} (cause: {e.cause})")
            get_telemetry_sink().capture_exception(e, _error_context(func, args))
            return resp.error_response(e.message, e.status_code, e.details)
        except BusinessLogicError as e:
            logger.info(f"BusinessLogicError in {func.__name__}: {e.message} (status: {e.status_code})")
            return resp.error_response(e.message, e.status_code, e.details)
        except Exception as e:
            logger.exception(f"Unexpected error in {func.__name__}: {type(e).__name__}: {str(e)}")
            get_telemetry_sink().capture_exception(e, _error_context(func, args))
            return resp.error_response("Internal server error", 500)
    return wrapper


__all__ = [
    'OrderManager',
    'HostingManager',
    'EmailManager',
    'PaymentManager',
    'AiChatManager',
    'BusinessLogicError',
    'handle_preflight',
    'handle_business_logic_error'
]
