import json
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)

response_headers = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, idempotency-key",
    "Access-Control-Allow-Methods": "POST,OPTIONS"
}

def convert_decimal(obj):
    """Convert Decimal objects to int/float for JSON serialization"""
    if isinstance(obj, list):
        return [convert_decimal(i) for i in obj]
    elif isinstance(obj, dict):
        return {k: convert_decimal(v) for k, v in obj.items()}
    elif isinstance(obj, Decimal):
        return int(obj) if obj % 1 == 0 else float(obj)
    return obj

def safe_json_dumps(data):
    """Safely serialize data to JSON with proper error handling"""
    try:
        return json.dumps(convert_decimal(data), default=str)
    except (TypeError, ValueError) as e:
        logger.error(f"JSON serialization error: {str(e)} (data type: {type(data).__name__})")
        return json.dumps({"success": False, "error": "Serialization failed"})

def error_response(message, status_code=400, details=None):
    logger.info(f"Error response: {message} (status: {status_code})")

    response_body = {
        "success": False,
        "error": message
    }
    if details:
        response_body["details"] = details

    return {
        "statusCode": status_code,
        "headers": dict(response_headers),
        "body": safe_json_dumps(response_body)
    }

def success_response(data=None, status_code=200):
    response_body = {"success": True}
    if data is not None:
        response_body["data"] = data

    return {
        "statusCode": status_code,
        "headers": dict(response_headers),
        "body": safe_json_dumps(response_body)
    }

def preflight_response():
    """Empty 200 answer to a CORS pre-flight request"""
    return {
        "statusCode": 200,
        "headers": dict(response_headers),
        "body": ""
    }
