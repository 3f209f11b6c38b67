import base64
import json

from exceptions import ValidationError

MAX_IDEMPOTENCY_KEY_LENGTH = 128

def get_header(event, key, default=None):
    """Header lookup; API Gateway does not normalise header case"""
    headers = event.get('headers') or {}
    if key in headers:
        return headers[key]
    lowered = key.lower()
    for name, value in headers.items():
        if name.lower() == lowered:
            return value
    return default

def get_http_method(event):
    method = event.get('httpMethod')
    if not method:
        method = (event.get('requestContext') or {}).get('http', {}).get('method')
    return (method or '').upper()

def is_preflight(event):
    return get_http_method(event) == 'OPTIONS'

def get_body(event, default=None):
    body = event.get('body')
    if body:
        if event.get('isBase64Encoded'):
            try:
                body = base64.b64decode(body).decode('utf-8')
            except (ValueError, UnicodeDecodeError):
                return default
        try:
            return json.loads(body)
        except (json.JSONDecodeError, TypeError):
            return default
    return default

def get_json_body(event):
    """Parsed JSON body; a present but unparseable body is a validation failure"""
    raw_body = event.get('body')
    if raw_body is None or raw_body == '':
        return {}
    body = get_body(event, default=ValueError)
    if body is ValueError:
        raise ValidationError("Request body must be valid JSON", field='body')
    return body

def get_idempotency_key(event):
    key = get_header(event, 'Idempotency-Key')
    if key is None:
        return None
    if not isinstance(key, str) or not key.strip():
        raise ValidationError("Idempotency-Key header must not be empty", field='Idempotency-Key')
    key = key.strip()
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError(
            f"Idempotency-Key header must be no more than {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
            field='Idempotency-Key'
        )
    return key

def get_request_id(event, context=None):
    request_id = getattr(context, 'aws_request_id', None)
    if request_id:
        return request_id
    return (event.get('requestContext') or {}).get('requestId')
