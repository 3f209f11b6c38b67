"""
Validation utilities for request payloads
Declarative field specifications shared by every Lambda handler

A schema is a dict of field name -> Field. validate_payload() projects the
payload onto the declared fields only, so unknown keys never reach the
business logic. Each field stops at its first problem, but every field is
checked before ValidationError is raised, so callers get the complete error
map in one response.
"""

import copy
import functools
import math
import re
from decimal import Decimal, InvalidOperation

from exceptions import ValidationError


UUID_PATTERN = re.compile(r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$')
EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
HOSTNAME_PATTERN = re.compile(
    r'^(?=.{1,253}$)(?!-)[A-Za-z0-9-]{1,63}(?<!-)(\.(?!-)[A-Za-z0-9-]{1,63}(?<!-))*\.[A-Za-z]{2,63}$'
)
CURRENCY_PATTERN = r'^[A-Z]{3}$'
ACCOUNT_NAME_PATTERN = r'^[a-zA-Z0-9\- ]+$'

PLANS = ['free', 'starter', 'business', 'enterprise']
PAID_PLANS = ['starter', 'business', 'enterprise']
BILLING_CYCLES = ['monthly', 'yearly']
SERVER_LOCATIONS = ['us-east', 'us-west', 'eu-west', 'ap-south']

_INVALID = object()


class Field:
    """Declarative description of one payload field"""

    def __init__(self, type, required=True, default=None, min_length=None, max_length=None,
                 minimum=None, maximum=None, choices=None, pattern=None, format=None,
                 items=None, min_items=None, max_items=None, fields=None):
        self.type = type
        self.required = required
        self.default = default
        self.min_length = min_length
        self.max_length = max_length
        self.minimum = minimum
        self.maximum = maximum
        self.choices = choices
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern
        self.format = format
        self.items = items
        self.min_items = min_items
        self.max_items = max_items
        self.fields = fields

    def check(self, value, path, errors):
        """Return the cleaned value, or _INVALID after recording an error for path"""
        checker = getattr(self, f'_check_{self.type}')
        return checker(value, path, errors)

    def _check_string(self, value, path, errors):
        if not isinstance(value, str):
            errors[path] = f"{path} must be a string"
            return _INVALID
        length = len(value)
        if self.min_length is not None and length < self.min_length:
            errors[path] = f"{path} must be at least {self.min_length} characters"
            return _INVALID
        if self.max_length is not None and length > self.max_length:
            errors[path] = f"{path} must be no more than {self.max_length} characters"
            return _INVALID
        if self.choices is not None and value not in self.choices:
            errors[path] = f"{path} must be one of: {', '.join(self.choices)}"
            return _INVALID
        if self.format and not DataValidator.matches_format(value, self.format):
            errors[path] = f"{path} must be a valid {self.format}"
            return _INVALID
        if self.pattern is not None and not self.pattern.fullmatch(value):
            errors[path] = f"{path} has an invalid format"
            return _INVALID
        if self.format in ('uuid', 'email', 'hostname'):
            return value.lower()
        return value

    def _check_integer(self, value, path, errors):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors[path] = f"{path} must be an integer"
            return _INVALID
        if isinstance(value, float):
            if not value.is_integer():
                errors[path] = f"{path} must be an integer"
                return _INVALID
            value = int(value)
        if not self._within_bounds(value, path, errors):
            return _INVALID
        return value

    def _check_number(self, value, path, errors):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors[path] = f"{path} must be a number"
            return _INVALID
        if isinstance(value, float) and not math.isfinite(value):
            errors[path] = f"{path} must be a finite number"
            return _INVALID
        try:
            number = Decimal(str(value))
        except InvalidOperation:
            errors[path] = f"{path} must be a number"
            return _INVALID
        if not self._within_bounds(number, path, errors):
            return _INVALID
        return number

    def _check_boolean(self, value, path, errors):
        if not isinstance(value, bool):
            errors[path] = f"{path} must be a boolean"
            return _INVALID
        return value

    def _check_array(self, value, path, errors):
        if not isinstance(value, list):
            errors[path] = f"{path} must be an array"
            return _INVALID
        if self.min_items is not None and len(value) < self.min_items:
            errors[path] = f"{path} must contain at least {self.min_items} item(s)"
            return _INVALID
        if self.max_items is not None and len(value) > self.max_items:
            errors[path] = f"{path} must contain no more than {self.max_items} items"
            return _INVALID
        if self.items is None:
            return list(value)
        cleaned = []
        valid = True
        for index, element in enumerate(value):
            result = self.items.check(element, f"{path}[{index}]", errors)
            if result is _INVALID:
                valid = False
            cleaned.append(result)
        return cleaned if valid else _INVALID

    def _check_object(self, value, path, errors):
        if not isinstance(value, dict):
            errors[path] = f"{path} must be an object"
            return _INVALID
        if self.max_items is not None and len(value) > self.max_items:
            errors[path] = f"{path} must contain no more than {self.max_items} keys"
            return _INVALID
        if self.fields is None:
            return dict(value)
        error_count = len(errors)
        cleaned = validate_fields(value, self.fields, errors, prefix=f"{path}.")
        return cleaned if len(errors) == error_count else _INVALID

    def _within_bounds(self, value, path, errors):
        if self.minimum is not None and value < self.minimum:
            errors[path] = f"{path} must be greater than or equal to {self.minimum}"
            return False
        if self.maximum is not None and value > self.maximum:
            errors[path] = f"{path} must be less than or equal to {self.maximum}"
            return False
        return True


class DataValidator:
    """Common data validation patterns"""

    @staticmethod
    def is_valid_email(email):
        return isinstance(email, str) and EMAIL_PATTERN.fullmatch(email) is not None

    @staticmethod
    def is_valid_uuid(value):
        return isinstance(value, str) and UUID_PATTERN.fullmatch(value) is not None

    @staticmethod
    def is_valid_hostname(value):
        return isinstance(value, str) and HOSTNAME_PATTERN.fullmatch(value) is not None

    @staticmethod
    def matches_format(value, format_name):
        if format_name == 'uuid':
            return DataValidator.is_valid_uuid(value)
        if format_name == 'email':
            return DataValidator.is_valid_email(value)
        if format_name == 'hostname':
            return DataValidator.is_valid_hostname(value)
        raise ValueError(f"Unknown format: {format_name}")


def validate_fields(data, schema, errors, prefix=''):
    """Project data onto schema, recording problems in errors"""
    cleaned = {}
    for name, field in schema.items():
        path = f"{prefix}{name}"
        value = data.get(name)
        if value is None:
            if field.required:
                errors[path] = f"{path} is required"
            elif field.default is not None:
                cleaned[name] = copy.deepcopy(field.default)
            continue
        result = field.check(value, path, errors)
        if result is not _INVALID:
            cleaned[name] = result
    return cleaned


def validate_payload(payload, schema):
    """
    Validate a raw request payload against a schema

    Args:
        payload: Parsed JSON body (any type)
        schema (dict): Field name -> Field

    Returns:
        dict: Declared fields only, type-checked and bounds-checked

    Raises:
        ValidationError: With the complete field error map
    """
    if not isinstance(payload, dict):
        raise ValidationError("Validation failed", errors={'body': "Request body must be a JSON object"})

    errors = {}
    cleaned = validate_fields(payload, schema, errors)
    if errors:
        raise ValidationError("Validation failed", errors=errors)
    return cleaned


ORDER_ITEM_SCHEMA = {
    'name': Field('string', min_length=1, max_length=200),
    'quantity': Field('integer', minimum=1, maximum=100),
    'unit_price': Field('number', minimum=0, maximum=10000000),
    'service_id': Field('string', required=False, min_length=1, max_length=100),
    'type': Field('string', required=False, max_length=50),
}

CREATE_ORDER_SCHEMA = {
    'items': Field('array', min_items=1, max_items=20, items=Field('object', fields=ORDER_ITEM_SCHEMA)),
    'amount': Field('number', minimum=Decimal('0.01'), maximum=10000000),
    'currency': Field('string', pattern=CURRENCY_PATTERN),
    'user_id': Field('string', required=False, format='uuid'),
    'plan': Field('string', required=False, default='starter', choices=PAID_PLANS),
    'billing_cycle': Field('string', required=False, default='monthly', choices=BILLING_CYCLES),
}

CANCEL_ORDER_SCHEMA = {
    'order_id': Field('string', format='uuid'),
}

PROVISION_HOSTING_SCHEMA = {
    'order_id': Field('string', format='uuid'),
    'plan': Field('string', choices=PLANS),
    'domain': Field('string', required=False, max_length=253, format='hostname'),
    'name': Field('string', required=False, min_length=3, max_length=50, pattern=ACCOUNT_NAME_PATTERN),
    'server_location': Field('string', required=False, default='us-east', choices=SERVER_LOCATIONS),
}

SEND_EMAIL_SCHEMA = {
    'to': Field('string', max_length=254, format='email'),
    'subject': Field('string', min_length=1, max_length=200),
    'html': Field('string', min_length=1, max_length=100000),
}

CUSTOMER_SCHEMA = {
    'name': Field('string', min_length=1, max_length=100),
    'email': Field('string', max_length=254, format='email'),
    'phone': Field('string', required=False, max_length=20, pattern=r'^\+?[0-9]{7,15}$'),
}

CHECKOUT_SESSION_SCHEMA = {
    'order_id': Field('string', format='uuid'),
    'user_id': Field('string', required=False, format='uuid'),
    'customer': Field('object', required=False, fields=CUSTOMER_SCHEMA),
}

VERIFY_PAYMENT_SCHEMA = {
    'order_id': Field('string', format='uuid'),
    'payload': Field('object', required=False, default={}, max_items=50),
}

PAYMENT_STATUS_SCHEMA = {
    'order_id': Field('string', format='uuid'),
}

CHAT_MESSAGE_SCHEMA = {
    'role': Field('string', choices=['user', 'assistant']),
    'content': Field('string', min_length=1, max_length=4000),
}

AI_CHAT_SCHEMA = {
    'messages': Field('array', min_items=1, max_items=50, items=Field('object', fields=CHAT_MESSAGE_SCHEMA)),
}


def handle_validation_error(func):
    """
    Decorator to handle ValidationError exceptions and convert to proper responses
    """
    import response_utils as resp

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            return resp.error_response(e.message, 400, e.errors or None)

    return wrapper
