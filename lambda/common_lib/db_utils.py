import logging
import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from exceptions import EffectFailedError

logger = logging.getLogger(__name__)

# Dynamodb client and (de)serializers
dynamodb = boto3.client('dynamodb')
serializer = TypeSerializer()
deserializer = TypeDeserializer()

# Environment variables
ORDERS_TABLE = os.environ.get('ORDERS_TABLE')
ORDER_ITEMS_TABLE = os.environ.get('ORDER_ITEMS_TABLE')
HOSTING_ACCOUNTS_TABLE = os.environ.get('HOSTING_ACCOUNTS_TABLE')
AUDIT_LOG_TABLE = os.environ.get('AUDIT_LOG_TABLE')
EMAIL_LOGS_TABLE = os.environ.get('EMAIL_LOGS_TABLE')
NOTIFICATIONS_TABLE = os.environ.get('NOTIFICATIONS_TABLE')
PROFILES_TABLE = os.environ.get('PROFILES_TABLE')
IDEMPOTENCY_TABLE = os.environ.get('IDEMPOTENCY_TABLE')

HOSTING_OWNER_INDEX = os.environ.get('HOSTING_OWNER_INDEX', 'owner_id-index')

# Order statuses
STATUS_PENDING = 'pending'
STATUS_PAID = 'paid'
STATUS_FAILED = 'failed'
STATUS_CANCELLED = 'cancelled'


class TransactionConflictError(Exception):
    """A condition guarding one of the transaction's writes did not hold"""
    def __init__(self, reasons):
        self.reasons = reasons
        super().__init__(f"Transaction cancelled: {reasons}")


def now_iso():
    return datetime.now(timezone.utc).isoformat()

def new_id():
    return str(uuid.uuid4())

def require_table(table_name, setting):
    if not table_name:
        logger.error(f"{setting} environment variable not set")
        raise EffectFailedError(f"Database configuration error: {setting} not configured")
    return table_name

# ------------------  Serialization ------------------

def _to_dynamodb_value(value):
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamodb_value(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_to_dynamodb_value(v) for v in value]
    return value

def serialize_item(data):
    """Plain dict -> DynamoDB attribute map; None values are omitted"""
    return {k: serializer.serialize(_to_dynamodb_value(v)) for k, v in data.items() if v is not None}

def serialize_values(values):
    return {k: serializer.serialize(_to_dynamodb_value(v)) for k, v in values.items()}

def deserialize_item(item):
    return {k: deserializer.deserialize(v) for k, v in item.items()} if item else None

# ------------------  Reads ------------------

def _get_item(table_name, key, description):
    try:
        result = dynamodb.get_item(
            TableName=table_name,
            Key=serialize_item(key),
            ConsistentRead=True
        )
    except (ClientError, BotoCoreError) as e:
        logger.error(f"Error getting {description} {key}: {str(e)}")
        raise EffectFailedError(f"Failed to load {description}", cause=e)
    return deserialize_item(result.get('Item'))

def get_order(order_id):
    """Get an order by ID, None if it does not exist"""
    table = require_table(ORDERS_TABLE, 'ORDERS_TABLE')
    return _get_item(table, {'id': order_id}, 'order')

def get_idempotency_record(record_id):
    table = require_table(IDEMPOTENCY_TABLE, 'IDEMPOTENCY_TABLE')
    return _get_item(table, {'id': record_id}, 'idempotency record')

def count_hosting_accounts(owner_id):
    """Number of hosting accounts owned by a user"""
    table = require_table(HOSTING_ACCOUNTS_TABLE, 'HOSTING_ACCOUNTS_TABLE')
    total = 0
    params = {
        'TableName': table,
        'IndexName': HOSTING_OWNER_INDEX,
        'KeyConditionExpression': 'owner_id = :owner',
        'ExpressionAttributeValues': {':owner': {'S': owner_id}},
        'Select': 'COUNT'
    }
    try:
        while True:
            result = dynamodb.query(**params)
            total += result.get('Count', 0)
            last_key = result.get('LastEvaluatedKey')
            if not last_key:
                return total
            params['ExclusiveStartKey'] = last_key
    except (ClientError, BotoCoreError) as e:
        logger.error(f"Error counting hosting accounts for {owner_id}: {str(e)}")
        raise EffectFailedError("Failed to load hosting accounts", cause=e)

# ------------------  Record builders ------------------

def build_order_record(order_id, user_id, amount_cents, currency, plan, billing_cycle, item_count,
                       idempotency_key=None):
    current_time = now_iso()
    return {
        'id': order_id,
        'user_id': user_id,
        'amount_cents': amount_cents,
        'currency': currency,
        'status': STATUS_PENDING,
        'plan': plan,
        'billing_cycle': billing_cycle,
        'item_count': item_count,
        'idempotency_key': idempotency_key,
        'created_at': current_time,
        'updated_at': current_time
    }

def build_order_item_records(order_id, items):
    """One OrderItem per line; total is always quantity x unit price"""
    records = []
    for position, item in enumerate(items):
        records.append({
            'id': new_id(),
            'order_id': order_id,
            'position': position,
            'service_id': item.get('service_id'),
            'name': item['name'],
            'type': item.get('type'),
            'quantity': item['quantity'],
            'unit_price_cents': item['unit_price_cents'],
            'total_price_cents': item['quantity'] * item['unit_price_cents'],
            'created_at': now_iso()
        })
    return records

def build_audit_entry(user_id, action, details, hosting_account_id=None):
    return {
        'id': new_id(),
        'user_id': user_id,
        'hosting_account_id': hosting_account_id,
        'action': action,
        'details': details,
        'created_at': now_iso()
    }

def build_email_log_entry(user_id, recipient, subject, status, message_id=None, error=None):
    return {
        'id': new_id(),
        'user_id': user_id,
        'to_email': recipient,
        'subject': subject,
        'status': status,
        'message_id': message_id,
        'error': error,
        'created_at': now_iso()
    }

def build_hosting_account_record(account_id, owner_id, order_id, name, plan, domain, server_location):
    current_time = now_iso()
    return {
        'id': account_id,
        'owner_id': owner_id,
        'order_id': order_id,
        'name': name,
        'plan': plan,
        'domain': domain,
        'server_location': server_location,
        'is_active': True,
        'storage_used_gb': 0,
        'bandwidth_used_gb': 0,
        'created_at': current_time,
        'updated_at': current_time
    }

def build_notification(user_id, title, message, notification_type, action_url=None):
    return {
        'id': new_id(),
        'user_id': user_id,
        'title': title,
        'message': message,
        'type': notification_type,
        'action_url': action_url,
        'is_read': False,
        'created_at': now_iso()
    }

def build_idempotency_record(record_id, user_id, order_id, request_hash):
    return {
        'id': record_id,
        'user_id': user_id,
        'order_id': order_id,
        'request_hash': request_hash,
        'created_at': now_iso()
    }

# ------------------  Transaction operations ------------------

def put_op(table_name, item, condition=None, names=None, values=None):
    put = {
        'TableName': table_name,
        'Item': serialize_item(item)
    }
    if condition:
        put['ConditionExpression'] = condition
    if names:
        put['ExpressionAttributeNames'] = names
    if values:
        put['ExpressionAttributeValues'] = serialize_values(values)
    return {'Put': put}

def insert_op(table_name, item):
    """Put that refuses to overwrite an existing record"""
    return put_op(table_name, item, condition='attribute_not_exists(id)')

def update_op(table_name, key, fields, condition=None, names=None, values=None):
    """
    Build an Update operation that SETs each of fields

    Args:
        table_name (str): Target table
        key (dict): Primary key as plain values
        fields (dict): Attribute -> new value
        condition (str): Optional ConditionExpression
        names (dict): Extra ExpressionAttributeNames used by condition
        values (dict): Extra ExpressionAttributeValues used by condition
    """
    expression_names = dict(names or {})
    expression_values = dict(values or {})
    assignments = []
    for index, (field, value) in enumerate(fields.items()):
        expression_names[f'#f{index}'] = field
        expression_values[f':f{index}'] = value
        assignments.append(f'#f{index} = :f{index}')

    update = {
        'TableName': table_name,
        'Key': serialize_item(key),
        'UpdateExpression': 'SET ' + ', '.join(assignments),
        'ExpressionAttributeNames': expression_names,
        'ExpressionAttributeValues': serialize_values(expression_values)
    }
    if condition:
        update['ConditionExpression'] = condition
    return {'Update': update}

def order_status_update_op(order_id, from_statuses, to_status, extra_fields=None, owner_id=None,
                           expected_fields=None):
    """
    Conditional order status transition; fails if the order moved on meanwhile

    expected_fields pins other attributes to the values that were read, a
    None value requiring the attribute to be absent.
    """
    table = require_table(ORDERS_TABLE, 'ORDERS_TABLE')
    fields = {'status': to_status, 'updated_at': now_iso()}
    fields.update(extra_fields or {})

    placeholders = []
    values = {}
    for index, status in enumerate(from_statuses):
        values[f':from{index}'] = status
        placeholders.append(f':from{index}')
    condition = f"attribute_exists(id) AND #status IN ({', '.join(placeholders)})"
    names = {'#status': 'status'}
    if owner_id:
        condition += ' AND #owner = :owner'
        names['#owner'] = 'user_id'
        values[':owner'] = owner_id

    for index, (name, value) in enumerate((expected_fields or {}).items()):
        names[f'#e{index}'] = name
        if value is None:
            condition += f' AND attribute_not_exists(#e{index})'
        else:
            condition += f' AND #e{index} = :e{index}'
            values[f':e{index}'] = value

    return update_op(table, {'id': order_id}, fields, condition=condition, names=names, values=values)

def execute_transaction(operations, description):
    """
    Apply all operations atomically

    Raises:
        TransactionConflictError: A condition expression failed
        EffectFailedError: Any other storage failure
    """
    try:
        dynamodb.transact_write_items(TransactItems=operations)
        logger.info(f"Transaction '{description}' committed ({len(operations)} writes)")
    except ClientError as e:
        error = e.response.get('Error', {})
        if error.get('Code') == 'TransactionCanceledException':
            reasons = [reason.get('Code', 'None') for reason in e.response.get('CancellationReasons', [])]
            if 'ConditionalCheckFailed' in reasons:
                logger.info(f"Transaction '{description}' conflict: {reasons}")
                raise TransactionConflictError(reasons)
        logger.error(f"Transaction '{description}' failed: {error.get('Code')} - {error.get('Message')}")
        raise EffectFailedError(f"Failed to {description}", cause=e)
    except BotoCoreError as e:
        logger.error(f"Transaction '{description}' failed: {str(e)}")
        raise EffectFailedError(f"Failed to {description}", cause=e)
