import importlib.util
import json
import os
import time
from pathlib import Path

import pytest

# Module-level clients and table names are read at import time
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-east-1')
os.environ.setdefault('AWS_ACCESS_KEY_ID', 'testing')
os.environ.setdefault('AWS_SECRET_ACCESS_KEY', 'testing')
os.environ['ORDERS_TABLE'] = 'orders'
os.environ['ORDER_ITEMS_TABLE'] = 'order_items'
os.environ['HOSTING_ACCOUNTS_TABLE'] = 'hosting_accounts'
os.environ['AUDIT_LOG_TABLE'] = 'audit_log'
os.environ['EMAIL_LOGS_TABLE'] = 'email_logs'
os.environ['NOTIFICATIONS_TABLE'] = 'notifications'
os.environ['PROFILES_TABLE'] = 'profiles'
os.environ['IDEMPOTENCY_TABLE'] = 'idempotency'
os.environ['AUTH_JWT_SECRET'] = 'test-signing-secret-0123456789abcdef0123456789'
os.environ.pop('AUTH_JWKS_URL', None)
os.environ.pop('TELEMETRY_NAMESPACE', None)
os.environ.pop('MAIL_FROM_ADDRESS', None)

import jwt
from botocore.exceptions import ClientError

import db_utils
import email_utils
import payment_providers
import telemetry_utils
from payment_providers import CheckoutSession, PaymentProvider, PaymentVerification

LAMBDA_DIR = Path(__file__).resolve().parent.parent / 'lambda'

USER_ID = '11111111-1111-4111-8111-111111111111'
OTHER_USER_ID = '22222222-2222-4222-8222-222222222222'


class FakeDynamoDB:
    """
    In-memory stand-in for the DynamoDB client calls used by db_utils

    Understands the condition expressions db_utils generates:
    attribute_exists / attribute_not_exists, equality and IN, joined by AND.
    """

    def __init__(self):
        self.tables = {}
        self.transactions = []
        self.fail_with = None

    def table(self, name):
        return self.tables.setdefault(name, {})

    def rows(self, name):
        return list(self.table(name).values())

    def put(self, name, item):
        self.table(name)[item['id']] = dict(item)

    def get_item(self, TableName, Key, ConsistentRead=False):
        key = db_utils.deserialize_item(Key)['id']
        item = self.table(TableName).get(key)
        if item is None:
            return {}
        return {'Item': db_utils.serialize_item(item)}

    def query(self, TableName, IndexName, KeyConditionExpression, ExpressionAttributeValues, Select,
              ExclusiveStartKey=None):
        owner = db_utils.deserializer.deserialize(ExpressionAttributeValues[':owner'])
        count = sum(1 for item in self.table(TableName).values() if item.get('owner_id') == owner)
        return {'Count': count}

    def transact_write_items(self, TransactItems):
        if self.fail_with is not None:
            raise self.fail_with

        reasons = []
        for operation in TransactItems:
            kind, params = next(iter(operation.items()))
            item = self._target(kind, params)
            ok = self._evaluate(params.get('ConditionExpression'), item,
                                params.get('ExpressionAttributeNames', {}),
                                params.get('ExpressionAttributeValues', {}))
            reasons.append({'Code': 'None' if ok else 'ConditionalCheckFailed'})

        if any(reason['Code'] != 'None' for reason in reasons):
            raise ClientError({
                'Error': {'Code': 'TransactionCanceledException', 'Message': 'Transaction cancelled'},
                'CancellationReasons': reasons
            }, 'TransactWriteItems')

        for operation in TransactItems:
            kind, params = next(iter(operation.items()))
            if kind == 'Put':
                self.put(params['TableName'], db_utils.deserialize_item(params['Item']))
            else:
                self._apply_update(params)
        self.transactions.append(TransactItems)
        return {}

    def _target(self, kind, params):
        if kind == 'Put':
            key = db_utils.deserializer.deserialize(params['Item']['id'])
        else:
            key = db_utils.deserialize_item(params['Key'])['id']
        return self.table(params['TableName']).get(key)

    def _evaluate(self, condition, item, names, values):
        if not condition:
            return True

        def name(token):
            return names[token] if token.startswith('#') else token

        def value(token):
            return db_utils.deserializer.deserialize(values[token.strip()])

        for clause in condition.split(' AND '):
            clause = clause.strip()
            if clause.startswith('attribute_exists('):
                if item is None or name(clause[len('attribute_exists('):-1]) not in item:
                    return False
            elif clause.startswith('attribute_not_exists('):
                if item is not None and name(clause[len('attribute_not_exists('):-1]) in item:
                    return False
            elif ' IN (' in clause:
                attribute, _, options = clause.partition(' IN (')
                allowed = [value(token) for token in options.rstrip(')').split(',')]
                if item is None or item.get(name(attribute.strip())) not in allowed:
                    return False
            else:
                attribute, _, placeholder = clause.partition(' = ')
                if item is None or item.get(name(attribute.strip())) != value(placeholder):
                    return False
        return True

    def _apply_update(self, params):
        key = db_utils.deserialize_item(params['Key'])['id']
        table = self.table(params['TableName'])
        item = table.setdefault(key, {'id': key})
        names = params['ExpressionAttributeNames']
        values = params['ExpressionAttributeValues']
        for assignment in params['UpdateExpression'][len('SET '):].split(','):
            attribute, _, placeholder = assignment.partition('=')
            item[names[attribute.strip()]] = db_utils.deserializer.deserialize(values[placeholder.strip()])


class FakeSES:
    def __init__(self):
        self.sent = []
        self.fail_with = None

    def send_email(self, **params):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(params)
        return {'MessageId': f"msg-{len(self.sent)}"}


class RecordingTelemetrySink(telemetry_utils.TelemetrySink):
    def __init__(self):
        self.events = []
        self.exceptions = []

    def track_event(self, name, properties=None):
        self.events.append((name, properties or {}))

    def capture_exception(self, exc, context=None):
        self.exceptions.append((exc, context or {}))


class FakePaymentProvider(PaymentProvider):
    """Gateway double whose verification outcome is set by the test"""

    name = 'fake'

    def __init__(self):
        self.verification_status = payment_providers.PAYMENT_PAID
        self.created = []

    def create_checkout_session(self, order, identity, customer=None):
        self.created.append(order['id'])
        return CheckoutSession(self.name, f"ref-{order['id'][:8]}", 'https://pay.example.com/checkout',
                               {'amount': int(order['amount_cents'])})

    def verify_payment(self, order, payload):
        return PaymentVerification(self.verification_status, order.get('provider_reference'), {})


@pytest.fixture
def dynamodb(monkeypatch):
    fake = FakeDynamoDB()
    monkeypatch.setattr(db_utils, 'dynamodb', fake)
    return fake


@pytest.fixture
def ses(monkeypatch):
    fake = FakeSES()
    monkeypatch.setattr(email_utils, 'ses_client', fake)
    return fake


@pytest.fixture
def telemetry():
    sink = RecordingTelemetrySink()
    telemetry_utils.set_telemetry_sink(sink)
    yield sink
    telemetry_utils.set_telemetry_sink(None)


@pytest.fixture
def payment_provider():
    provider = FakePaymentProvider()
    payment_providers.set_payment_provider(provider)
    yield provider
    payment_providers.set_payment_provider(None)


@pytest.fixture(autouse=True)
def _isolated_services(dynamodb, ses, telemetry):
    """Every test runs against fresh in-memory storage, SES and telemetry"""
    yield


def make_token(user_id=USER_ID, email='user@example.com', expires_in=3600, secret=None, **claims):
    payload = {
        'sub': user_id,
        'email': email,
        'aud': 'authenticated',
        'exp': int(time.time()) + expires_in
    }
    payload.update(claims)
    return jwt.encode(payload, secret or os.environ['AUTH_JWT_SECRET'], algorithm='HS256')


def make_event(body=None, token=None, method='POST', headers=None, raw_body=None):
    event_headers = {'Content-Type': 'application/json'}
    if token:
        event_headers['Authorization'] = f"Bearer {token}"
    event_headers.update(headers or {})
    return {
        'httpMethod': method,
        'headers': event_headers,
        'body': raw_body if raw_body is not None else (json.dumps(body) if body is not None else None),
        'requestContext': {'requestId': 'req-test'}
    }


def parse(response):
    return response['statusCode'], json.loads(response['body']) if response['body'] else None


_handlers = {}

def load_handler(name):
    """Import lambda/<name>/main.py under a unique module name"""
    if name not in _handlers:
        spec = importlib.util.spec_from_file_location(
            f"handler_{name.replace('-', '_')}", LAMBDA_DIR / name / 'main.py'
        )
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        _handlers[name] = module.lambda_handler
    return _handlers[name]


def seed_order(dynamodb, order_id, user_id=USER_ID, status='pending', plan='starter', amount_cents=99900,
               currency='INR', **extra):
    order = {
        'id': order_id,
        'user_id': user_id,
        'amount_cents': amount_cents,
        'currency': currency,
        'status': status,
        'plan': plan,
        'billing_cycle': 'monthly',
        'created_at': '2026-01-01T00:00:00+00:00',
        'updated_at': '2026-01-01T00:00:00+00:00'
    }
    order.update(extra)
    dynamodb.put('orders', order)
    return order
