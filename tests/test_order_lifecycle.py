import pytest

from conftest import OTHER_USER_ID, load_handler, make_event, make_token, parse, seed_order
from order_manager import OrderManager, to_minor_units

ORDER_ID = 'aaaaaaaa-aaaa-4aaa-8aaa-aaaaaaaaaaaa'


@pytest.mark.parametrize('current, target, allowed', [
    ('pending', 'paid', True),
    ('pending', 'failed', True),
    ('pending', 'cancelled', True),
    ('failed', 'pending', True),
    ('failed', 'cancelled', True),
    ('failed', 'paid', False),
    ('paid', 'cancelled', False),
    ('paid', 'pending', False),
    ('cancelled', 'pending', False),
])
def test_status_transitions(current, target, allowed):
    assert OrderManager.can_transition(current, target) is allowed


def test_statuses_allowing():
    assert sorted(OrderManager.statuses_allowing('cancelled')) == ['failed', 'pending']
    assert OrderManager.statuses_allowing('paid') == ['pending']


def test_minor_units():
    assert to_minor_units('0.01') == 1
    assert to_minor_units('19.99') == 1999
    assert to_minor_units('0.125') == 13


def _cancel(order_id=ORDER_ID, token=None):
    handler = load_handler('api-cancel-order')
    return parse(handler(make_event({'order_id': order_id}, token=token or make_token()), None))


def test_cancel_pending_order(dynamodb):
    seed_order(dynamodb, ORDER_ID)

    status, response = _cancel()

    assert status == 200
    assert response['data']['status'] == 'cancelled'
    stored = dynamodb.table('orders')[ORDER_ID]
    assert stored['status'] == 'cancelled'
    assert 'cancelled_at' in stored
    assert [entry['action'] for entry in dynamodb.rows('audit_log')] == ['order_cancelled']


def test_cannot_cancel_paid_order(dynamodb):
    seed_order(dynamodb, ORDER_ID, status='paid')

    status, response = _cancel()

    assert status == 400
    assert dynamodb.table('orders')[ORDER_ID]['status'] == 'paid'
    assert dynamodb.rows('audit_log') == []


def test_foreign_and_missing_orders_look_the_same(dynamodb):
    seed_order(dynamodb, ORDER_ID, user_id=OTHER_USER_ID)

    foreign = _cancel()
    missing = _cancel(order_id='bbbbbbbb-bbbb-4bbb-8bbb-bbbbbbbbbbbb')

    assert foreign == missing
    assert foreign[0] == 403
    assert dynamodb.table('orders')[ORDER_ID]['status'] == 'pending'


def test_concurrent_status_change_is_a_conflict(dynamodb, monkeypatch):
    seed_order(dynamodb, ORDER_ID)
    original_get_item = dynamodb.get_item

    def get_then_pay(**kwargs):
        result = original_get_item(**kwargs)
        dynamodb.table('orders')[ORDER_ID]['status'] = 'paid'
        return result

    monkeypatch.setattr(dynamodb, 'get_item', get_then_pay)

    status, response = _cancel()

    assert status == 400
    assert 'refresh' in response['error']
    assert dynamodb.table('orders')[ORDER_ID]['status'] == 'paid'
    assert dynamodb.rows('audit_log') == []
