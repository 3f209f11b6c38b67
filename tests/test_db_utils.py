from decimal import Decimal

import pytest
from botocore.exceptions import BotoCoreError, ClientError

import db_utils as db
from exceptions import EffectFailedError


def test_serialize_drops_none_and_converts_floats():
    item = db.serialize_item({'id': 'x', 'price': 1.5, 'missing': None, 'nested': {'a': None, 'b': 2}})

    assert item == {'id': {'S': 'x'}, 'price': {'N': '1.5'}, 'nested': {'M': {'b': {'N': '2'}}}}


def test_item_totals_are_quantity_times_unit_price():
    records = db.build_order_item_records('order-1', [
        {'name': 'A', 'quantity': 3, 'unit_price_cents': 250},
        {'name': 'B', 'quantity': 1, 'unit_price_cents': 0}
    ])

    assert [record['total_price_cents'] for record in records] == [750, 0]
    assert [record['position'] for record in records] == [0, 1]
    assert len({record['id'] for record in records}) == 2


def test_update_op_expression():
    operation = db.update_op('orders', {'id': 'o1'}, {'status': 'paid', 'paid_at': 'now'},
                             condition='attribute_exists(id)')

    update = operation['Update']
    assert update['UpdateExpression'] == 'SET #f0 = :f0, #f1 = :f1'
    assert update['ExpressionAttributeNames'] == {'#f0': 'status', '#f1': 'paid_at'}
    assert update['ExpressionAttributeValues'][':f0'] == {'S': 'paid'}
    assert update['ConditionExpression'] == 'attribute_exists(id)'


def test_order_status_update_condition():
    update = db.order_status_update_op('o1', ['pending', 'failed'], 'cancelled', owner_id='u1')['Update']

    assert update['ConditionExpression'] == 'attribute_exists(id) AND #status IN (:from0, :from1) AND #owner = :owner'
    assert update['ExpressionAttributeNames']['#owner'] == 'user_id'
    assert update['ExpressionAttributeValues'][':owner'] == {'S': 'u1'}


def test_order_status_update_pins_expected_fields(dynamodb):
    operation = db.order_status_update_op('o1', ['pending'], 'pending', extra_fields={'provider_reference': 'new'},
                                          expected_fields={'provider_reference': 'old', 'provider': None})
    update = operation['Update']

    assert update['ConditionExpression'] == (
        'attribute_exists(id) AND #status IN (:from0) AND #e0 = :e0 AND attribute_not_exists(#e1)'
    )
    assert update['ExpressionAttributeNames']['#e0'] == 'provider_reference'
    assert update['ExpressionAttributeNames']['#e1'] == 'provider'
    assert update['ExpressionAttributeValues'][':e0'] == {'S': 'old'}

    dynamodb.put('orders', {'id': 'o1', 'status': 'pending', 'provider_reference': 'other'})
    with pytest.raises(db.TransactionConflictError):
        db.execute_transaction([operation], 'start checkout')
    assert dynamodb.table('orders')['o1']['provider_reference'] == 'other'


def test_insert_refuses_overwrite():
    assert db.insert_op('orders', {'id': 'o1'})['Put']['ConditionExpression'] == 'attribute_not_exists(id)'


def test_conditional_failure_is_a_conflict(dynamodb):
    dynamodb.fail_with = ClientError({
        'Error': {'Code': 'TransactionCanceledException', 'Message': 'cancelled'},
        'CancellationReasons': [{'Code': 'None'}, {'Code': 'ConditionalCheckFailed'}]
    }, 'TransactWriteItems')

    with pytest.raises(db.TransactionConflictError) as excinfo:
        db.execute_transaction([], 'test')

    assert excinfo.value.reasons == ['None', 'ConditionalCheckFailed']


@pytest.mark.parametrize('error', [
    ClientError({'Error': {'Code': 'TransactionCanceledException', 'Message': 'x'},
                 'CancellationReasons': [{'Code': 'ThrottlingError'}]}, 'TransactWriteItems'),
    ClientError({'Error': {'Code': 'ResourceNotFoundException', 'Message': 'x'}}, 'TransactWriteItems'),
    BotoCoreError(),
])
def test_other_storage_failures(dynamodb, error):
    dynamodb.fail_with = error

    with pytest.raises(EffectFailedError) as excinfo:
        db.execute_transaction([], 'write things')

    assert excinfo.value.message == 'Failed to write things'
    assert excinfo.value.cause is error


def test_missing_table_setting(monkeypatch):
    monkeypatch.setattr(db, 'ORDERS_TABLE', None)

    with pytest.raises(EffectFailedError):
        db.get_order('o1')


def test_get_order_round_trips_numbers(dynamodb):
    dynamodb.put('orders', {'id': 'o1', 'amount_cents': 1300})

    assert db.get_order('o1') == {'id': 'o1', 'amount_cents': Decimal('1300')}
    assert db.get_order('missing') is None


def test_count_hosting_accounts(dynamodb):
    dynamodb.put('hosting_accounts', {'id': 'h1', 'owner_id': 'u1'})
    dynamodb.put('hosting_accounts', {'id': 'h2', 'owner_id': 'u1'})
    dynamodb.put('hosting_accounts', {'id': 'h3', 'owner_id': 'u2'})

    assert db.count_hosting_accounts('u1') == 2
