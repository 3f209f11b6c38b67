"""
Order Management Module
Handles order creation and cancellation workflows
"""

import hashlib
import json
import logging
from decimal import Decimal, ROUND_HALF_UP

import db_utils as db
import permission_utils as perm
from exceptions import BusinessLogicError
from telemetry_utils import get_telemetry_sink

logger = logging.getLogger(__name__)


def to_minor_units(amount):
    """Decimal major units -> integer minor units, half rounded up"""
    return int((Decimal(amount) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


class OrderManager:
    """Manages order-related business logic"""

    # Allowed status transitions; paid and cancelled are terminal
    STATUS_TRANSITIONS = {
        db.STATUS_PENDING: [db.STATUS_PAID, db.STATUS_FAILED, db.STATUS_CANCELLED],
        db.STATUS_FAILED: [db.STATUS_PENDING, db.STATUS_CANCELLED],
        db.STATUS_PAID: [],
        db.STATUS_CANCELLED: []
    }

    @staticmethod
    def can_transition(current_status, new_status):
        return new_status in OrderManager.STATUS_TRANSITIONS.get(current_status, [])

    @staticmethod
    def statuses_allowing(new_status):
        """Statuses from which new_status may be reached"""
        return [status for status, targets in OrderManager.STATUS_TRANSITIONS.items() if new_status in targets]

    @staticmethod
    def create_order(identity, order_data, idempotency_key=None):
        """
        Complete order creation workflow

        Writes the order, its line items and the audit entry in one
        transaction. With an idempotency key, a repeated request returns the
        order created by the first one instead of creating another.

        Args:
            identity (Identity): Resolved caller
            order_data (dict): Validated create-order payload
            idempotency_key (str): Optional client-supplied key

        Returns:
            dict: Created (or previously created) order summary

        Raises:
            ForbiddenError: Body user_id differs from the token subject
            EffectFailedError: Storage failure
        """
        perm.PermissionValidator.ensure_subject_matches(identity, order_data.get('user_id'))
        user_id = identity.user_id

        request_hash = None
        idempotency_record_id = None
        if idempotency_key:
            request_hash = OrderManager._request_fingerprint(order_data)
            idempotency_record_id = f"{user_id}#create-order#{idempotency_key}"
            replay = OrderManager._replay_idempotent_request(idempotency_record_id, request_hash)
            if replay:
                return replay

        items = OrderManager._process_order_items(order_data['items'])
        amount_cents = to_minor_units(order_data['amount'])
        order_id = db.new_id()

        order_record = db.build_order_record(
            order_id=order_id,
            user_id=user_id,
            amount_cents=amount_cents,
            currency=order_data['currency'],
            plan=order_data['plan'],
            billing_cycle=order_data['billing_cycle'],
            item_count=len(items),
            idempotency_key=idempotency_key
        )
        item_records = db.build_order_item_records(order_id, items)
        audit_entry = db.build_audit_entry(user_id, 'order_created', {
            'order_id': order_id,
            'amount_cents': amount_cents,
            'currency': order_data['currency'],
            'items_count': len(items)
        })

        operations = [db.insert_op(db.require_table(db.ORDERS_TABLE, 'ORDERS_TABLE'), order_record)]
        items_table = db.require_table(db.ORDER_ITEMS_TABLE, 'ORDER_ITEMS_TABLE')
        operations.extend(db.insert_op(items_table, record) for record in item_records)
        operations.append(db.insert_op(db.require_table(db.AUDIT_LOG_TABLE, 'AUDIT_LOG_TABLE'), audit_entry))
        if idempotency_record_id:
            operations.append(db.insert_op(
                db.require_table(db.IDEMPOTENCY_TABLE, 'IDEMPOTENCY_TABLE'),
                db.build_idempotency_record(idempotency_record_id, user_id, order_id, request_hash)
            ))

        try:
            db.execute_transaction(operations, 'create order')
        except db.TransactionConflictError:
            if not idempotency_record_id:
                raise BusinessLogicError("Failed to create order", 500)
            # A concurrent request with the same key committed first
            replay = OrderManager._replay_idempotent_request(idempotency_record_id, request_hash)
            if replay:
                return replay
            raise BusinessLogicError("Failed to create order", 500)

        logger.info(f"Order created: {order_id} for user {user_id}")
        get_telemetry_sink().track_event('order_created', {'order_id': order_id, 'plan': order_data['plan']})

        return OrderManager.summarize_order(order_record)

    @staticmethod
    def cancel_order(identity, order_id):
        """Cancel a pending (or failed) order owned by the caller"""
        order = perm.PermissionValidator.get_owned_order(identity, order_id)
        if not OrderManager.can_transition(order.get('status'), db.STATUS_CANCELLED):
            raise BusinessLogicError(f"Cannot cancel an order that is {order.get('status')}", 400)

        operations = [
            db.order_status_update_op(
                order_id,
                from_statuses=OrderManager.statuses_allowing(db.STATUS_CANCELLED),
                to_status=db.STATUS_CANCELLED,
                extra_fields={'cancelled_at': db.now_iso()},
                owner_id=identity.user_id
            ),
            db.insert_op(
                db.require_table(db.AUDIT_LOG_TABLE, 'AUDIT_LOG_TABLE'),
                db.build_audit_entry(identity.user_id, 'order_cancelled', {
                    'order_id': order_id,
                    'previous_status': order.get('status')
                })
            )
        ]
        try:
            db.execute_transaction(operations, 'cancel order')
        except db.TransactionConflictError:
            raise BusinessLogicError("Order status changed, please refresh and try again", 400)

        logger.info(f"Order cancelled: {order_id}")
        order.update({'status': db.STATUS_CANCELLED})
        return OrderManager.summarize_order(order)

    @staticmethod
    def summarize_order(order):
        return {
            'id': order['id'],
            'user_id': order['user_id'],
            'amount': float(Decimal(int(order['amount_cents'])) / 100),
            'amount_cents': int(order['amount_cents']),
            'currency': order['currency'],
            'status': order['status'],
            'plan': order.get('plan'),
            'billing_cycle': order.get('billing_cycle'),
            'created_at': order.get('created_at')
        }

    @staticmethod
    def _process_order_items(items):
        """Convert validated items to minor units"""
        processed_items = []
        for item in items:
            processed_items.append({
                'service_id': item.get('service_id'),
                'name': item['name'],
                'type': item.get('type'),
                'quantity': item['quantity'],
                'unit_price_cents': to_minor_units(item['unit_price'])
            })
        return processed_items

    @staticmethod
    def _request_fingerprint(order_data):
        canonical = json.dumps(order_data, sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    @staticmethod
    def _replay_idempotent_request(record_id, request_hash):
        record = db.get_idempotency_record(record_id)
        if not record:
            return None
        if record.get('request_hash') != request_hash:
            raise BusinessLogicError("Idempotency-Key was already used with a different request", 400)

        order = db.get_order(record['order_id'])
        if not order:
            raise BusinessLogicError("Failed to create order", 500)
        logger.info(f"Idempotent replay of order {order['id']}")
        return OrderManager.summarize_order(order)
