"""
Payment Management Module
Handles checkout sessions and payment verification for orders
"""

import logging

import db_utils as db
import permission_utils as perm
from exceptions import BusinessLogicError
from order_manager import OrderManager
from payment_providers import PAYMENT_FAILED, PAYMENT_PAID, get_payment_provider
from telemetry_utils import get_telemetry_sink

logger = logging.getLogger(__name__)


class PaymentManager:
    """Manages payment-related business logic"""

    @staticmethod
    def create_checkout_session(identity, request_data):
        """
        Start a payment for a pending (or previously failed) order

        The gateway reference is stored on the order so verification can
        match the gateway's callback to it. A failed order moves back to
        pending. The reference read with the order must still be current when
        the new one is stored, so of two concurrent checkouts only one wins.

        Args:
            identity (Identity): Resolved caller
            request_data (dict): Validated checkout payload

        Returns:
            dict: Provider name, reference, redirect URL and client parameters
        """
        perm.PermissionValidator.ensure_subject_matches(identity, request_data.get('user_id'))
        order_id = request_data['order_id']
        order = perm.PermissionValidator.get_owned_order(identity, order_id)

        current_status = order.get('status')
        if current_status not in (db.STATUS_PENDING, db.STATUS_FAILED):
            raise BusinessLogicError(f"Cannot start payment for an order that is {current_status}", 400)

        provider = get_payment_provider()
        session = provider.create_checkout_session(order, identity, request_data.get('customer'))

        operations = [
            db.order_status_update_op(
                order_id,
                from_statuses=[current_status],
                to_status=db.STATUS_PENDING,
                extra_fields={
                    'provider': session.provider,
                    'provider_reference': session.reference
                },
                owner_id=identity.user_id,
                expected_fields={'provider_reference': order.get('provider_reference')}
            ),
            db.insert_op(
                db.require_table(db.AUDIT_LOG_TABLE, 'AUDIT_LOG_TABLE'),
                db.build_audit_entry(identity.user_id, 'checkout_started', {
                    'order_id': order_id,
                    'provider': session.provider,
                    'provider_reference': session.reference
                })
            )
        ]
        try:
            db.execute_transaction(operations, 'start checkout')
        except db.TransactionConflictError:
            raise BusinessLogicError("Order status changed, please refresh and try again", 400)

        logger.info(f"Checkout session {session.reference} created with {session.provider} for order {order_id}")
        get_telemetry_sink().track_event('checkout_started', {'provider': session.provider})

        return {
            'order_id': order_id,
            'provider': session.provider,
            'reference': session.reference,
            'checkout_url': session.checkout_url,
            'params': session.params
        }

    @staticmethod
    def verify_payment(identity, request_data):
        """
        Confirm a payment with the gateway and settle the order

        A paid verification marks the order paid, upgrades the user's
        subscription plan, and writes the audit entry and notification in the
        same transaction. A gateway-reported failure marks the order failed.
        A pending result writes nothing.

        Returns:
            dict: Order id, order status and whether it is paid
        """
        order_id = request_data['order_id']
        order = perm.PermissionValidator.get_owned_order(identity, order_id)

        if order.get('status') == db.STATUS_PAID:
            return PaymentManager._status_summary(order)
        if order.get('status') != db.STATUS_PENDING:
            raise BusinessLogicError(f"Cannot verify payment for an order that is {order.get('status')}", 400)
        if not order.get('provider_reference'):
            raise BusinessLogicError("No checkout session exists for this order", 400)

        verification = get_payment_provider().verify_payment(order, request_data.get('payload') or {})

        if verification.status == PAYMENT_PAID:
            PaymentManager._mark_paid(identity, order, verification)
            order['status'] = db.STATUS_PAID
        elif verification.status == PAYMENT_FAILED:
            PaymentManager._mark_failed(identity, order, verification)
            order['status'] = db.STATUS_FAILED
        else:
            logger.info(f"Payment for order {order_id} still pending")

        return PaymentManager._status_summary(order)

    @staticmethod
    def check_status(identity, order_id):
        """Current payment status of an order owned by the caller"""
        order = perm.PermissionValidator.get_owned_order(identity, order_id)
        return PaymentManager._status_summary(order)

    @staticmethod
    def _mark_paid(identity, order, verification):
        paid_at = db.now_iso()
        operations = [
            db.order_status_update_op(
                order['id'],
                from_statuses=[db.STATUS_PENDING],
                to_status=db.STATUS_PAID,
                extra_fields={'paid_at': paid_at, 'payment_reference': verification.reference},
                owner_id=identity.user_id
            ),
            db.update_op(
                db.require_table(db.PROFILES_TABLE, 'PROFILES_TABLE'),
                {'id': identity.user_id},
                {'subscription_plan': order.get('plan'), 'updated_at': paid_at}
            ),
            db.insert_op(
                db.require_table(db.AUDIT_LOG_TABLE, 'AUDIT_LOG_TABLE'),
                db.build_audit_entry(identity.user_id, 'payment_verified', {
                    'order_id': order['id'],
                    'provider': order.get('provider'),
                    'payment_reference': verification.reference,
                    'amount_cents': int(order['amount_cents'])
                })
            ),
            db.insert_op(
                db.require_table(db.NOTIFICATIONS_TABLE, 'NOTIFICATIONS_TABLE'),
                db.build_notification(
                    identity.user_id,
                    'Payment Successful',
                    f"Your payment for the {order.get('plan')} plan was received.",
                    'success',
                    action_url='/billing'
                )
            )
        ]
        try:
            db.execute_transaction(operations, 'record payment')
        except db.TransactionConflictError:
            raise BusinessLogicError("Order status changed, please refresh and try again", 400)

        logger.info(f"Order {order['id']} paid via {order.get('provider')}")
        get_telemetry_sink().track_event('payment_verified', {'provider': order.get('provider')})

    @staticmethod
    def _mark_failed(identity, order, verification):
        operations = [
            db.order_status_update_op(
                order['id'],
                from_statuses=OrderManager.statuses_allowing(db.STATUS_FAILED),
                to_status=db.STATUS_FAILED,
                owner_id=identity.user_id
            ),
            db.insert_op(
                db.require_table(db.AUDIT_LOG_TABLE, 'AUDIT_LOG_TABLE'),
                db.build_audit_entry(identity.user_id, 'payment_failed', {
                    'order_id': order['id'],
                    'provider': order.get('provider'),
                    'details': verification.details
                })
            )
        ]
        try:
            db.execute_transaction(operations, 'record failed payment')
        except db.TransactionConflictError:
            raise BusinessLogicError("Order status changed, please refresh and try again", 400)

        logger.warning(f"Payment failed for order {order['id']}")
        get_telemetry_sink().track_event('payment_failed', {'provider': order.get('provider')})

    @staticmethod
    def _status_summary(order):
        return {
            'order_id': order['id'],
            'status': order['status'],
            'paid': order['status'] == db.STATUS_PAID,
            'provider': order.get('provider'),
            'paid_at': order.get('paid_at')
        }
