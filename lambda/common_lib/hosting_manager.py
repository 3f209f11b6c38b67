"""
Hosting Management Module
Handles provisioning of hosting accounts against paid orders
"""

import logging
import time

import db_utils as db
import permission_utils as perm
from exceptions import BusinessLogicError
from telemetry_utils import get_telemetry_sink

logger = logging.getLogger(__name__)


class HostingManager:
    """Manages hosting-account business logic"""

    @staticmethod
    def provision_hosting(identity, request_data):
        """
        Complete provisioning workflow

        The order must belong to the caller, be paid, match the requested
        plan and not already have a hosting account. The account, the order
        link, the audit entry and the user notification commit together; the
        conditional order update rejects a second provisioning of the same
        order even when two requests race.

        Args:
            identity (Identity): Resolved caller
            request_data (dict): Validated provision-hosting payload

        Returns:
            dict: Created hosting account summary
        """
        order_id = request_data['order_id']
        plan = request_data['plan']

        order = perm.PermissionValidator.get_owned_order(identity, order_id)
        if order.get('status') != db.STATUS_PAID:
            raise BusinessLogicError("Order must be paid before hosting can be provisioned", 400)
        if order.get('hosting_account_id'):
            raise BusinessLogicError("Hosting account already provisioned for this order", 400)
        if order.get('plan') and order['plan'] != plan:
            raise BusinessLogicError(f"Order was placed for the {order['plan']} plan", 400)

        perm.PermissionValidator.validate_hosting_limit(identity.user_id, plan)

        account_id = db.new_id()
        account_name = request_data.get('name') or f"hosting-{int(time.time() * 1000)}"
        account = db.build_hosting_account_record(
            account_id=account_id,
            owner_id=identity.user_id,
            order_id=order_id,
            name=account_name,
            plan=plan,
            domain=request_data.get('domain'),
            server_location=request_data['server_location']
        )

        operations = [
            db.insert_op(db.require_table(db.HOSTING_ACCOUNTS_TABLE, 'HOSTING_ACCOUNTS_TABLE'), account),
            db.update_op(
                db.require_table(db.ORDERS_TABLE, 'ORDERS_TABLE'),
                {'id': order_id},
                {'hosting_account_id': account_id, 'updated_at': db.now_iso()},
                condition=('attribute_exists(id) AND #status = :paid AND #owner = :owner '
                           'AND attribute_not_exists(hosting_account_id)'),
                names={'#status': 'status', '#owner': 'user_id'},
                values={':paid': db.STATUS_PAID, ':owner': identity.user_id}
            ),
            db.insert_op(
                db.require_table(db.AUDIT_LOG_TABLE, 'AUDIT_LOG_TABLE'),
                db.build_audit_entry(identity.user_id, 'hosting_provisioned', {
                    'order_id': order_id,
                    'plan': plan,
                    'name': account_name
                }, hosting_account_id=account_id)
            ),
            db.insert_op(
                db.require_table(db.NOTIFICATIONS_TABLE, 'NOTIFICATIONS_TABLE'),
                db.build_notification(
                    identity.user_id,
                    'Hosting Account Created',
                    f'Your {plan} hosting account "{account_name}" is now active.',
                    'success',
                    action_url=f"/hosting/control-panel/{account_id}"
                )
            )
        ]

        try:
            db.execute_transaction(operations, 'provision hosting account')
        except db.TransactionConflictError:
            raise BusinessLogicError("Hosting account already provisioned for this order", 400)

        logger.info(f"Hosting account created: {account_id} for order {order_id}")
        get_telemetry_sink().track_event('hosting_provisioned', {'plan': plan})

        return {
            'id': account_id,
            'order_id': order_id,
            'name': account_name,
            'plan': plan,
            'domain': account.get('domain'),
            'status': 'active' if account['is_active'] else 'inactive',
            'server_location': account['server_location'],
            'created_at': account['created_at']
        }
