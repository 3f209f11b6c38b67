"""
Permission and authorization utilities for Lambda functions
Centralizes ownership checks between a resolved identity and a resource
"""

import logging

import db_utils as db
from exceptions import BusinessLogicError, ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)

ORDER_ACCESS_DENIED = "Order not found or unauthorized"

# Maximum hosting accounts per plan
HOSTING_PLAN_LIMITS = {
    'free': 1,
    'starter': 3,
    'business': 10,
    'enterprise': 999
}


class PermissionValidator:
    """Handles common permission validation patterns"""

    @staticmethod
    def ensure_subject_matches(identity, claimed_user_id):
        """
        Reject a client-supplied user id that differs from the token subject

        Args:
            identity (Identity): Resolved caller identity
            claimed_user_id (str): user_id from the request body, may be None

        Raises:
            ForbiddenError: If the ids differ
        """
        if claimed_user_id is None:
            return
        if claimed_user_id.lower() != identity.user_id.lower():
            logger.warning(f"User ID mismatch: token subject {identity.user_id}, body {claimed_user_id}")
            raise ForbiddenError("Forbidden: User ID mismatch")

    @staticmethod
    def get_owned_order(identity, order_id):
        """
        Load an order and confirm the caller owns it

        Missing and foreign orders are reported identically so that order
        ids cannot be enumerated.

        Returns:
            dict: The order record

        Raises:
            NotFoundError: Order does not exist
            ForbiddenError: Order belongs to another user
        """
        order = db.get_order(order_id)
        if not order:
            logger.info(f"Order {order_id} not found for user {identity.user_id}")
            raise NotFoundError(ORDER_ACCESS_DENIED)

        if order.get('user_id') != identity.user_id:
            logger.warning(f"User {identity.user_id} attempted to access order {order_id}")
            raise ForbiddenError(ORDER_ACCESS_DENIED)

        return order

    @staticmethod
    def validate_hosting_limit(user_id, plan):
        """
        Validate the number of hosting accounts allowed on a plan

        Raises:
            BusinessLogicError: If the plan limit is reached
        """
        limit = HOSTING_PLAN_LIMITS.get(plan, 1)
        existing_count = db.count_hosting_accounts(user_id)
        if existing_count >= limit:
            raise BusinessLogicError("Plan limit reached. Upgrade to create more hosting accounts.", 400)
        return True
