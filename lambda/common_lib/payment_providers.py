"""
Payment gateway integrations

Every gateway implements the same two capabilities:

    create_checkout_session(order, identity, customer) -> CheckoutSession
    verify_payment(order, payload) -> PaymentVerification

The gateway is chosen once per container from PAYMENT_PROVIDER; handlers and
managers only ever talk to the PaymentProvider interface.
"""

import hashlib
import hmac
import logging
import os
import re
import uuid
from collections import namedtuple
from decimal import Decimal
from urllib.parse import urlencode

import stripe

from exceptions import (
    BusinessLogicError,
    EffectFailedError,
    PaymentRequiredError,
    RateLimitedError,
    ValidationError,
)
from http_utils import gateway_request

logger = logging.getLogger(__name__)

PAYMENT_PROVIDER = os.environ.get('PAYMENT_PROVIDER', 'razorpay')
FRONTEND_ROOT_URL = os.environ.get('FRONTEND_ROOT_URL', '')
MERCHANT_DISPLAY_NAME = os.environ.get('MERCHANT_DISPLAY_NAME', 'KSFoundation')

RAZORPAY_KEY_ID = os.environ.get('RAZORPAY_KEY_ID')
RAZORPAY_KEY_SECRET = os.environ.get('RAZORPAY_KEY_SECRET')
PAYU_MERCHANT_KEY = os.environ.get('PAYU_MERCHANT_KEY')
PAYU_MERCHANT_SALT = os.environ.get('PAYU_MERCHANT_SALT')
PAYU_PAYMENT_URL = os.environ.get('PAYU_PAYMENT_URL', 'https://secure.payu.in/_payment')
CASHFREE_APP_ID = os.environ.get('CASHFREE_APP_ID')
CASHFREE_SECRET_KEY = os.environ.get('CASHFREE_SECRET_KEY')
CASHFREE_ENVIRONMENT = os.environ.get('CASHFREE_ENVIRONMENT', 'production')
STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY')
UPI_VPA = os.environ.get('UPI_VPA')
UPI_PAYEE_NAME = os.environ.get('UPI_PAYEE_NAME', MERCHANT_DISPLAY_NAME)

# Verification outcomes
PAYMENT_PAID = 'paid'
PAYMENT_FAILED = 'failed'
PAYMENT_PENDING = 'pending'

RAZORPAY_PAYMENT_ID = re.compile(r'pay_[A-Za-z0-9]{6,40}')

CheckoutSession = namedtuple('CheckoutSession', ['provider', 'reference', 'checkout_url', 'params'])
PaymentVerification = namedtuple('PaymentVerification', ['status', 'reference', 'details'])


def format_major_units(amount_cents):
    """12345 -> '123.45'"""
    return str((Decimal(int(amount_cents)) / 100).quantize(Decimal('0.01')))

def new_transaction_id():
    return f"TXN{uuid.uuid4().hex[:20].upper()}"

def return_url(status, provider, order_id):
    query = urlencode({'payment': status, 'provider': provider, 'orderId': order_id})
    return f"{FRONTEND_ROOT_URL}/billing?{query}"

def product_description(order):
    return f"{order.get('plan', 'hosting').title()} hosting plan ({order.get('billing_cycle', 'monthly')})"

def require_payload_fields(payload, fields):
    errors = {}
    for field in fields:
        value = payload.get(field)
        if value is None or value == '':
            errors[f'payload.{field}'] = f"payload.{field} is required"
        elif not isinstance(value, str):
            errors[f'payload.{field}'] = f"payload.{field} must be a string"
    if errors:
        raise ValidationError("Validation failed", errors=errors)


class PaymentProvider:
    """Common capability interface of all payment gateways"""

    name = None

    @property
    def service(self):
        return f"Payment provider {self.name}"

    def create_checkout_session(self, order, identity, customer=None):
        raise NotImplementedError

    def verify_payment(self, order, payload):
        raise NotImplementedError


class RazorpayProvider(PaymentProvider):
    """Razorpay Orders API with client-side Checkout"""

    name = 'razorpay'
    api_base = 'https://api.razorpay.com/v1'

    def __init__(self, key_id, key_secret):
        self.key_id = key_id
        self.key_secret = key_secret

    def create_checkout_session(self, order, identity, customer=None):
        customer = customer or {}
        razorpay_order = gateway_request(
            self.service, 'POST', f"{self.api_base}/orders",
            auth=(self.key_id, self.key_secret),
            json={
                'amount': int(order['amount_cents']),
                'currency': order['currency'],
                'receipt': order['id'][:40],
                'notes': {'order_id': order['id'], 'user_id': identity.user_id}
            }
        )
        reference = razorpay_order['id']
        return CheckoutSession(
            provider=self.name,
            reference=reference,
            checkout_url=None,
            params={
                'key': self.key_id,
                'order_id': reference,
                'amount': int(order['amount_cents']),
                'currency': order['currency'],
                'name': MERCHANT_DISPLAY_NAME,
                'description': product_description(order),
                'prefill': {
                    'name': customer.get('name', ''),
                    'email': customer.get('email', identity.email),
                    'contact': customer.get('phone', '')
                }
            }
        )

    def verify_payment(self, order, payload):
        if isinstance(payload.get('error'), dict):
            return self._confirm_reported_failure(order, payload['error'])

        require_payload_fields(payload, ['razorpay_order_id', 'razorpay_payment_id', 'razorpay_signature'])
        if payload['razorpay_order_id'] != order.get('provider_reference'):
            raise BusinessLogicError("Payment does not belong to this order", 400)

        message = f"{payload['razorpay_order_id']}|{payload['razorpay_payment_id']}"
        expected = hmac.new(self.key_secret.encode(), message.encode(), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, payload['razorpay_signature']):
            raise BusinessLogicError("Payment signature verification failed", 400)

        return PaymentVerification(PAYMENT_PAID, payload['razorpay_payment_id'], {})

    def _confirm_reported_failure(self, order, error):
        """
        Checkout reports declines client side, so the payment is looked up
        before the order is marked failed. Anything Razorpay does not confirm
        as a failed payment of this order stays pending.
        """
        reference = order.get('provider_reference')
        metadata = error.get('metadata') if isinstance(error.get('metadata'), dict) else {}
        payment_id = metadata.get('payment_id')
        if not isinstance(payment_id, str) or not RAZORPAY_PAYMENT_ID.fullmatch(payment_id):
            return PaymentVerification(PAYMENT_PENDING, reference, {})

        payment = gateway_request(
            self.service, 'GET', f"{self.api_base}/payments/{payment_id}",
            auth=(self.key_id, self.key_secret)
        )
        if payment.get('order_id') == reference and payment.get('status') == 'failed':
            reason = payment.get('error_description') or error.get('description') or 'declined'
            return PaymentVerification(PAYMENT_FAILED, reference, {'reason': str(reason)[:200]})
        return PaymentVerification(PAYMENT_PENDING, reference, {})


class PayUProvider(PaymentProvider):
    """PayU hosted checkout with SHA-512 request and response hashes"""

    name = 'payu'

    def __init__(self, merchant_key, merchant_salt, payment_url=PAYU_PAYMENT_URL):
        self.merchant_key = merchant_key
        self.merchant_salt = merchant_salt
        self.payment_url = payment_url

    def request_hash(self, params):
        sequence = [params['key'], params['txnid'], params['amount'], params['productinfo'],
                    params['firstname'], params['email'], params.get('udf1', ''), params.get('udf2', ''),
                    params.get('udf3', ''), params.get('udf4', ''), params.get('udf5', ''),
                    '', '', '', '', '', self.merchant_salt]
        return hashlib.sha512('|'.join(sequence).encode()).hexdigest()

    def response_hash(self, payload):
        sequence = [self.merchant_salt, payload.get('status', ''), '', '', '', '', '',
                    payload.get('udf5', ''), payload.get('udf4', ''), payload.get('udf3', ''),
                    payload.get('udf2', ''), payload.get('udf1', ''), payload.get('email', ''),
                    payload.get('firstname', ''), payload.get('productinfo', ''), payload.get('amount', ''),
                    payload.get('txnid', ''), self.merchant_key]
        return hashlib.sha512('|'.join(sequence).encode()).hexdigest()

    def create_checkout_session(self, order, identity, customer=None):
        customer = customer or {}
        txnid = new_transaction_id()
        params = {
            'key': self.merchant_key,
            'txnid': txnid,
            'amount': format_major_units(order['amount_cents']),
            'productinfo': product_description(order),
            'firstname': customer.get('name', ''),
            'email': customer.get('email', identity.email),
            'phone': customer.get('phone', ''),
            'surl': return_url('success', self.name, order['id']),
            'furl': return_url('failed', self.name, order['id']),
            'udf1': order['id'],
            'udf2': identity.user_id,
            'udf3': order.get('plan', '')
        }
        params['hash'] = self.request_hash(params)
        return CheckoutSession(self.name, txnid, self.payment_url, params)

    def verify_payment(self, order, payload):
        require_payload_fields(payload, ['status', 'txnid', 'amount', 'hash'])
        if not hmac.compare_digest(self.response_hash(payload), payload['hash'].lower()):
            raise BusinessLogicError("Payment signature verification failed", 400)
        if payload['txnid'] != order.get('provider_reference') or payload.get('udf1') != order['id']:
            raise BusinessLogicError("Payment does not belong to this order", 400)
        if payload['amount'] != format_major_units(order['amount_cents']):
            raise BusinessLogicError("Payment amount does not match the order", 400)

        status = payload['status'].lower()
        details = {'mihpayid': str(payload.get('mihpayid', ''))}
        if status == 'success':
            return PaymentVerification(PAYMENT_PAID, payload.get('mihpayid') or payload['txnid'], details)
        if status in ('failure', 'failed', 'cancel', 'cancelled'):
            return PaymentVerification(PAYMENT_FAILED, payload['txnid'], details)
        return PaymentVerification(PAYMENT_PENDING, payload['txnid'], details)


class CashfreeProvider(PaymentProvider):
    """Cashfree Payment Gateway orders API"""

    name = 'cashfree'
    api_version = '2023-08-01'

    def __init__(self, app_id, secret_key, environment=CASHFREE_ENVIRONMENT):
        self.app_id = app_id
        self.secret_key = secret_key
        if environment == 'sandbox':
            self.api_base = 'https://sandbox.cashfree.com/pg'
        else:
            self.api_base = 'https://api.cashfree.com/pg'

    def _headers(self):
        return {
            'x-client-id': self.app_id,
            'x-client-secret': self.secret_key,
            'x-api-version': self.api_version
        }

    def create_checkout_session(self, order, identity, customer=None):
        customer = customer or {}
        if not customer.get('phone'):
            raise ValidationError("Validation failed", errors={'customer.phone': "customer.phone is required for Cashfree"})

        # Cashfree order ids are single use, each checkout attempt needs its own
        attempt_id = f"{order['id'][:8]}_{new_transaction_id()}"
        cashfree_order = gateway_request(
            self.service, 'POST', f"{self.api_base}/orders",
            headers=self._headers(),
            json={
                'order_id': attempt_id,
                'order_amount': float(format_major_units(order['amount_cents'])),
                'order_currency': order['currency'],
                'order_note': product_description(order),
                'customer_details': {
                    'customer_id': identity.user_id,
                    'customer_name': customer.get('name', ''),
                    'customer_email': customer.get('email', identity.email),
                    'customer_phone': customer['phone']
                },
                'order_meta': {
                    'return_url': return_url('pending', self.name, order['id'])
                },
                'order_tags': {'order_id': order['id']}
            }
        )
        return CheckoutSession(
            provider=self.name,
            reference=cashfree_order.get('order_id') or attempt_id,
            checkout_url=None,
            params={'payment_session_id': cashfree_order.get('payment_session_id')}
        )

    def verify_payment(self, order, payload):
        reference = order.get('provider_reference') or order['id']
        cashfree_order = gateway_request(
            self.service, 'GET', f"{self.api_base}/orders/{reference}",
            headers=self._headers()
        )
        order_status = (cashfree_order.get('order_status') or '').upper()
        details = {'cf_order_id': str(cashfree_order.get('cf_order_id', ''))}
        if order_status == 'PAID':
            return PaymentVerification(PAYMENT_PAID, reference, details)
        if order_status in ('EXPIRED', 'TERMINATED'):
            return PaymentVerification(PAYMENT_FAILED, reference, details)
        return PaymentVerification(PAYMENT_PENDING, reference, details)


class UpiProvider(PaymentProvider):
    """
    UPI intent links (any UPI app, GPay deep link)

    UPI collects offer no server-side confirmation here, so verification
    stays pending until the payment is reconciled against the bank statement.
    """

    name = 'upi'

    def __init__(self, vpa, payee_name=UPI_PAYEE_NAME):
        self.vpa = vpa
        self.payee_name = payee_name

    def create_checkout_session(self, order, identity, customer=None):
        if order['currency'] != 'INR':
            raise BusinessLogicError("UPI payments are only available in INR", 400)

        txn_id = new_transaction_id()
        query = urlencode({
            'pa': self.vpa,
            'pn': self.payee_name,
            'am': format_major_units(order['amount_cents']),
            'cu': 'INR',
            'tn': product_description(order),
            'tr': txn_id
        })
        upi_url = f"upi://pay?{query}"
        return CheckoutSession(
            provider=self.name,
            reference=txn_id,
            checkout_url=upi_url,
            params={
                'upi_url': upi_url,
                'qr_data': upi_url,
                'gpay_deep_link': f"gpay://upi/pay?{query}",
                'callback_url': return_url('pending', self.name, order['id'])
            }
        )

    def verify_payment(self, order, payload):
        return PaymentVerification(PAYMENT_PENDING, order.get('provider_reference'), {'reconciliation': 'manual'})


class StripeProvider(PaymentProvider):
    """Stripe Checkout Sessions"""

    name = 'stripe'

    def __init__(self, secret_key):
        self.secret_key = secret_key

    def _call(self, func, **kwargs):
        try:
            return func(api_key=self.secret_key, **kwargs)
        except stripe.RateLimitError as e:
            logger.warning(f"Stripe rate limit: {str(e)}")
            raise RateLimitedError("Payment provider stripe is rate limiting requests")
        except stripe.CardError as e:
            raise PaymentRequiredError(f"Payment declined: {e.user_message or str(e)}")
        except stripe.InvalidRequestError as e:
            logger.error(f"Stripe invalid request error: {str(e)}")
            raise BusinessLogicError("Invalid payment request", 400)
        except stripe.StripeError as e:
            logger.error(f"Stripe error: {str(e)}")
            raise EffectFailedError("Payment provider stripe request failed", cause=e)

    def create_checkout_session(self, order, identity, customer=None):
        customer = customer or {}
        session = self._call(
            stripe.checkout.Session.create,
            mode='payment',
            line_items=[{
                'price_data': {
                    'currency': order['currency'].lower(),
                    'unit_amount': int(order['amount_cents']),
                    'product_data': {'name': product_description(order)}
                },
                'quantity': 1
            }],
            client_reference_id=order['id'],
            customer_email=customer.get('email', identity.email) or None,
            success_url=return_url('success', self.name, order['id']) + '&session_id={CHECKOUT_SESSION_ID}',
            cancel_url=return_url('cancelled', self.name, order['id']),
            metadata={'order_id': order['id'], 'user_id': identity.user_id, 'plan': order.get('plan', '')}
        )
        return CheckoutSession(self.name, session['id'], session['url'], {'session_id': session['id']})

    def verify_payment(self, order, payload):
        reference = order.get('provider_reference')
        if not reference:
            raise BusinessLogicError("No checkout session exists for this order", 400)
        session = self._call(stripe.checkout.Session.retrieve, id=reference)
        if session.get('client_reference_id') != order['id']:
            raise BusinessLogicError("Payment does not belong to this order", 400)

        details = {'payment_intent': str(session.get('payment_intent') or '')}
        if session.get('payment_status') == 'paid':
            return PaymentVerification(PAYMENT_PAID, reference, details)
        if session.get('status') == 'expired':
            return PaymentVerification(PAYMENT_FAILED, reference, details)
        return PaymentVerification(PAYMENT_PENDING, reference, details)


def _require_settings(provider, **settings):
    missing = [name for name, value in settings.items() if not value]
    if missing:
        logger.error(f"{provider} credentials not configured: {', '.join(missing)}")
        raise BusinessLogicError(f"{provider} is not configured. Please contact support.", 500)

def _build_razorpay():
    _require_settings('Razorpay', RAZORPAY_KEY_ID=RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET=RAZORPAY_KEY_SECRET)
    return RazorpayProvider(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET)

def _build_payu():
    _require_settings('PayU', PAYU_MERCHANT_KEY=PAYU_MERCHANT_KEY, PAYU_MERCHANT_SALT=PAYU_MERCHANT_SALT)
    return PayUProvider(PAYU_MERCHANT_KEY, PAYU_MERCHANT_SALT)

def _build_cashfree():
    _require_settings('Cashfree', CASHFREE_APP_ID=CASHFREE_APP_ID, CASHFREE_SECRET_KEY=CASHFREE_SECRET_KEY)
    return CashfreeProvider(CASHFREE_APP_ID, CASHFREE_SECRET_KEY)

def _build_upi():
    _require_settings('UPI', UPI_VPA=UPI_VPA)
    return UpiProvider(UPI_VPA)

def _build_stripe():
    _require_settings('Stripe', STRIPE_SECRET_KEY=STRIPE_SECRET_KEY)
    return StripeProvider(STRIPE_SECRET_KEY)

PROVIDER_FACTORIES = {
    'razorpay': _build_razorpay,
    'payu': _build_payu,
    'cashfree': _build_cashfree,
    'upi': _build_upi,
    'stripe': _build_stripe
}

_provider = None

def get_payment_provider():
    """The configured gateway, built on first use and reused for the container's lifetime"""
    global _provider
    if _provider is None:
        factory = PROVIDER_FACTORIES.get((PAYMENT_PROVIDER or '').lower())
        if factory is None:
            logger.error(f"Unsupported payment provider: {PAYMENT_PROVIDER}")
            raise BusinessLogicError("Payment provider not configured. Contact support.", 500)
        _provider = factory()
        logger.info(f"Payment provider selected: {_provider.name}")
    return _provider

def set_payment_provider(provider):
    global _provider
    _provider = provider
