"""
Outbound HTTP calls to third-party gateways (payments, AI)

Upstream failures are mapped onto the error taxonomy: HTTP 429 becomes
RateLimitedError, 402 PaymentRequiredError and everything else
EffectFailedError, so handlers surface them with the right status code.
"""

import logging

import requests

from exceptions import EffectFailedError, PaymentRequiredError, RateLimitedError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 10


def gateway_request(service, method, url, rate_limited_message=None, payment_required_message=None,
                    timeout=REQUEST_TIMEOUT_SECONDS, **kwargs):
    """
    Call an upstream REST endpoint

    Args:
        service (str): Name used in logs and default error messages
        method (str): HTTP method
        url (str): Endpoint URL
        rate_limited_message (str): Client-facing message for HTTP 429
        payment_required_message (str): Client-facing message for HTTP 402
        **kwargs: Passed through to requests (json, headers, auth, ...)

    Returns:
        dict: Decoded JSON response
    """
    try:
        response = requests.request(method, url, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        logger.error(f"{service} connection error: {str(e)}")
        raise EffectFailedError(f"{service} is unreachable", cause=e)

    if response.status_code == 429:
        logger.warning(f"{service} rate limited the request")
        raise RateLimitedError(rate_limited_message or f"{service} is rate limiting requests")
    if response.status_code == 402:
        logger.warning(f"{service} reported exhausted credit")
        raise PaymentRequiredError(payment_required_message or f"{service} rejected the request: payment required")
    if response.status_code >= 400:
        logger.error(f"{service} error {response.status_code}: {response.text[:500]}")
        raise EffectFailedError(f"{service} request failed", cause=response.text[:500])

    try:
        return response.json()
    except ValueError as e:
        raise EffectFailedError(f"{service} returned an invalid response", cause=e)
