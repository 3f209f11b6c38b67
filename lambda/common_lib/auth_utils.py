import logging
import os
from collections import namedtuple

import jwt
from jwt import PyJWKClient

import request_utils as req
from exceptions import BusinessLogicError, UnauthenticatedError

logger = logging.getLogger(__name__)

AUTH_JWKS_URL = os.environ.get('AUTH_JWKS_URL')
AUTH_JWT_SECRET = os.environ.get('AUTH_JWT_SECRET')
AUTH_AUDIENCE = os.environ.get('AUTH_AUDIENCE', 'authenticated')
AUTH_ISSUER = os.environ.get('AUTH_ISSUER')

Identity = namedtuple('Identity', ['user_id', 'email'])

_jwks_client = None

def _get_jwks_client():
    global _jwks_client
    if _jwks_client is None:
        _jwks_client = PyJWKClient(AUTH_JWKS_URL, cache_keys=True)
    return _jwks_client

def extract_token(event):
    auth = req.get_header(event, 'Authorization')
    if not auth or not isinstance(auth, str):
        return None
    scheme, _, token = auth.partition(' ')
    if scheme != 'Bearer' or not token.strip():
        return None
    return token.strip()

def verify_jwt(token):
    """
    Verify a bearer token with the identity provider's signing keys

    Returns:
        dict: Decoded claims

    Raises:
        UnauthenticatedError: Token rejected
        BusinessLogicError: No verification key configured (500)
    """
    if not token:
        raise UnauthenticatedError('Unauthorized: Missing token')

    options = {'require': ['exp', 'sub']}
    decode_kwargs = {
        'audience': AUTH_AUDIENCE if AUTH_AUDIENCE else None,
        'options': options if AUTH_AUDIENCE else {**options, 'verify_aud': False}
    }
    if AUTH_ISSUER:
        decode_kwargs['issuer'] = AUTH_ISSUER

    try:
        if AUTH_JWKS_URL:
            key = _get_jwks_client().get_signing_key_from_jwt(token)
            return jwt.decode(token, key.key, algorithms=['RS256'], **decode_kwargs)
        if AUTH_JWT_SECRET:
            return jwt.decode(token, AUTH_JWT_SECRET, algorithms=['HS256'], **decode_kwargs)
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError('Unauthorized: Token has expired')
    except jwt.PyJWKClientError as e:
        logger.warning(f"Signing key lookup failed: {str(e)}")
        raise UnauthenticatedError('Unauthorized: Invalid token')
    except jwt.InvalidTokenError as e:
        logger.info(f"Invalid token: {str(e)}")
        raise UnauthenticatedError('Unauthorized: Invalid token')

    logger.error("Neither AUTH_JWKS_URL nor AUTH_JWT_SECRET is configured")
    raise BusinessLogicError('Authentication is not configured', 500)

def resolve_identity(event):
    """Exchange the request's bearer token for the verified subject"""
    token = extract_token(event)
    if not token:
        raise UnauthenticatedError('Unauthorized: Missing token')

    claims = verify_jwt(token)
    user_id = claims.get('sub')
    if not user_id or not isinstance(user_id, str):
        raise UnauthenticatedError('Unauthorized: Invalid token')

    logger.info(f"Authenticated user: {user_id}")
    return Identity(user_id=user_id, email=claims.get('email') or '')
