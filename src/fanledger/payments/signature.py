"""Stripe webhook signature verification."""

import logging

import stripe

logger = logging.getLogger(__name__)


def verify_signature(
    payload: bytes | str,
    sig_header: str | None,
    secret: str,
    tolerance: int | None = None,
) -> bool:
    """Check that a webhook body was signed by Stripe.

    The header has the form ``t=<unix>,v1=<hex>[,v1=<hex>...]``. The
    signature is HMAC-SHA256 over ``"<t>.<raw body>"``; the body is accepted
    if any ``v1`` value matches (Stripe sends one per active signing secret
    while a secret is being rolled). Comparison is constant-time.

    Args:
        payload: Raw request body exactly as received
        sig_header: Value of the Stripe-Signature header
        secret: Webhook signing secret
        tolerance: Maximum age of the signed timestamp in seconds, or None
            to skip the replay check

    Returns:
        True if the signature is valid, False otherwise
    """
    if not sig_header or not secret:
        return False

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Webhook body is not valid UTF-8")
            return False

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Webhook signature rejected: {e}")
        return False

    return True
