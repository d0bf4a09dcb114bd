"""Signature validation for provider webhooks and queue callbacks.

Security Note:
    Both validators MUST be called on the raw request body before the
    payload is parsed. Return 401 Unauthorized immediately if validation fails.
"""

import base64
import hashlib
import hmac

import jwt
import structlog

logger = structlog.get_logger()

QSTASH_ISSUER = "Upstash"


def validate_hmac_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """Validate a hex HMAC-SHA256 webhook signature.

    Accepts both the bare hex digest and the `sha256=<hex>` form used by the
    `X-Freepik-Signature` header.

    Args:
        raw_body: Raw request body bytes, before any parsing
        signature: Signature header value
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise

    Security:
        Uses hmac.compare_digest() for constant-time comparison to prevent
        timing attacks.
    """
    if not signature or not secret:
        return False

    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]

    expected = hmac.new(key=secret.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256).hexdigest()

    return hmac.compare_digest(expected.lower(), provided.lower())


def body_digest(raw_body: bytes) -> str:
    """Unpadded base64url SHA-256 of a body, as carried in the QStash `body` claim."""
    return base64.urlsafe_b64encode(hashlib.sha256(raw_body).digest()).decode("ascii").rstrip("=")


def verify_queue_signature(token: str, raw_body: bytes, url: str, signing_keys: list[str]) -> bool:
    """Verify an `Upstash-Signature` JWT.

    The token must be HS256-signed with the current or the next signing key,
    issued by Upstash, addressed to `url` (`sub` claim) and bound to the
    exact body (`body` claim).

    Args:
        token: Upstash-Signature header value
        raw_body: Raw request body bytes
        url: Public URL the message was published to
        signing_keys: Current and next signing keys

    Returns:
        True if any key verifies the token and all claims match
    """
    if not token or not signing_keys:
        return False

    for key in signing_keys:
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["HS256"],
                issuer=QSTASH_ISSUER,
                options={"require": ["iss", "sub", "exp", "nbf"]},
                leeway=5,
            )
        except jwt.InvalidTokenError as e:
            logger.debug("queue.signature.key_rejected", error=str(e))
            continue

        if claims.get("sub") != url:
            logger.warning("queue.signature.url_mismatch", expected=url, actual=claims.get("sub"))
            return False

        if not hmac.compare_digest(str(claims.get("body", "")).rstrip("="), body_digest(raw_body)):
            logger.warning("queue.signature.body_mismatch")
            return False

        return True

    return False
