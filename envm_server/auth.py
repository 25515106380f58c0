"""
Webhook verification for the environment manager server.

GitHub signs the raw request body with HMAC-SHA256 (X-Hub-Signature-256),
GitLab echoes the shared secret (X-Gitlab-Token) and generic callers send
it as a bearer token. With no secret configured every request is accepted.
"""

import hashlib
import hmac

DEPLOY_BRANCHES = ("main", "master")


def compute_github_signature(secret: str, body: bytes) -> str:
    """
    Compute the X-Hub-Signature-256 header value for a payload.

    Example:
        >>> compute_github_signature("s3cret", b"{}")[:7]
        'sha256='
    """
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_github_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """
    Check a GitHub webhook signature against the raw request body.

    Args:
        secret: Shared webhook secret; empty disables verification
        body: Raw request body exactly as received
        signature: Value of the X-Hub-Signature-256 header

    Returns:
        True if the signature matches or verification is disabled
    """
    if not secret:
        return True
    if not signature or not signature.startswith("sha256="):
        return False
    return hmac.compare_digest(compute_github_signature(secret, body), signature)


def verify_gitlab_token(secret: str, token: str | None) -> bool:
    """Check the X-Gitlab-Token header."""
    if not secret:
        return True
    return token is not None and hmac.compare_digest(secret, token)


def verify_bearer_token(secret: str, authorization: str | None) -> bool:
    """Check an "Authorization: Bearer <secret>" header."""
    if not secret:
        return True
    if not authorization:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return False
    return hmac.compare_digest(secret, token.strip())


def is_deploy_ref(ref: str | None, branch: str = "main") -> bool:
    """
    Whether a pushed ref should trigger a sync.

    Pushes to main, master or the configured branch count; tags and other
    branches are ignored.
    """
    if not ref or not ref.startswith("refs/heads/"):
        return False
    name = ref[len("refs/heads/"):]
    return name in DEPLOY_BRANCHES or name == branch
