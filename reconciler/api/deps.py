import logging

from fastapi import Depends, HTTPException, Request, status
from sqlmodel import Session

from reconciler.core.config import (
    get_enabled_providers,
    get_ip_allowlist,
    get_webhook_api_keys,
    settings,
)
from reconciler.core.database import get_db
from reconciler.core.security import (
    API_KEY_HEADERS,
    API_KEY_QUERY_PARAMS,
    api_key_matches,
    is_ip_allowed,
    parse_api_key,
)
from reconciler.services.store import PaymentStore

log = logging.getLogger("reconciler")


def get_store(db: Session = Depends(get_db)) -> PaymentStore:
    return PaymentStore(db)


def _provided_api_key(request: Request) -> str | None:
    for header in API_KEY_HEADERS:
        key = parse_api_key(request.headers.get(header))
        if key:
            return key
    if settings.webhook_allow_query_key:
        for param in API_KEY_QUERY_PARAMS:
            key = parse_api_key(request.query_params.get(param))
            if key:
                return key
    return None


def require_webhook_access(request: Request, provider: str) -> str:
    """
    Runs before the body is read. API key first (401), then the optional IP allow-list (403).
    request.client is the proxy-resolved client address (TrustedProxyHeadersMiddleware in main.py).
    Rejections go to the application log only; nothing is persisted for them.
    """
    provider = (provider or "").strip().lower()
    if provider not in get_enabled_providers():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown payment provider.")

    keys = get_webhook_api_keys()
    if not keys:
        log.error("Webhook API key is not configured (WEBHOOK_API_KEYS)")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook is not configured.")

    client_ip = request.client.host if request.client else None
    if not api_key_matches(_provided_api_key(request), keys):
        log.warning("Webhook rejected: reason=bad_api_key provider=%s ip=%s path=%s", provider, client_ip, request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Apikey"},
        )

    allowlist = get_ip_allowlist()
    if allowlist and not is_ip_allowed(client_ip, allowlist):
        log.warning("Webhook rejected: reason=ip_not_allowed provider=%s ip=%s path=%s", provider, client_ip, request.url.path)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return provider
