from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from reconciler.api.deps import get_store, require_webhook_access
from reconciler.core.clock import utcnow
from reconciler.core.config import settings
from reconciler.core.rate_limit import limiter, webhook_rate_limit
from reconciler.services.store import PaymentStore
from reconciler.services.webhook import process_webhook

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/{provider}/webhook")
@limiter.limit(webhook_rate_limit)
async def provider_webhook(
    request: Request,
    provider: str = Depends(require_webhook_access),
    store: PaymentStore = Depends(get_store),
):
    """Bank-transfer notification from the gateway. 200 for every outcome once the guard has passed."""
    body = await request.body()
    return await run_in_threadpool(
        process_webhook,
        store,
        provider,
        body,
        headers=request.headers,
        settings=settings,
        now=utcnow(),
    )
