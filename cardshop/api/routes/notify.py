"""
Payment gateway notify endpoint. The gateway sends GET (query string) or
POST (form) and expects a plain-text "success" / "fail" body.
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from cardshop.api.deps import get_webhook_service
from cardshop.services.webhooks.service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["notify"])


def _respond(service: WebhookService, params: dict) -> PlainTextResponse:
    result = service.process_notify(params)
    return PlainTextResponse(result.token, status_code=result.status_code)


@router.get("/notify", response_class=PlainTextResponse)
def notify_get(request: Request, service: WebhookService = Depends(get_webhook_service)) -> PlainTextResponse:
    return _respond(service, dict(request.query_params))


@router.post("/notify", response_class=PlainTextResponse)
async def notify_post(request: Request, service: WebhookService = Depends(get_webhook_service)) -> PlainTextResponse:
    try:
        form = await request.form()
        params = {key: value for key, value in form.items() if isinstance(value, str)}
    except Exception:
        logger.exception("notify_form_parse_failed")
        return PlainTextResponse("error", status_code=500)
    if not params:
        params = dict(request.query_params)
    return await run_in_threadpool(_respond, service, params)
