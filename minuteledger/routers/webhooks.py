"""
Billing webhook endpoint.

Receives signed payment-provider deliveries. The raw body is verified before
any JSON parsing so the signature covers exactly the bytes received.

Responses:
- 200 {"event": kind}: processed, ignored or already processed
- 400: missing/invalid signature, stale timestamp, malformed payload
- 500: handler failure (provider redelivers)
"""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from minuteledger.billing.dispatcher import EventDispatcher, HandlerFailure
from minuteledger.config import Settings
from minuteledger.observability.logging import get_logger
from minuteledger.observability.metrics import track_signature_rejection
from minuteledger.webhooks.errors import WebhookError
from minuteledger.webhooks.signing import SignatureVerifier

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def get_verifier(request: Request) -> SignatureVerifier:
    return request.app.state.signature_verifier


def get_dispatcher(request: Request) -> EventDispatcher:
    return request.app.state.dispatcher


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


@router.post("/billing", status_code=status.HTTP_200_OK)
async def receive_billing_webhook(
    request: Request,
    verifier: SignatureVerifier = Depends(get_verifier),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_app_settings),
):
    """
    Verify, decode and dispatch one provider event.

    Returns:
        JSONResponse: {"event": kind} on success, {"detail": ...} otherwise
    """
    payload = await request.body()
    signature = request.headers.get(settings.stripe.signature_header)

    try:
        event = verifier.verify(payload, signature)
    except WebhookError as e:
        track_signature_rejection(e.reason)
        logger.warning(
            "Webhook rejected",
            reason=e.reason,
            error=str(e),
            body_size=len(payload),
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "Invalid webhook", "reason": e.reason},
        )

    try:
        result = await dispatcher.dispatch(event)
    except HandlerFailure as e:
        logger.error(
            "Webhook processing failed",
            event_id=event.event_id,
            event_type=event.provider_type,
            error=str(e),
        )
        content = {"detail": "Webhook processing failed"}
        if not settings.logging.is_production:
            content["error"] = str(e)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=content,
        )

    return {"event": result.kind.value}
