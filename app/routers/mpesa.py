"""M-Pesa STK push: pay to register (guest) or to activate an existing account."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.database import get_db
from app.dependencies import get_activation_workflow, get_optional_user
from app.models.user import User
from app.schemas.mpesa import CallbackAck, CallbackEnvelope, StkPushRequest, StkPushResponse
from app.services.activation import ActivationWorkflow
from app.services.exceptions import (
    AuthFailure,
    DuplicateAccount,
    InvalidInput,
    PushPaymentFailure,
    UnknownCallback,
)

router = APIRouter(prefix="/api/mpesa", tags=["mpesa"])
log = logging.getLogger("uvicorn.error")


@router.post("/stk-push", response_model=StkPushResponse)
async def stk_push(
    data: StkPushRequest,
    db: Session = Depends(get_db),
    current_user: User | None = Depends(get_optional_user),
    workflow: ActivationWorkflow = Depends(get_activation_workflow),
):
    """
    Initiate an M-Pesa STK push.
    1. Guest (no token): registers a new account; requires name, email, password, phone, amount, session_id.
    2. Logged-in user: activates the current account; requires phone, amount, session_id.
    The account is created/activated only when Daraja confirms the payment via /callback,
    and the result is pushed to the WebSocket session identified by session_id.
    """
    try:
        result = await workflow.initiate(db, data, current_user)
    except (InvalidInput, DuplicateAccount) as e:
        raise HTTPException(status_code=400, detail=e.message)
    except (AuthFailure, PushPaymentFailure) as e:
        log.error("[STK Initiate] %s: %s", type(e).__name__, e.message)
        raise HTTPException(status_code=500, detail=e.message or "Failed to initiate STK Push. Please try again.")
    return StkPushResponse(
        checkout_request_id=result.request_id,
        merchant_request_id=result.merchant_request_id,
    )


@router.post("/callback", response_model=CallbackAck)
async def mpesa_callback(
    request: Request,
    db: Session = Depends(get_db),
    workflow: ActivationWorkflow = Depends(get_activation_workflow),
):
    """
    Called by Safaricom Daraja after a payment attempt.
    Always acknowledged with ResultCode 0, otherwise Daraja keeps retrying.
    """
    allowed = get_settings().callback_allowed_ips
    client_ip = request.client.host if request.client else None
    if allowed and client_ip not in allowed:
        log.warning("[Callback] Ignored callback from non-allowed address %s", client_ip)
        return CallbackAck()

    try:
        envelope = CallbackEnvelope.model_validate(await request.json())
    except (ValueError, ValidationError) as e:
        log.error("[Callback] Malformed callback body: %s", e)
        return CallbackAck()

    callback = envelope.Body.stkCallback
    log.info(
        "[Callback] Received CheckoutRequestID=%s ResultCode=%s ResultDesc=%s",
        callback.CheckoutRequestID,
        callback.ResultCode,
        callback.ResultDesc,
    )
    try:
        outcome = await workflow.complete(db, callback)
    except UnknownCallback as e:
        log.warning("[Callback] %s", e.message)
        return CallbackAck()
    except Exception:
        log.exception("[Callback] Processing failed for %s", callback.CheckoutRequestID)
        return CallbackAck()
    log.info("[Callback] %s -> %s (%s)", outcome.request_id, outcome.state.value, outcome.event)
    return CallbackAck()
