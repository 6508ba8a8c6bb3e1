"""Payment-gated account activation.

Initiation: validate the request, send an STK push through Daraja and remember the
request under its CheckoutRequestID. Completion: when Daraja calls back, take the pending
entry, create or activate the user and tell the waiting browser session over WebSocket.

    INITIATED --(provider accepts)--> PENDING --(callback, ResultCode=0)--> ACTIVATED
                                            \\--(callback, ResultCode!=0)--> FAILED
    PENDING --(TTL expiry, no callback)--> ABANDONED

Nothing is stored unless Daraja accepted the push. Once the callback has taken an entry,
a repeated callback for the same request finds nothing and is a no-op.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.models.user import User
from app.schemas.mpesa import StkCallback, StkPushRequest
from app.services.auth import get_password_hash
from app.services.daraja import DarajaClient, PushPaymentResult, normalize_phone
from app.services.exceptions import (
    DuplicateAccount,
    InvalidInput,
    PostPaymentPersistenceFailure,
    UnknownCallback,
)
from app.services.pending_store import (
    AccountDraft,
    ActivationMode,
    PendingActivation,
    PendingActivationStore,
)
from app.services.realtime import (
    EVENT_PAYMENT_FAILURE,
    EVENT_PAYMENT_SUCCESS,
    EVENT_REGISTRATION_FAILURE,
    EVENT_REGISTRATION_SUCCESS,
    ConnectionManager,
)

log = logging.getLogger("uvicorn.error")

NEW_ACCOUNT_FIELDS = ("name", "email", "password", "phone", "amount", "session_id")
EXISTING_ACCOUNT_FIELDS = ("phone", "amount", "session_id")


class ActivationState(str, enum.Enum):
    activated = "activated"
    failed = "failed"


@dataclass(frozen=True)
class ActivationOutcome:
    request_id: str
    state: ActivationState
    event: str | None = None


def account_reference(email: str) -> str:
    return f"BT-{email.split('@')[0]}"


def _missing(data: StkPushRequest, fields: tuple[str, ...]) -> list[str]:
    missing = []
    for name in fields:
        value = getattr(data, name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def _validate(data: StkPushRequest, fields: tuple[str, ...]) -> None:
    missing = _missing(data, fields)
    if missing:
        raise InvalidInput(f"Missing required fields: {', '.join(missing)}.")
    if data.amount is not None and data.amount <= 0:
        raise InvalidInput("Amount must be greater than zero.")


def _find_user_by_email(db: Session, email: str) -> User | None:
    return db.query(User).filter(User.email == email).first()


def _activate_user(db: Session, pending: PendingActivation) -> str:
    """Create (new account) or load the user, set has_paid and commit. Returns the email."""
    try:
        if pending.is_new_account:
            draft = pending.account_draft
            user = _find_user_by_email(db, draft.email)
            if not user:
                user = User(
                    name=draft.name,
                    email=draft.email,
                    hashed_password=get_password_hash(draft.password),
                    phone=draft.phone,
                )
                db.add(user)
                log.info("[DB] Creating user %s after payment", draft.email)
        else:
            user = db.query(User).filter(User.id == pending.user_id).first()
            if not user:
                raise PostPaymentPersistenceFailure(f"User with ID {pending.user_id} not found for payment update.")
        user.has_paid = True
        db.commit()
        return user.email
    except PostPaymentPersistenceFailure:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        raise PostPaymentPersistenceFailure(f"{type(e).__name__}: {e}") from e


class ActivationWorkflow:
    def __init__(self, client: DarajaClient, store: PendingActivationStore, notifier: ConnectionManager):
        self.client = client
        self.store = store
        self.notifier = notifier

    async def initiate(self, db: Session, data: StkPushRequest, current_user: User | None = None) -> PushPaymentResult:
        """Send the STK push and register the pending activation.

        Guests register a new account; a logged-in user pays to activate the account they have.
        Raises InvalidInput, DuplicateAccount, AuthFailure or PushPaymentFailure; in every
        failure case nothing is stored.
        """
        if current_user is None:
            _validate(data, NEW_ACCOUNT_FIELDS)
            email = data.email.strip().lower()
            existing = await run_in_threadpool(_find_user_by_email, db, email)
            if existing and existing.has_paid:
                raise DuplicateAccount("An active account with this email already exists. Please log in.")
            phone = normalize_phone(data.phone)
            draft = AccountDraft(name=data.name.strip(), email=email, password=data.password, phone=phone)
            mode, user_id = ActivationMode.new_account, None
        else:
            _validate(data, EXISTING_ACCOUNT_FIELDS)
            email = current_user.email
            draft = None
            mode, user_id = ActivationMode.existing_account, current_user.id

        log.info("[STK Initiate] Request for %s with phone %s (%s)", email, data.phone, mode.value)
        result = await self.client.initiate_push_payment(data.phone, data.amount, reference=account_reference(email))

        pending = PendingActivation(
            request_id=result.request_id,
            session_id=data.session_id.strip(),
            mode=mode,
            account_draft=draft,
            user_id=user_id,
        )
        await self.store.put(result.request_id, pending)
        log.info("[STK Initiate] Stored pending activation for CheckoutRequestID: %s", result.request_id)
        return result

    async def complete(self, db: Session, callback: StkCallback) -> ActivationOutcome:
        """Handle a Daraja callback.

        Raises UnknownCallback when no pending activation exists (late, duplicate or garbled
        request id). Failed payments and activation errors are reported to the session, not raised.
        """
        request_id = callback.CheckoutRequestID
        pending = await self.store.take(request_id)
        if pending is None:
            raise UnknownCallback(f"No pending activation for CheckoutRequestID {request_id}. Might be late or invalid.")

        if callback.ResultCode != 0:
            log.info(
                "[Callback] Payment failed for %s. ResultCode: %s, ResultDesc: %s",
                request_id,
                callback.ResultCode,
                callback.ResultDesc,
            )
            event = EVENT_REGISTRATION_FAILURE if pending.is_new_account else EVENT_PAYMENT_FAILURE
            await self.notifier.emit(
                pending.session_id,
                event,
                {"message": f"Payment not successful: {callback.ResultDesc}"},
            )
            return ActivationOutcome(request_id, ActivationState.failed, event)

        receipt = callback.metadata_value("MpesaReceiptNumber")
        log.info("[Callback] Payment successful for %s (receipt=%s)", request_id, receipt)
        try:
            email = await run_in_threadpool(_activate_user, db, pending)
        except PostPaymentPersistenceFailure as e:
            # Money was taken but the account is not active; needs manual follow-up
            log.error(
                "[Callback] INCIDENT payment succeeded but activation failed: request=%s receipt=%s mode=%s user_id=%s email=%s error=%s",
                request_id,
                receipt,
                pending.mode.value,
                pending.user_id,
                pending.account_draft.email if pending.account_draft else None,
                e.message,
            )
            await self.notifier.emit(
                pending.session_id,
                EVENT_PAYMENT_FAILURE,
                {"message": "Payment successful, but we could not activate your account. Please contact support."},
            )
            return ActivationOutcome(request_id, ActivationState.failed, EVENT_PAYMENT_FAILURE)

        log.info("[DB] User %s is now marked as paid.", email)
        if pending.is_new_account:
            event = EVENT_REGISTRATION_SUCCESS
            message = "Payment successful! Your account has been created. You can now log in."
        else:
            event = EVENT_PAYMENT_SUCCESS
            message = "Payment successful! Your account is now active."
        await self.notifier.emit(pending.session_id, event, {"message": message, "email": email})
        return ActivationOutcome(request_id, ActivationState.activated, event)
