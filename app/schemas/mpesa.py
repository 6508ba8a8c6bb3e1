"""M-Pesa STK push request/response and Daraja callback schemas."""
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field


class StkPushRequest(BaseModel):
    """Body of POST /api/mpesa/stk-push.

    Guests (no bearer token) register a new account and must send name, email and password.
    Logged-in users only send phone, amount and session_id. Required fields are checked by
    the activation workflow because they depend on which of the two modes applies.
    """
    phone: str | None = None
    amount: int | None = None
    session_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("session_id", "sessionId", "socketId"),
    )
    name: str | None = None
    email: EmailStr | None = None
    password: str | None = None


class StkPushResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = "STK Push initiated. Please check your phone to complete the payment."
    checkout_request_id: str = Field(alias="CheckoutRequestID")
    merchant_request_id: str = Field(alias="MerchantRequestID")


class StkCallbackItem(BaseModel):
    Name: str
    Value: Any = None


class StkCallbackMetadata(BaseModel):
    Item: list[StkCallbackItem] = []


class StkCallback(BaseModel):
    MerchantRequestID: str | None = None
    CheckoutRequestID: str
    ResultCode: int
    ResultDesc: str = ""
    CallbackMetadata: StkCallbackMetadata | None = None

    def metadata_value(self, name: str) -> Any:
        if not self.CallbackMetadata:
            return None
        for item in self.CallbackMetadata.Item:
            if item.Name == name:
                return item.Value
        return None


class CallbackBody(BaseModel):
    stkCallback: StkCallback


class CallbackEnvelope(BaseModel):
    """Daraja posts {"Body": {"stkCallback": {...}}} to the callback URL."""
    Body: CallbackBody


class CallbackAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Accepted"
