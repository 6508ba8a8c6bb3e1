from app.schemas.auth import Token, UserLogin, UserResponse
from app.schemas.mpesa import CallbackAck, CallbackEnvelope, StkCallback, StkPushRequest, StkPushResponse
