import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .client import MessageMedia, WhatsAppWebClient
from .config import APP_NAME, DEFAULT_API_KEY, VERSION, Settings
from .errors import (
    AuthError,
    GatewayError,
    LogoutFailure,
    NotConnectedError,
    SendFailure,
    ValidationError,
)
from .logs import json_log, setup_logging
from .session import ReconnectPolicy, SessionManager
from .utils import normalize_phone

NOT_REGISTERED = "Number not registered on WhatsApp"
MISSING_FIELDS = "Phone and message required"

router = APIRouter()


class SendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    phone: Optional[str] = None
    message: Optional[str] = None
    media_url: Optional[str] = Field(default=None, alias="mediaUrl")
    media_type: Optional[str] = Field(default=None, alias="mediaType")
    filename: Optional[str] = None

    @field_validator("phone", "message", mode="before")
    @classmethod
    def _numbers_as_text(cls, v: Any) -> Any:
        # Callers often post phone numbers as JSON numbers; 5551234567.0 is 5551234567
        if isinstance(v, float) and v.is_integer():
            return str(int(v))
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


def get_session(request: Request) -> SessionManager:
    return request.app.state.session


def check_auth(request: Request) -> None:
    expected = request.app.state.settings.api_key
    if request.headers.get("x-api-key") != expected:
        raise AuthError()


async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(exc.to_json(), status_code=exc.status_code)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# Health check (for uptime monitors)
@router.get("/")
async def root(session: SessionManager = Depends(get_session)):
    return {
        "status": "ok",
        "service": APP_NAME,
        "connected": session.is_ready,
        "timestamp": _utc_timestamp(),
    }


@router.head("/")
async def root_head():
    return Response(status_code=200)


@router.get("/api/status", dependencies=[Depends(check_auth)])
async def status(session: SessionManager = Depends(get_session)):
    return {"connected": session.is_ready, "hasQR": session.has_qr}


@router.get("/api/qr", dependencies=[Depends(check_auth)])
async def qr(session: SessionManager = Depends(get_session)):
    if session.is_ready:
        return {"connected": True, "qr": None}
    return {"connected": False, "qr": session.qr_image}


@router.post("/api/send", dependencies=[Depends(check_auth)])
async def send(request: Request, session: SessionManager = Depends(get_session)):
    if not session.is_ready:
        raise NotConnectedError()

    try:
        body = await request.json()
    except Exception:
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError(MISSING_FIELDS)
    try:
        req = SendRequest.model_validate(body)
    except PydanticValidationError:
        raise ValidationError(MISSING_FIELDS)
    if not req.phone or not req.message:
        raise ValidationError(MISSING_FIELDS)

    # Echo whatever the caller sent, not the normalized chat id
    phone = body.get("phone")
    chat_id = normalize_phone(req.phone)
    try:
        # The client may have been replaced since the check above
        client = session.require_client()
        if not await client.is_registered_user(chat_id):
            return SendFailure(NOT_REGISTERED, phone).to_json()

        if req.media_url:
            media = await MessageMedia.from_url(req.media_url, mimetype=req.media_type, filename=req.filename)
            await client.send_message(chat_id, media, caption=req.message)
        else:
            await client.send_message(chat_id, req.message)
    except Exception as e:
        json_log("send_error", level=logging.ERROR, chat_id=chat_id, error=str(e))
        return SendFailure(str(e) or e.__class__.__name__, phone).to_json()

    json_log("send_ok", chat_id=chat_id, media=bool(req.media_url))
    return {"success": True, "phone": phone}


@router.post("/api/logout", dependencies=[Depends(check_auth)])
async def logout(session: SessionManager = Depends(get_session)):
    try:
        await session.logout()
    except Exception as e:
        json_log("logout_error", level=logging.ERROR, error=str(e))
        raise LogoutFailure(str(e) or e.__class__.__name__)
    return {"success": True}


def build_client(settings: Settings) -> WhatsAppWebClient:
    return WhatsAppWebClient(
        auth_dir=settings.auth_dir,
        client_id=settings.client_id,
        headless=settings.headless,
        browser_args=settings.browser_args,
        timeout_ms=settings.timeout_ms,
    )


def create_app(settings: Optional[Settings] = None, session: Optional[SessionManager] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)
    if session is None:
        session = SessionManager(
            client_factory=lambda: build_client(settings),
            policy=ReconnectPolicy.from_settings(settings),
        )

    app = FastAPI(title=APP_NAME, version=VERSION)
    app.state.settings = settings
    app.state.session = session

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(GatewayError, _gateway_error)
    app.include_router(router)

    @app.on_event("startup")
    async def on_startup():
        json_log("startup", version=VERSION, settings=settings.to_json())
        if settings.api_key == DEFAULT_API_KEY:
            json_log("default_api_key_in_use", level=logging.WARNING)
        session.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        json_log("shutdown")
        await session.stop()

    return app


app = create_app()


def run():
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "whatsapp_gateway.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
