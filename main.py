import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi_utilities import repeat_every

from config import (
    CODE_LENGTH,
    CODE_TTL_SECONDS,
    CORS_ORIGINS,
    DEBUG_LOG_CODES,
    EXPIRED_CODE_CLEANUP_INTERVAL_SECONDS,
    HTTP_HOST,
    HTTP_PORT,
    SMTP_HOST,
    SMTP_PORT,
)
from models import (
    ActiveCode,
    ActiveCodesResponse,
    HealthResponse,
    RequestCodeRequest,
    RequestCodeResponse,
    ValidateCodeRequest,
    ValidateCodeResponse,
)
from services.email_service import Notifier, SMTPCodeMailer, deliver_code
from services.mail_intake import DoorCodeHandler, start_mail_intake
from services.network import bind_tcp_socket, describe_bind_error
from services.otp_service import CodeStore, verify_submitted_code

# Config logging
logger = logging.getLogger("email_support_api")
logger.setLevel(logging.DEBUG if DEBUG_LOG_CODES else logging.INFO)

handler = logging.StreamHandler()
formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s")

handler.setFormatter(formatter)
logger.addHandler(handler)


def schedule_expired_code_cleanup(store: CodeStore):
    # cron job to clean up expired codes, independent of request traffic
    @repeat_every(seconds=EXPIRED_CODE_CLEANUP_INTERVAL_SECONDS, logger=logger)
    def clear_expired_codes():
        store.sweep()

    return clear_expired_codes


# Start the sweeper and the mail listener alongside the API
@asynccontextmanager
async def lifespan(app: FastAPI):
    store: CodeStore = app.state.code_store

    logger.info("unfunctional - Level 4 Email Support Server")
    logger.info(f"Code TTL: {store.ttl_seconds} seconds")
    logger.info(f"Debug logging: {app.state.debug}")
    if app.state.debug:
        logger.warning(
            "DEBUG_LOG_CODES is on: /api/active-codes and /api/request-code expose "
            "live door codes. Never enable this outside a test deployment."
        )

    # repeat_every hands back no task; keep the one it spawns so shutdown can cancel it
    running = asyncio.all_tasks()
    await schedule_expired_code_cleanup(store)()
    sweepers = asyncio.all_tasks() - running

    app.state.mail_server = None
    if app.state.mail_listener:
        intake = DoorCodeHandler(store, app.state.notifier)
        try:
            app.state.mail_server = await start_mail_intake(intake, SMTP_HOST, SMTP_PORT)
        except OSError as e:
            logger.error(describe_bind_error("SMTP", SMTP_PORT, "SMTP_PORT", e))

    try:
        yield
    finally:
        if app.state.mail_server is not None:
            app.state.mail_server.close()

        for task in sweepers:
            task.cancel()
        await asyncio.gather(*sweepers, return_exceptions=True)


def get_store(request: Request) -> CodeStore:
    return request.app.state.code_store


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def is_debug(request: Request) -> bool:
    return request.app.state.debug


router = APIRouter()


@router.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Health check",
)
async def health(request: Request, store: CodeStore = Depends(get_store)):
    return HealthResponse(
        status="ok",
        activeCodes=len(store),
        uptimeSeconds=int(time.monotonic() - request.app.state.started_at),
    )


@router.post(
    "/api/request-code",
    response_model=RequestCodeResponse,
    response_model_exclude_none=True,
    tags=["Codes"],
    summary="Request a door code",
    description="Generate a new door code. If an email address is given, "
    "the code is also mailed to it in the background. "
    "The code itself is only returned in debug mode.",
    responses={
        200: {"description": "A code was generated"},
        400: {"description": "The email address is malformed"},
    },
)
async def request_code(
    background_tasks: BackgroundTasks,
    request: RequestCodeRequest | None = None,
    store: CodeStore = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
    debug: bool = Depends(is_debug),
):
    email = request.email.lower().strip() if request and request.email else None

    if email is not None and "@" not in email:
        logger.warning(f"Rejected code request due to invalid email format: {email}")
        raise HTTPException(400, "Invalid email")

    code = store.issue(email or "in-game-request")

    if email:
        background_tasks.add_task(deliver_code, notifier, store, email, code)

    return RequestCodeResponse(
        message="Rodney sent you the code. Check your email." if email else "Code generated.",
        expiresIn=store.ttl_seconds,
        code=code if debug else None,
    )


@router.post(
    "/api/validate",
    response_model=ValidateCodeResponse,
    tags=["Codes"],
    summary="Validate a door code",
    description="Check a code submitted on the keypad. A valid code is consumed. "
    "Any body is answered with a result: unreadable JSON or a code of the "
    "wrong shape is rejected like a code of the wrong length.",
    openapi_extra={
        "requestBody": {
            "content": {
                "application/json": {"schema": ValidateCodeRequest.model_json_schema()}
            },
            "required": False,
        }
    },
)
async def validate_code(
    request: Request,
    store: CodeStore = Depends(get_store),
    debug: bool = Depends(is_debug),
):
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    body = ValidateCodeRequest.model_validate(payload if isinstance(payload, dict) else {})
    submitted = "" if body.code is None else str(body.code)
    check = verify_submitted_code(store, submitted)

    shown = submitted.strip() if debug else "<redacted>"
    if check.valid:
        logger.info(f"Code {shown} validated successfully")
    else:
        logger.info(f"Code {shown} rejected: {check.reason}")

    return ValidateCodeResponse(valid=check.valid, message=check.message)


debug_router = APIRouter(prefix="/api")


@debug_router.get(
    "/active-codes",
    response_model=ActiveCodesResponse,
    tags=["Debug"],
    summary="List active codes (debug only)",
)
async def active_codes(store: CodeStore = Depends(get_store)):
    return ActiveCodesResponse(
        codes=[
            ActiveCode(
                code=entry.code,
                senderEmail=entry.requester,
                remainingSeconds=remaining,
            )
            for entry, remaining in store.active()
        ]
    )


def create_app(
    store: CodeStore | None = None,
    notifier: Notifier | None = None,
    debug: bool = DEBUG_LOG_CODES,
    mail_listener: bool = True,
) -> FastAPI:
    app = FastAPI(
        title="Email Support Server",
        description="Door code delivery and validation for the Level 4 keypad puzzle",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if store is None:
        store = CodeStore(
            ttl_seconds=CODE_TTL_SECONDS, code_length=CODE_LENGTH, log_codes=debug
        )
    if notifier is None:
        notifier = SMTPCodeMailer()

    app.state.code_store = store
    app.state.notifier = notifier
    app.state.debug = debug
    app.state.mail_listener = mail_listener
    app.state.mail_server = None
    app.state.started_at = time.monotonic()

    app.include_router(router)
    # Lists live codes in plaintext, so it only exists in debug mode
    if debug:
        app.include_router(debug_router)

    return app


app = create_app()


async def serve(app: FastAPI = app) -> int:
    """Run both listeners; either one failing to bind leaves the other running."""
    if isinstance(app.state.notifier, SMTPCodeMailer):
        logger.info(f"Outbound via {app.state.notifier.describe()}")

    try:
        sock = bind_tcp_socket(HTTP_HOST, HTTP_PORT)
    except OSError as e:
        logger.error(describe_bind_error("HTTP", HTTP_PORT, "HTTP_PORT", e))
        async with lifespan(app):
            if app.state.mail_server is None:
                logger.error("Neither listener could be started")
                return 1
            await app.state.mail_server.serve_forever()
        return 0

    logger.info(f"API server listening on port {HTTP_PORT}")
    logger.info("Endpoints:")
    logger.info("  POST /api/request-code  - generate a new code")
    logger.info("  POST /api/validate      - validate a code")
    logger.info("  GET  /health            - health check")
    if app.state.debug:
        logger.info("  GET  /api/active-codes  - list active codes (debug)")

    server = uvicorn.Server(uvicorn.Config(app, log_config=None))
    await server.serve(sockets=[sock])
    return 0


def run():
    sys.exit(asyncio.run(serve()))


if __name__ == "__main__":
    run()
