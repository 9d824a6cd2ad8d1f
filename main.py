import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from http import HTTPStatus

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from database import connect
from errors import InferenceError, PayloadTooLarge, ServiceError
from inference import load_model
from intake import open_form, read_upload, select_image, validate_upload
from recorder import record_prediction
from schemas import ErrorResponse, HealthResponse, PredictResponse

logger = logging.getLogger("uvicorn.error")


def handle_unhandled_fault(loop, context):
    """Loop exception handler for failures nobody awaited: log, then exit."""
    exc = context.get("exception")
    logger.critical("Unhandled fault: %s", context.get("message"), exc_info=exc)
    os._exit(1)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # Both raise StartupError; uvicorn then exits without serving
    app.state.model = load_model(config.MODEL_URL)
    app.state.store = connect()
    app.state.limiter = (
        asyncio.Semaphore(config.MAX_CONCURRENT_PREDICTIONS) if config.MAX_CONCURRENT_PREDICTIONS > 0 else None
    )

    loop = asyncio.get_running_loop()
    previous_handler = loop.get_exception_handler()
    loop.set_exception_handler(handle_unhandled_fault)
    logger.info("Server running on http://%s:%s", config.HOST, config.PORT)
    try:
        yield
    finally:
        loop.set_exception_handler(previous_handler)
        app.state.store.close()


app = FastAPI(title="Cancer Prediction API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(status_code: int, status: str, message: str, data=None, headers=None) -> JSONResponse:
    body = ErrorResponse(status=status, message=message, data=data).model_dump(exclude_none=True)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def too_large() -> PayloadTooLarge:
    return PayloadTooLarge(f"Image exceeds the maximum upload size of {config.MAX_UPLOAD_BYTES} bytes")


class BodySizeLimitMiddleware:
    """Reject bodies over the upload ceiling plus multipart framing.

    A declared ``Content-Length`` is checked up front; chunked bodies are
    counted as they arrive and the read fails with ``PayloadTooLarge`` as soon
    as the count passes the limit.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        limit = config.MAX_UPLOAD_BYTES + config.MULTIPART_OVERHEAD_BYTES
        length = Headers(scope=scope).get("content-length")
        if length and length.isdigit() and int(length) > limit:
            logger.warning("Rejected %s %s: body of %s bytes", scope["method"], scope["path"], length)
            exc = too_large()
            response = error_response(exc.status_code, exc.status, exc.message)
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    logger.warning("Rejected %s %s: streamed body over %d bytes", scope["method"], scope["path"], limit)
                    raise too_large()
            return message

        await self.app(scope, limited_receive, send)


app.add_middleware(BodySizeLimitMiddleware)


@app.middleware("http")
async def log_request(request: Request, call_next):
    logger.info("Request received: %s %s", request.method, request.url.path)
    return await call_next(request)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if isinstance(exc, InferenceError):
        # Cause stays in the log
        logger.error("Error during prediction: %s", exc.message, exc_info=exc)
        return error_response(exc.status_code, exc.status, exc.CLIENT_MESSAGE)
    return error_response(exc.status_code, exc.status, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.detail)
    message = str(exc.detail)
    payload = {"statusCode": exc.status_code, "error": HTTPStatus(exc.status_code).phrase, "message": message}
    return error_response(exc.status_code, "error", message, data=payload, headers=exc.headers)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unexpected error on %s %s", request.method, request.url.path)
    return error_response(500, "error", "An unexpected error occurred.")


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse()


def admission(request: Request):
    limiter = getattr(request.app.state, "limiter", None)
    return limiter if limiter is not None else contextlib.nullcontext()


async def run_prediction(model, store, content: bytes):
    prob = await model.apredict(content)
    return await record_prediction(store, prob)


@app.post(
    "/predict",
    response_model=PredictResponse,
    responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    openapi_extra={
        "requestBody": {
            "content": {
                "multipart/form-data": {
                    "schema": {"type": "object", "properties": {"image": {"type": "string", "format": "binary"}}}
                }
            }
        }
    },
)
async def predict(request: Request):
    async with open_form(request) as form:
        image = validate_upload(select_image(form))
        content = await read_upload(image, limit=config.MAX_UPLOAD_BYTES)

    if await request.is_disconnected():
        raise InferenceError("Client disconnected before inference")

    model = request.app.state.model
    store = request.app.state.store
    async with admission(request):
        try:
            record = await asyncio.wait_for(run_prediction(model, store, content), timeout=config.PREDICT_TIMEOUT)
        except asyncio.TimeoutError as e:
            raise InferenceError(f"Prediction timed out after {config.PREDICT_TIMEOUT}s") from e

    return PredictResponse(data=record)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
