"""
app.py  -  PGPSeal HTTP trigger
==============================
Endpoints:

  POST /api/PGPEncryptAndSign   body = raw bytes to protect
                                200 -> OpenPGP message (armored by default)
                                400 -> missing key configuration / bad key
                                413 -> body larger than max_body_bytes
                                500 -> unexpected cryptographic failure or
                                       unreadable service configuration

  GET  /api/health              liveness check

Function-key authorisation is enforced by the hosting platform in front of
this app and is not reimplemented here.

Run locally:  python app.py   (or: uvicorn app:app)
"""

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse, Response

from pgpseal.config import Settings, load_settings
from pgpseal.errors import ConfigurationError, PGPError
from pgpseal.orchestrator import EncryptAndSignRequest

logger = logging.getLogger(__name__)

FUNCTION_NAME = "PGPEncryptAndSign"
MESSAGE_MEDIA_TYPE = "application/pgp-encrypted"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_settings() -> Settings:
    """Resolve configuration for the current request."""
    return load_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging once at startup, whichever server runs the app."""
    problem = None
    try:
        level = load_settings().log_level
    except ConfigurationError as exc:
        # Requests report the bad configuration themselves
        level, problem = "INFO", exc
    configure_logging(level)
    if problem is not None:
        logger.error("Invalid service configuration: %s", problem)
    logger.info("PGPSeal starting (log level %s)", level)
    yield


app = FastAPI(
    title="PGPSeal",
    description="Encrypt and sign request content as an OpenPGP message",
    version="1.0.0",
    lifespan=lifespan,
)


class BodyTooLarge(Exception):
    pass


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    # Only reached when settings themselves cannot be resolved
    logger.error("Invalid service configuration: %s", exc)
    return PlainTextResponse(str(exc), status_code=500)


async def _read_body(request: Request, limit: int) -> bytes:
    body = bytearray()
    async for chunk in request.stream():
        body += chunk
        if len(body) > limit:
            raise BodyTooLarge()
    return bytes(body)


@app.post(f"/api/{FUNCTION_NAME}")
async def pgp_encrypt_and_sign(request: Request, settings: Settings = Depends(get_settings)):
    logger.info("HTTP trigger function %s processed a request.", FUNCTION_NAME)

    try:
        body = await _read_body(request, settings.max_body_bytes)
    except BodyTooLarge:
        logger.warning("Rejected request body larger than %d bytes", settings.max_body_bytes)
        return PlainTextResponse(
            f"Request body exceeds the limit of {settings.max_body_bytes} bytes",
            status_code=413,
        )

    flow = EncryptAndSignRequest(settings, body)
    try:
        message = await run_in_threadpool(flow.run)
    except ConfigurationError as exc:
        logger.warning("Configuration incomplete: %s", exc)
        return PlainTextResponse(str(exc), status_code=400)
    except PGPError as exc:
        if exc.client_error:
            logger.warning("Rejected request: %s", exc)
            return PlainTextResponse(str(exc), status_code=400)
        logger.exception("Encrypt-and-sign failed")
        return PlainTextResponse(str(exc), status_code=500)

    return Response(content=message, media_type=MESSAGE_MEDIA_TYPE)


@app.get("/api/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(
        app,
        host=os.environ.get("PGPSEAL_HOST", "0.0.0.0"),
        port=int(os.environ.get("PGPSEAL_PORT", "7071")),
    )
