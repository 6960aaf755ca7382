import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .config import LOG_FORMAT, LOG_LEVEL
from .db import init_db
from .errors import CeremonyError, ValidationError
from .routers import envelopes, signing

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

app = FastAPI(title="Envelope Ceremony API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def on_startup():
    init_db()

@app.exception_handler(CeremonyError)
def ceremony_error_handler(request: Request, exc: CeremonyError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    body = {"detail": exc.detail, "code": exc.code}
    if isinstance(exc, ValidationError) and exc.problems:
        body["problems"] = exc.problems
    return JSONResponse(status_code=exc.status_code, content=body)

app.include_router(envelopes.router, prefix="/api/envelopes", tags=["envelopes"])
app.include_router(signing.router, prefix="/api/sign", tags=["signing"])

@app.get("/")
def root():
    return {"ok": True, "service": "ceremony-api"}
