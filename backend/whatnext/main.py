import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from whatnext.api import curator, processing, queue, search, status
from whatnext.core.celery_app import celery_app  # noqa: F401  binds shared tasks
from whatnext.core.database import init_db
from whatnext.utils.logger import setup_logging

logger = logging.getLogger(__name__)

app = FastAPI(title="WhatNext Vectorize API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(search.router, tags=["Search"])
app.include_router(processing.router, tags=["Processing"])
app.include_router(curator.router, prefix="/curator", tags=["Curator"])
app.include_router(queue.router, tags=["Queue"])
app.include_router(status.router, tags=["Status"])


# Every error body is {"error": message}
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse(status_code=400, content={"error": "; ".join(messages) or "Invalid request"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}")
    return JSONResponse(status_code=500, content={"error": str(exc) or "Internal server error"})


@app.on_event("startup")
async def startup_event():
    setup_logging()
    await init_db()


@app.get("/")
def root():
    return {"status": "WhatNext Vectorize API Running"}
