import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rentledger.config import settings
from rentledger.db import init_models
from rentledger.errors import LedgerError
from rentledger.middleware import RequestIdMiddleware
from rentledger.routers import orders, payments, reports
from rentledger.schemas.common import ErrorOut

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Rentledger API", version="0.1.0")

@app.on_event("startup")
async def init_db():
    await init_models()

@app.exception_handler(LedgerError)
async def ledger_error(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=ErrorOut(**exc.to_dict()).model_dump())

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(reports.router)

@app.get("/healthz")
def healthz():
    return {"ok": True}
