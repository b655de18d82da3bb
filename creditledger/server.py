import logging
import os

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from creditledger.api.accounts import router as accounts_router
from creditledger.api.credits import router as credits_router
from creditledger.api.root import router as root_router
from creditledger.api.usage import router as usage_router
from creditledger.api.webhooks import router as webhooks_router
from creditledger.core.config import CORS_ORIGINS
from creditledger.core.database import engine, init_models
from creditledger.core.errors import (
    AccountNotFound,
    ConcurrentModification,
    InvalidAdjustment,
    InvalidCoupon,
    OverageUnavailable,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Usage Credit Ledger")

# ================== ERRORS ==================

@app.exception_handler(OverageUnavailable)
async def overage_unavailable_handler(request: Request, exc: OverageUnavailable):
    message = str(exc)
    if exc.reason == "no_payment_method":
        message = "Add a payment method to keep generating once your credits run out."
    elif exc.reason in {"payment_check_timeout", "payment_provider_error"}:
        message = "Payment provider is unavailable right now. Please try again shortly."
    return JSONResponse(
        status_code=402,
        content={"error": "overage_unavailable", "message": message, "reason": exc.reason},
    )


@app.exception_handler(InvalidAdjustment)
async def invalid_adjustment_handler(request: Request, exc: InvalidAdjustment):
    if isinstance(exc, InvalidCoupon):
        return JSONResponse(
            status_code=400,
            content={"error": exc.error, "message": str(exc), "code": exc.code},
        )
    return JSONResponse(status_code=422, content={"error": "invalid_adjustment", "message": str(exc)})


@app.exception_handler(AccountNotFound)
async def account_not_found_handler(request: Request, exc: AccountNotFound):
    return JSONResponse(status_code=404, content={"error": "account_not_found", "message": str(exc)})


@app.exception_handler(ConcurrentModification)
async def concurrent_modification_handler(request: Request, exc: ConcurrentModification):
    logger.error("Ledger contention on %s after %d attempts", exc.account_id, exc.attempts)
    return JSONResponse(status_code=409, content={"error": "concurrent_modification", "message": str(exc)})

# ================== ROUTERS ==================

app.include_router(root_router)
app.include_router(usage_router)
app.include_router(webhooks_router)
app.include_router(credits_router)
app.include_router(accounts_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ================== LIFECYCLE ==================

@app.on_event("startup")
async def startup():
    await init_models()


@app.on_event("shutdown")
async def shutdown():
    await engine.dispose()


def main():
    uvicorn.run(
        "creditledger.server:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8001")),
    )
