import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s"
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Directory Entitlements API",
    version="1.0.0",
)

from app.middleware.security import RequestLoggingMiddleware
app.add_middleware(RequestLoggingMiddleware)

configured_origins = os.getenv("CORS_ORIGINS", "").strip()
if configured_origins:
    allow_origins = [origin.strip() for origin in configured_origins.split(",") if origin.strip()]
else:
    allow_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


from app.routes.webhooks import legacy_router as legacy_webhooks_router
from app.routes.webhooks import router as webhooks_router

app.include_router(webhooks_router)
app.include_router(legacy_webhooks_router)


@app.get("/health")
def health_check():
    return {
        "status": "ok",
        "service": "directory-entitlements",
        "version": "1.0.0",
    }


if not os.getenv("REVENUECAT_WEBHOOK_SECRET"):
    logger.warning("REVENUECAT_WEBHOOK_SECRET not set; webhook deliveries will be rejected with 500")
