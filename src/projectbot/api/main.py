from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
import os
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .errors import install_error_handlers
from .routers.auth import router as auth_router
from .routers.public import router as public_router
from .routers.chat import router as chat_router
from .routers.chatbots import router as chatbots_router
from .routers.diag import router as diag_router
from ..observability.metrics import metrics_middleware_factory

load_dotenv()  # Load environment variables from .env if present (DATABASE_URL, OPENAI_API_KEY, JWT_SECRET, etc.)

app = FastAPI(title="Project Chatbot API", version="0.1.0")

logging.basicConfig(level=logging.INFO)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

install_error_handlers(app)

_ROUTERS = (auth_router, public_router, chat_router, chatbots_router, diag_router)

for _router in _ROUTERS:
    app.include_router(_router)

# The web client calls everything under /api
for _router in _ROUTERS:
    app.include_router(_router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("PROJECTBOT_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {"name": "Project Chatbot API", "version": "0.1.0"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/api/health")
def api_health():
    return health()
