"""
supportsync API - Main Application

FastAPI application behind the chat-history lookup screen.

Run with:
    uvicorn src.api.main:app --reload --port 8000

API Documentation available at:
    - Swagger UI: http://localhost:8000/docs
    - ReDoc: http://localhost:8000/redoc
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.routers import health, lookup
from src.config import load_environment
from src.logging_utils import configure_safe_logging

configure_safe_logging()
load_environment()

logger = logging.getLogger(__name__)


app = FastAPI(
    title="supportsync API",
    description="""
    Read-only lookup over Freshchat for support staff.

    - **Conversations**: find a customer's conversations by phone number
    - **Messages**: read a conversation's messages as plain text parts
    """,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS for the lookup frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",  # Next.js default
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)

# Register routers
app.include_router(health.router)
app.include_router(lookup.router)


@app.get("/")
def root():
    """Root endpoint with API information."""
    return {
        "name": "supportsync API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
