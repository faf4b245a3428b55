"""
Support Chat - automated support-response engine
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.core.logging_config import setup_logging
from app.api.exception_handlers import register_exception_handlers
from app.api.v1 import chat, learning

setup_logging()

app = FastAPI(
    title="Support Chat API",
    description="Knowledge-first support answers with generative fallback, escalation and feedback learning",
    version="1.0.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# API routes
app.include_router(chat.router, prefix="/v1/chat", tags=["chat"])
app.include_router(learning.router, prefix="/v1/learning", tags=["learning"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": settings.APP_NAME}


@app.get("/")
async def root():
    return {
        "service": settings.APP_NAME,
        "version": "1.0.0",
        "docs": "/docs"
    }
