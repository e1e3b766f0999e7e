"""
Preview Sandbox Backend
统一 FastAPI 入口

Provisions throwaway dev-server sandboxes for project previews and streams
their progress to the browser.

启动方式:
    python main.py
    或
    uvicorn main:app --reload --port 5100
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import DEV_SERVER_PORT, REQUIRE_SECURE_CONTEXT, SERVER_HOST, SERVER_PORT

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Preview Sandbox API",
    description="Ephemeral dev-server sandboxes for project previews",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS configuration - allow all for open-source version
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================
# Register Routers
# ============================================

from preview import preview_router, preview_ws_router, session_registry

app.include_router(preview_router)
app.include_router(preview_ws_router)
logger.info("Registered: /api/preview/*")
logger.info("Registered: /api/preview/ws/*")


# ============================================
# Root Endpoints
# ============================================

@app.get("/")
async def root():
    """Root endpoint - API info"""
    return {
        "name": "Preview Sandbox API",
        "version": "1.0.0",
        "description": "Ephemeral dev-server sandboxes for project previews",
        "docs": "/docs",
        "endpoints": {
            "preview": "/api/preview",
            "preview_ws": "/api/preview/ws/{session_id}",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "preview-sandbox",
        "version": "1.0.0",
        "active_sessions": len(session_registry.sessions),
    }


# ============================================
# Startup/Shutdown Events
# ============================================

@app.on_event("startup")
async def startup_event():
    """Run on startup"""
    logger.info("=" * 50)
    logger.info("Preview Sandbox API Starting...")
    logger.info("=" * 50)

    logger.info(f"Dev servers will bind port {DEV_SERVER_PORT}")
    if not REQUIRE_SECURE_CONTEXT:
        logger.warning("Secure context check disabled - previews allowed over plain http")

    logger.info(f"API documentation available at: http://localhost:{SERVER_PORT}/docs")


@app.on_event("shutdown")
async def shutdown_event():
    """Run on shutdown"""
    logger.info("Preview Sandbox API Shutting down...")

    try:
        await session_registry.dispose_all()
        logger.info("Preview sessions disposed")
    except Exception as e:
        logger.warning(f"Error disposing preview sessions: {e}")


# ============================================
# Main Entry Point
# ============================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
        log_level="info",
    )
