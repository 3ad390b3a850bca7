"""Main FastAPI application."""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from thoth.config import settings
from thoth.middleware import setup_rate_limiting
from thoth.bitrix24 import routes as bitrix24_routes

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

# Create FastAPI app
app = FastAPI(
    title="Thoth Connector API",
    description="Bitrix24 Open Channel connector lifecycle for WhatsApp lines",
    version="0.1.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_rate_limiting(app)

# Include routers
app.include_router(bitrix24_routes.router, prefix=f"{settings.API_V1_PREFIX}/bitrix24", tags=["Bitrix24"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Thoth Connector API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "thoth.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
