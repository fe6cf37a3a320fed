"""
Main API entry point for the Mandi negotiation service
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import CORS_ORIGINS, LOG_LEVEL, LOG_FORMAT, STORAGE_BACKEND
from negotiation_api import router as negotiation_router

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

app = FastAPI(title="Mandi Negotiation API", version="1.0.0")

# Negotiation, chat and wholesale order routes
app.include_router(negotiation_router, prefix="/api")

# Enable CORS for the web frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger.info(f"Mandi negotiation API configured with {STORAGE_BACKEND} storage")


@app.get("/")
async def root():
    return {"message": "Mandi Negotiation API", "version": "1.0.0"}


@app.get("/api/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
