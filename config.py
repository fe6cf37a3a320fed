"""
Configuration file for the Mandi negotiation service
"""
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Storage backend: "firestore" or "memory"
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "firestore").lower()

# Firebase credentials (see negotiation_storage._initialize_firebase)
FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH")
FIREBASE_CREDENTIALS_JSON = os.getenv("FIREBASE_CREDENTIALS_JSON")

# Firestore collection names
NEGOTIATIONS_COLLECTION = "negotiations"
CHATS_COLLECTION = "chats"
CROPS_COLLECTION = "crops"
ORDERS_COLLECTION = "wholesale_orders"

# Negotiation rules
NEGOTIATION_EXPIRY_DAYS = int(os.getenv("NEGOTIATION_EXPIRY_DAYS", "7"))
MAX_MESSAGE_LENGTH = 1000
ENFORCE_TURN_TAKING = os.getenv("ENFORCE_TURN_TAKING", "true").lower() in ("1", "true", "yes")
COMMIT_RETRIES = int(os.getenv("COMMIT_RETRIES", "5"))

# Default chat texts
SAMPLE_ACCEPTED_MESSAGE = "Sample accepted! Ready to negotiate for crop."
DEFAULT_REJECT_MESSAGE = "Rejected the negotiation"
DEFAULT_CANCEL_MESSAGE = "Wholesaler withdrew from the negotiation"
EXPIRED_MESSAGE = "Negotiation expired"

# API configuration
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
