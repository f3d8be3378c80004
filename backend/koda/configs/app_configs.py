import os

#####
# App Configs
#####
APP_HOST = os.environ.get("APP_HOST", "0.0.0.0")
APP_PORT = int(os.environ.get("APP_PORT", "8080"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "info")

#####
# Database Configs
#####
# Snapshot records live here; archive bytes go to the snapshot blob store
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./data/koda.db")
DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", "5"))
DB_MAX_OVERFLOW = int(os.environ.get("DB_MAX_OVERFLOW", "10"))

#####
# HTTP Configs
#####
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("CORS_ALLOWED_ORIGINS", "").split(",")
    if origin.strip()
]
