import os


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./kanban.db")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
TOKEN_TTL_MINUTES = int(os.getenv("TOKEN_TTL_MINUTES", "1440"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

# Registering with a matching adminPass grants admin rights; unset disables it.
ADMIN_PASS = os.getenv("ADMIN_PASS")

API_PREFIX = os.getenv("API_PREFIX", "/api")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:1234").split(",")
    if origin.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

VERSION = "1.0.0"
