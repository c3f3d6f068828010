# checkin_guard/config.py
from decouple import config

APP_ENV = config("APP_ENV", default="development")
LOG_LEVEL = config("LOG_LEVEL", default="INFO")

MONGO_URI = config("MONGO_URI", default="mongodb://localhost:27017")
MONGO_DB = config("MONGO_DB", default="planit_checkin")

SECRET_KEY = config("SECRET_KEY", default="change-me-in-production")
ALGORITHM = config("ALGORITHM", default="HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = config("ACCESS_TOKEN_EXPIRE_MINUTES", default=720, cast=int)

# Manager override grants
OVERRIDE_TOKEN_TTL_SECONDS = config("OVERRIDE_TOKEN_TTL_SECONDS", default=300, cast=int)
OVERRIDE_MIN_REASON_LENGTH = config("OVERRIDE_MIN_REASON_LENGTH", default=10, cast=int)
