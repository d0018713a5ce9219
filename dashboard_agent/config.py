import os
from dotenv import load_dotenv


def load_environment_config():
    """
    Load environment-specific configuration based on APP_ENV.

    Environments:
    - production: Uses .env.production
    - sit: Uses .env.sit
    - test: Uses .env.test
    - development: Uses .env (default)
    """
    env = os.getenv('APP_ENV', 'development').lower()

    env_files = {
        'production': '.env.production',
        'sit': '.env.sit',
        'test': '.env.test',
        'development': '.env',
    }

    env_file = env_files.get(env, '.env')

    if os.path.exists(env_file):
        load_dotenv(env_file)
        print(f"🔧 Loaded configuration from: {env_file}")
    else:
        # Fallback to default .env
        load_dotenv()
        if env not in ('development', 'test'):
            print(f"⚠️  Environment file {env_file} not found, using default .env")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == 'true'


# Load environment-specific configuration
load_environment_config()

APP_ENV = os.getenv('APP_ENV', 'development').lower()

# Application port configuration
APP_PORT = int(os.getenv("APP_PORT", "8092"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
ENABLE_PII_REDACTION = _env_bool("ENABLE_PII_REDACTION", "true")

# Executor defaults (process-wide, overridable per plan)
EXECUTOR_MAX_CONCURRENT = int(os.getenv("EXECUTOR_MAX_CONCURRENT", "3"))
EXECUTOR_BATCH_SIZE = int(os.getenv("EXECUTOR_BATCH_SIZE", "100"))
EXECUTOR_RETRY_ATTEMPTS = int(os.getenv("EXECUTOR_RETRY_ATTEMPTS", "3"))
EXECUTOR_RETRY_DELAY_MS = int(os.getenv("EXECUTOR_RETRY_DELAY_MS", "1000"))
EXECUTOR_TIMEOUT_MS = int(os.getenv("EXECUTOR_TIMEOUT_MS", "30000"))

# Plan-level deadline = estimatedTimeMs * multiplier + EXECUTOR_TIMEOUT_MS
PLAN_TIMEOUT_MULTIPLIER = float(os.getenv("PLAN_TIMEOUT_MULTIPLIER", "10"))

# Planner time estimation
PLANNER_BASE_COST_MS = float(os.getenv("PLANNER_BASE_COST_MS", "500"))
PLANNER_PER_RECORD_MS = float(os.getenv("PLANNER_PER_RECORD_MS", "0.1"))
PLANNER_MAX_ESTIMATE_MS = int(os.getenv("PLANNER_MAX_ESTIMATE_MS", "120000"))

# Data sources
DEFAULT_DATA_SOURCE = os.getenv("DEFAULT_DATA_SOURCE", "/api/generic-search")
DATA_SOURCE_REGISTRY_PATH = os.getenv("DATA_SOURCE_REGISTRY_PATH")
AUTH_PROFILES_PATH = os.getenv("AUTH_PROFILES_PATH")

# Tool executor (REST data sources)
TOOL_API_BASE_URL = os.getenv("TOOL_API_BASE_URL", "http://localhost:3001")
TOOL_HTTP_TIMEOUT_SECONDS = float(os.getenv("TOOL_HTTP_TIMEOUT_SECONDS", "30"))

# Pending clarifications (multi-turn resume)
CLARIFICATION_TTL_HOURS = float(os.getenv("CLARIFICATION_TTL_HOURS", "24"))

# Parse CORS origins from comma-separated string
cors_origins_str = os.getenv("CORS_ORIGINS", "")
CORS_ORIGINS = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]

CORS_ALLOW_CREDENTIALS = _env_bool("CORS_ALLOW_CREDENTIALS", "true")

cors_methods_str = os.getenv("CORS_ALLOW_METHODS", "*")
CORS_ALLOW_METHODS = [method.strip() for method in cors_methods_str.split(",") if method.strip()] if cors_methods_str != "*" else ["*"]

cors_headers_str = os.getenv("CORS_ALLOW_HEADERS", "*")
CORS_ALLOW_HEADERS = [header.strip() for header in cors_headers_str.split(",") if header.strip()] if cors_headers_str != "*" else ["*"]

CORS_MAX_AGE = int(os.getenv("CORS_MAX_AGE", "600"))
