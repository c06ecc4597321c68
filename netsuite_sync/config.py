import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "netsuite_sync.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-netsuite-sync")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    NETSUITE_MODE = os.environ.get("NETSUITE_MODE", "simulator")
    NETSUITE_RESTLET_URL = os.environ.get("NETSUITE_RESTLET_URL")
    NETSUITE_TOKEN = os.environ.get("NETSUITE_TOKEN")
    NETSUITE_TIMEOUT_SECONDS = _int_env("NETSUITE_TIMEOUT_SECONDS", 20)
    NETSUITE_VERIFY_SSL = _bool_env("NETSUITE_VERIFY_SSL", True)
    NETSUITE_SIMULATOR_SEED = _int_env("NETSUITE_SIMULATOR_SEED", 42)

    NETSUITE_WEBHOOK_SECRET = os.environ.get("NETSUITE_WEBHOOK_SECRET")
    SYNC_ADMIN_TOKEN = os.environ.get("SYNC_ADMIN_TOKEN")

    SYNC_SCHEDULER_ENABLED = _bool_env("SYNC_SCHEDULER_ENABLED", True)
    SYNC_SCHEDULER_INTERVAL_SECONDS = _int_env("SYNC_SCHEDULER_INTERVAL_SECONDS", 10)
    SYNC_SCHEDULER_MIN_BACKOFF_SECONDS = _int_env("SYNC_SCHEDULER_MIN_BACKOFF_SECONDS", 30)
    SYNC_SCHEDULER_MAX_BACKOFF_SECONDS = _int_env("SYNC_SCHEDULER_MAX_BACKOFF_SECONDS", 600)
    SYNC_SCHEDULER_PROCESS_QUEUE = _bool_env("SYNC_SCHEDULER_PROCESS_QUEUE", False)
    SYNC_WORKER_INTERVAL_SECONDS = _int_env("SYNC_WORKER_INTERVAL_SECONDS", 5)
    SYNC_WORKER_PROCESSES = _int_env("SYNC_WORKER_PROCESSES", 1)
    SYNC_QUEUE_CRITICAL_AGE_SECONDS = _int_env("SYNC_QUEUE_CRITICAL_AGE_SECONDS", 900)
    SYNC_QUEUE_CRITICAL_PENDING_JOBS = _int_env("SYNC_QUEUE_CRITICAL_PENDING_JOBS", 200)

    NETSUITE_CIRCUIT_ENABLED = _bool_env("NETSUITE_CIRCUIT_ENABLED", True)
    NETSUITE_CIRCUIT_ERROR_RATE_THRESHOLD = _float_env("NETSUITE_CIRCUIT_ERROR_RATE_THRESHOLD", 0.6)
    NETSUITE_CIRCUIT_MIN_SAMPLES = _int_env("NETSUITE_CIRCUIT_MIN_SAMPLES", 5)
    NETSUITE_CIRCUIT_WINDOW_SECONDS = _int_env("NETSUITE_CIRCUIT_WINDOW_SECONDS", 120)
    NETSUITE_CIRCUIT_OPEN_SECONDS = _int_env("NETSUITE_CIRCUIT_OPEN_SECONDS", 30)
    NETSUITE_CIRCUIT_HALF_OPEN_MAX_CALLS = _int_env("NETSUITE_CIRCUIT_HALF_OPEN_MAX_CALLS", 1)

    RATE_LIMIT_ENABLED = _bool_env("RATE_LIMIT_ENABLED", True)
    RATE_LIMIT_WINDOW_SECONDS = _int_env("RATE_LIMIT_WINDOW_SECONDS", 60)
    RATE_LIMIT_MAX_REQUESTS = _int_env("RATE_LIMIT_MAX_REQUESTS", 300)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set for the production environment.")
        if env == "production" and self.SECRET_KEY == "dev-secret-netsuite-sync":
            raise RuntimeError("SECRET_KEY is insecure for production.")
        if env == "production" and not self.NETSUITE_WEBHOOK_SECRET:
            raise RuntimeError("NETSUITE_WEBHOOK_SECRET is not set for the production environment.")
