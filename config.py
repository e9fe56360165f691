# -*- coding: utf-8 -*-

import os


def _env_int(name: str, default: int) -> int:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "")).strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "off", "no"}


# Клиентский опрос статуса
JOB_POLL_INTERVAL_MS = max(100, _env_int("JOB_POLL_INTERVAL_MS", 2000))
JOB_STALENESS_WINDOW_S = max(1, _env_int("JOB_STALENESS_WINDOW_S", 3600))

# Серверное хранилище заданий
JOB_STORE_TTL_S = max(1, _env_int("JOB_STORE_TTL_S", 3600))
JOB_STORE_PATH = str(os.getenv("JOB_STORE_PATH", "")).strip()
JOB_WORKER_CHECK_INTERVAL_S = max(0.01, _env_float("JOB_WORKER_CHECK_INTERVAL_S", 0.5))
JOB_PROVIDER_TIMEOUT_S = max(1, _env_int("JOB_PROVIDER_TIMEOUT_S", 600))
# Один активный запуск на пользователя: новое задание отменяет предыдущие
JOB_SUPERSEDE_PER_OWNER = _env_bool("JOB_SUPERSEDE_PER_OWNER", True)

# Провайдер генерации
PROVIDER_URL = str(os.getenv("PROVIDER_URL", "")).strip()
PROVIDER_API_KEY = str(os.getenv("PROVIDER_API_KEY", "")).strip()
PROVIDER_TIMEOUT_S = max(1, _env_int("PROVIDER_TIMEOUT_S", 120))
PROVIDER_MAX_RETRIES = max(0, _env_int("PROVIDER_MAX_RETRIES", 2))
USE_MOCK_PROVIDER = _env_bool("USE_MOCK_PROVIDER", not PROVIDER_URL)
MOCK_PROVIDER_DELAY_S = max(0.0, _env_float("MOCK_PROVIDER_DELAY_S", 3.0))

# Клиент
JOB_API_BASE_URL = str(os.getenv("JOB_API_BASE_URL", "http://127.0.0.1:8000")).strip()
JOB_API_TIMEOUT_S = max(1, _env_int("JOB_API_TIMEOUT_S", 10))
CLIENT_STATE_PATH = str(os.getenv("CLIENT_STATE_PATH", ".client_state.json")).strip()
