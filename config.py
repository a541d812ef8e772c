import os
from typing import Any, Dict

import yaml

ROOT_DIR = os.path.dirname(__file__)


def _load_dotenv(path: str, existing_env: set[str], allow_override: bool = False) -> None:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[7:].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                current_value = str(os.environ.get(key, "") or "").strip()
                # Empty pre-existing env vars are not authoritative.
                if key in existing_env and current_value:
                    continue
                if key in os.environ and (not allow_override) and current_value:
                    continue
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                    value = value[1:-1]
                os.environ[key] = value
    except OSError:
        return


_EXISTING_ENV = set(os.environ.keys())
_load_dotenv(os.path.join(ROOT_DIR, ".env"), _EXISTING_ENV, allow_override=False)
_load_dotenv(os.path.join(ROOT_DIR, ".env.local"), _EXISTING_ENV, allow_override=True)

APP_ENV = os.getenv("APP_ENV", "dev")
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(ROOT_DIR, "config.yaml"))

_ENV_ONLY_KEYS = {
    "DATABASE_URL",
    "REDIS_URL",
}


def _load_config(path: str, env: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw_data: Any = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return {}
    data = raw_data or {}
    if isinstance(data, dict) and env in data and isinstance(data[env], dict):
        return dict(data[env])
    if isinstance(data, dict):
        return dict(data)
    return {}


_CONFIG = _load_config(CONFIG_PATH, APP_ENV)


def _get(name: str, default: Any) -> Any:
    if name in os.environ:
        return os.environ[name]
    if name in _ENV_ONLY_KEYS:
        return default
    if isinstance(_CONFIG, dict):
        if name in _CONFIG:
            return _CONFIG[name]
        lower = name.lower()
        if lower in _CONFIG:
            return _CONFIG[lower]
    return default


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes"}


LOG_LEVEL = str(_get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"

# Container engine
DOCKER_SOCKET = str(_get("DOCKER_SOCKET", "/var/run/docker.sock")).strip()
DOCKER_NETWORK = str(_get("DOCKER_NETWORK", "preview-internal")).strip() or "preview-internal"
DEFAULT_CONTAINER_MEMORY = str(_get("DEFAULT_CONTAINER_MEMORY", "256m")).strip()
DEFAULT_CONTAINER_CPU = float(_get("DEFAULT_CONTAINER_CPU", "0.25"))

# Builder phase
BUILDER_IMAGE = str(_get("BUILDER_IMAGE", "node:20-alpine")).strip()
BUILDER_COMMAND = str(_get("BUILDER_COMMAND", "cd /workspace && npm ci && npm run build")).strip()
BUILDER_MEMORY_BYTES = int(_get("BUILDER_MEMORY_BYTES", str(512 * 1024 * 1024)))
BUILDER_CPU_QUOTA = int(_get("BUILDER_CPU_QUOTA", "50000"))
BUILD_MANIFEST = str(_get("BUILD_MANIFEST", "package.json")).strip() or "package.json"

# Runner phase
RUNNER_IMAGE = str(_get("RUNNER_IMAGE", "node:20-alpine")).strip()
RUNNER_COMMAND = str(_get("RUNNER_COMMAND", "cd /app && npm start")).strip()
RUNNER_USER = str(_get("RUNNER_USER", "1000:1000")).strip()
RUNNER_CONTAINER_PORT = int(_get("RUNNER_CONTAINER_PORT", "3000"))
RUNNER_TMPFS_OPTIONS = str(_get("RUNNER_TMPFS_OPTIONS", "rw,noexec,nosuid,size=100m")).strip()
RUNNER_RESTART_MAX_RETRIES = int(_get("RUNNER_RESTART_MAX_RETRIES", "3"))
RUNNER_STOP_GRACE_SECONDS = int(_get("RUNNER_STOP_GRACE_SECONDS", "10"))

# Port pool
PORT_RANGE_START = int(_get("PORT_RANGE_START", "3001"))
PORT_RANGE_END = int(_get("PORT_RANGE_END", "3100"))

# Liveness probing
HEALTH_CHECK_HOST = str(_get("HEALTH_CHECK_HOST", "localhost")).strip() or "localhost"
HEALTH_CHECK_MAX_ATTEMPTS = max(1, int(_get("HEALTH_CHECK_MAX_ATTEMPTS", "10")))
HEALTH_CHECK_INTERVAL_MS = max(0, int(_get("HEALTH_CHECK_INTERVAL_MS", "1000")))
HEALTH_CHECK_TIMEOUT_MS = max(1, int(_get("HEALTH_CHECK_TIMEOUT_MS", "2000")))
DEPLOY_HEALTH_MAX_ATTEMPTS = max(1, int(_get("DEPLOY_HEALTH_MAX_ATTEMPTS", "15")))
DEPLOY_HEALTH_INTERVAL_MS = max(0, int(_get("DEPLOY_HEALTH_INTERVAL_MS", "2000")))
STALE_CHECK_MAX_ATTEMPTS = max(1, int(_get("STALE_CHECK_MAX_ATTEMPTS", "2")))
STALE_CHECK_INTERVAL_MS = max(0, int(_get("STALE_CHECK_INTERVAL_MS", "500")))
STALE_CHECK_TIMEOUT_MS = max(1, int(_get("STALE_CHECK_TIMEOUT_MS", "1000")))
STALE_PORT_SWEEP_SECONDS = max(10, int(_get("STALE_PORT_SWEEP_SECONDS", "300")))

# Public addressing
PUBLIC_DOMAIN = str(_get("PUBLIC_DOMAIN", _get("DOMAIN", "localhost"))).strip() or "localhost"
PREVIEW_URL_HOST = str(_get("PREVIEW_URL_HOST", "localhost")).strip() or "localhost"

# Labels stamped on every container and network this system creates
LABEL_APP_KEY = str(_get("LABEL_APP_KEY", "app")).strip()
LABEL_APP_VALUE = str(_get("LABEL_APP_VALUE", "preview-orchestrator")).strip()
LABEL_PURPOSE_KEY = str(_get("LABEL_PURPOSE_KEY", "purpose")).strip()
LABEL_PROJECT_KEY = str(_get("LABEL_PROJECT_KEY", "project-id")).strip()
LABEL_BUILD_KEY = str(_get("LABEL_BUILD_KEY", "build-id")).strip()

# Persistence
DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.preview', 'preview.db')}",
    )
).strip()
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"), False)

# Worker
REDIS_URL = _get("REDIS_URL", "redis://localhost:6379/0")
REDIS_DISABLED = _parse_bool(_get("REDIS_DISABLED", "false"), False)
CELERY_ALWAYS_EAGER = _parse_bool(_get("CELERY_ALWAYS_EAGER", "false"), False)
WORKER_CONCURRENCY = max(1, int(_get("WORKER_CONCURRENCY", "4")))
