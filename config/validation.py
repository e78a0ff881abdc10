# config/validation.py

"""
Startup checks for production environment variables.

Each check returns a list of human-readable problems; ``validate_and_exit``
prints them all at once so an operator can fix the environment in one pass.
"""

import os
import sys
from typing import Callable, List, Mapping, Tuple

_TRUTHY = {"1", "true", "yes", "on"}
_PLACEHOLDER_SECRETS = {"", "change-me", "your-secret-key", "your_secret_key"}
_NUMERIC_SETTINGS = (
    "IMPORTER_BATCH_SIZE",
    "IMPORTER_QUEUE_SIZE",
    "IMPORTER_MAX_RETAINED_ERRORS",
    "IMPORTER_MAX_CONSECUTIVE_BATCH_FAILURES",
)


def _check_secret_key(env: Mapping[str, str]) -> List[str]:
    if env.get("SECRET_KEY", "").strip() in _PLACEHOLDER_SECRETS:
        return ["SECRET_KEY must be set to a random value (e.g. `openssl rand -hex 32`)."]
    return []


def _check_database(env: Mapping[str, str]) -> List[str]:
    if not env.get("DATABASE_URL"):
        return ["DATABASE_URL must point at the production database."]
    return []


def _check_worker_broker(env: Mapping[str, str]) -> List[str]:
    worker = env.get("IMPORTER_WORKER_ENABLED", "").strip().lower() in _TRUTHY
    mode = env.get("IMPORTER_EXECUTION_MODE", "").strip().lower()
    if (worker or mode == "celery") and not env.get("CELERY_BROKER_URL"):
        return ["CELERY_BROKER_URL is required when imports run on the Celery worker."]
    return []


def _check_importer_numbers(env: Mapping[str, str]) -> List[str]:
    problems = []
    for name in _NUMERIC_SETTINGS:
        raw = env.get(name)
        if raw is not None and not raw.strip().isdigit():
            problems.append(f"{name} must be a non-negative integer, got {raw!r}.")
    return problems


CHECKS: Tuple[Callable[[Mapping[str, str]], List[str]], ...] = (
    _check_secret_key,
    _check_database,
    _check_worker_broker,
    _check_importer_numbers,
)


def validate_environment(flask_env: str = None, env: Mapping[str, str] = None) -> Tuple[bool, List[str]]:
    """
    Run every startup check against ``env`` (defaults to ``os.environ``).

    Only production is validated; other environments always pass.
    """
    env = os.environ if env is None else env
    flask_env = flask_env or env.get("FLASK_ENV", "development")
    if flask_env != "production":
        return True, []

    errors = [problem for check in CHECKS for problem in check(env)]
    return not errors, errors


def validate_and_exit(flask_env: str = None) -> None:
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    banner = "=" * 72
    lines = [banner, "Environment validation failed:", ""]
    lines.extend(f"  {index}. {error}" for index, error in enumerate(errors, 1))
    lines.extend(["", "Fix the variables above (see .env) and restart.", banner])
    print("\n".join(lines), file=sys.stderr)
    sys.exit(1)
