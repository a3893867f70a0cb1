import os


def optional_env(name: str, default: str = "") -> str:
    """Read an optional environment variable with a safe default."""
    return os.environ.get(name, default)


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable '{name}' must be an integer, got {raw!r}")


def env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable '{name}' must be a number, got {raw!r}")


def env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


# Liveness
DEVICE_OFFLINE_SECONDS = env_int("DEVICE_OFFLINE_SECONDS", 60)
SENSOR_OFFLINE_SECONDS = env_int("SENSOR_OFFLINE_SECONDS", 60)

# Alert lifecycle
PURGE_GRACE_SECONDS = env_int("PURGE_GRACE_SECONDS", 300)
STALE_ACTIVE_MINUTES = env_int("STALE_ACTIVE_MINUTES", 10)
THRESHOLD_AUTOCORRECT = env_bool("THRESHOLD_AUTOCORRECT", True)

# Sweep retry policy
SWEEP_MAX_ATTEMPTS = env_int("SWEEP_MAX_ATTEMPTS", 3)
SWEEP_RETRY_DELAY_SECONDS = env_float("SWEEP_RETRY_DELAY_SECONDS", 5.0)
