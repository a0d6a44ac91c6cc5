import logging
import os
from functools import lru_cache

logger = logging.getLogger("phoneverify.env")


@lru_cache(maxsize=1)
def ensure_loaded() -> str | None:
    """Load the service env file once, if one exists.

    Priority:
    1) PHONEVERIFY_ENV_FILE path
    2) /etc/phoneverify/phoneverify.env
    3) ops/secrets/phoneverify.env (relative to CWD)
    Variables already present in the environment win over the file.
    Returns the path that was loaded, if any.
    """
    candidates = [
        os.getenv("PHONEVERIFY_ENV_FILE", ""),
        "/etc/phoneverify/phoneverify.env",
        os.path.join("ops", "secrets", "phoneverify.env"),
    ]
    for path in candidates:
        if path and os.path.isfile(path):
            try:
                _load_env_file(path)
            except OSError as exc:
                logger.warning("Could not read env file %s: %s", path, exc)
                continue
            return path
    return None


def _load_env_file(path: str) -> None:
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            if key.startswith("export "):
                key = key[len("export "):].strip()
            value = value.strip().strip('"').strip("'")
            if key and key not in os.environ:
                os.environ[key] = value
