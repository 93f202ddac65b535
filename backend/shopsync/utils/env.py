import logging
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# backend/.env, next to the shopsync package
BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


def load_env_file() -> bool:
    """Load variables from backend/.env (or the CWD .env) into os.environ.

    Existing environment variables are never overwritten, so values exported by
    the deployment always win over the developer's local file.

    Returns:
        True if a .env file was found and loaded.
    """
    loaded = load_dotenv(BACKEND_ENV_FILE, override=False) if BACKEND_ENV_FILE.exists() else False
    if not loaded:
        loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
    return loaded
