import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> None:
    """Load variables from a local .env file without overwriting existing ones.

    WHAT:
        Lets developers keep DATABASE_URL, REDIS_URL and Meta knobs in a .env
        file during local runs.
    WHY:
        Production variables exported by the platform always win.
    """
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
