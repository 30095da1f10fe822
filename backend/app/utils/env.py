import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> bool:
    """Load variables from a local .env file without overwriting set ones.

    WHAT:
        Loads FACEBOOK_* and tuning variables from .env into os.environ.
    WHY:
        Local development uses .env; production sets real environment
        variables, which must win.
    """
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
    return loaded
