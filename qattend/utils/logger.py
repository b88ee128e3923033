import logging
import sys
from logging.handlers import RotatingFileHandler

from qattend.config import get_settings

# --- 1. PATHS ---

# LOG_DIR defaults to ./logs under the directory the service is started from
# (e.g. 'uvicorn qattend.main:app' run from the project root).
settings = get_settings()
LOG_DIR = settings.log_dir
LOG_FILE = LOG_DIR / "qattend.log"

# --- 2. LOGGER ---

logger = logging.getLogger("qattend")
logger.setLevel(getattr(logging, settings.log_level, logging.INFO))

formatter = logging.Formatter(
    "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
)

# --- 3. HANDLERS ---

# Re-imports (uvicorn --reload, test collection) must not stack handlers.
if not logger.handlers:
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    try:
        LOG_DIR.mkdir(exist_ok=True, parents=True)
        # File handler (rotates when 5MB)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        # Console logging still works on read-only filesystems (serverless).
        print(f"ERROR: Could not create log file at {LOG_FILE}: {e}", file=sys.stderr)

    logger.debug("Logging configuration loaded.")
