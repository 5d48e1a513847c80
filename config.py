"""
Configuration for the lyrics slide generator.

Values come from the environment (a local .env file is loaded first) and are
exposed as module-level constants so every stage reads the same settings.
"""

import logging
import os
import sys

from dotenv import load_dotenv


# ============================================================================
# CONFIGURATION & CONSTANTS
# ============================================================================

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: '{raw}', using default {default}")
        return default
    if value <= 0:
        logger.warning(f"{name} must be positive, using default {default}")
        return default
    return value


# OpenAI Configuration
OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')

# Enrichment behaviour
ENRICHMENT_BATCH_SIZE = _env_int('ENRICHMENT_BATCH_SIZE', 10)
ENRICHMENT_MAX_ATTEMPTS = _env_int('ENRICHMENT_MAX_ATTEMPTS', 3)
ENRICHMENT_CALLS_PER_MINUTE = _env_int('ENRICHMENT_CALLS_PER_MINUTE', 15)

# Upload / output
MAX_TEMPLATE_MB = _env_int('MAX_TEMPLATE_MB', 20)
OUTPUT_FILENAME = os.getenv('OUTPUT_FILENAME', 'lyrics-slides.pptx')

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')


def setup_logging(verbose: bool = False) -> None:
    """Configure root logging for CLI and server entry points."""
    if verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(level=level, format='%(levelname)s: %(message)s', stream=sys.stdout)
