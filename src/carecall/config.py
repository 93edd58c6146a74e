"""Startup configuration validation.

Checks that all required environment variables are set before the server
accepts connections, so that a missing key causes a clear startup failure
rather than a failed session bootstrap in the middle of a call.
"""

import os
import sys
import logging

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "OPENAI_API_KEY",
]

OPTIONAL_VARS = [
    "OPENAI_REALTIME_MODEL",
    "OPENAI_CHAT_MODEL",
    "OPENAI_GENERATION_MODEL",
    "OPENAI_TRANSCRIPTION_MODEL",
    "CARECALL_API_KEY",
    "LOG_LEVEL",
]

DEFAULT_BACKEND_URL = "http://localhost:8765"


def backend_url() -> str:
    return os.getenv("CARECALL_BACKEND_URL") or DEFAULT_BACKEND_URL


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or in the deployment's secrets.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)
