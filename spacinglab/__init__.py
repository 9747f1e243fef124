"""SpacingLab - Birthday Spacings randomness testing."""

__version__ = "0.1.0"

# Package-level logger; plugins receive children of it from the Engine:
#   from spacinglab import logger
#   logger.debug("...")
# The Engine attaches handlers (e.g. a JSONL FileHandler) when given a `log_path`.
import logging
logger = logging.getLogger("spacinglab")
logger.addHandler(logging.NullHandler())

from .plugins.birthday_spacings import (  # noqa: E402
    BirthdaySpacingsTest,
    BirthdaySpacingsError,
    SpacingsConfigError,
    DegenerateHistogramError,
)

__all__ = [
    "BirthdaySpacingsTest",
    "BirthdaySpacingsError",
    "SpacingsConfigError",
    "DegenerateHistogramError",
    "logger",
]
