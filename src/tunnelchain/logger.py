import logging
import os
import sys

# Create main logger
logger = logging.getLogger("tunnelchain")

# Create console handler and set level based on env var
console_handler = logging.StreamHandler(sys.stdout)

# Set third party loggers to use same level
paramiko_logger = logging.getLogger("paramiko")

# Get log level from environment variable, default to INFO
log_level = os.environ.get("TUNNELCHAIN_LOG_LEVEL", "INFO").upper()
try:
    logger.setLevel(getattr(logging, log_level))
    paramiko_logger.setLevel(getattr(logging, log_level))
except (AttributeError, TypeError, ValueError):
    logger.setLevel(logging.INFO)
    paramiko_logger.setLevel(logging.INFO)
    logger.warning(f"Invalid log level {log_level}, defaulting to INFO")

# Create formatter
formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
console_handler.setFormatter(formatter)

# Add console handler to main logger
logger.addHandler(console_handler)

# Hide output from paramiko
paramiko_logger.addHandler(logging.NullHandler())
