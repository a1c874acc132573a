import logging
from typing import List, Optional, Tuple

# Server
HOST = "0.0.0.0"
PORT = 3000

# Artifacts loaded once at startup
MODEL_PATH = "main/slm_checkpoint.onnx"
LABELS_PATH = "main/pred.csv"
LABEL_COLUMN = "Label"

# Tensor names declared by the exported model
INPUT_NAME = "input"
OUTPUT_NAME = "dense_1"

TARGET_SIZE: Tuple[int, int] = (224, 224)
CHANNELS = 3

UNKNOWN_LABEL = "Unknown"

# CORS allow-list
ALLOWED_ORIGINS: List[str] = ["http://localhost:63342"]
ALLOWED_METHODS: List[str] = ["GET", "POST"]
ALLOWED_HEADERS: List[str] = ["Content-Type"]

# Logging
LOG_FILE = "combined.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO", log_file: Optional[str] = LOG_FILE):
    """Send log records to the console and, if given, to a log file."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
