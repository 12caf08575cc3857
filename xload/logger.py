import logging
import sys

from typing import Dict


class ColorFormatter(logging.Formatter):
    """Custom formatter for colored log output."""
    COLORS: Dict[str, str] = {
        "DEBUG": "\033[94m",    # Blue
        "INFO": "\033[92m",     # Green
        "WARNING": "\033[93m",  # Yellow
        "ERROR": "\033[91m",    # Red
        "CRITICAL": "\033[91m\033[1m", # Bold Red
        "RESET": "\033[0m",     # Reset
    }

    def format(self, record: logging.LogRecord) -> str:
        """Formats a log record with colors, leaving the record itself untouched."""
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset = self.COLORS["RESET"]
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{reset}"
        colored.msg = f"{color}{record.getMessage()}{reset}"
        colored.args = None
        return super().format(colored)


def configure_logging(level: int = logging.INFO) -> None:
    """Configures console logging with a colored formatter."""
    handler = logging.StreamHandler(sys.stderr)
    if handler.stream.isatty():
        handler.setFormatter(ColorFormatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    logging.basicConfig(
        level=level,
        handlers=[handler],
        force=True,
    )

