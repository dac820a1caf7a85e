import logging
import sys


class ColoredFormatter(logging.Formatter):
    """Colors console records by level."""

    cyan = "\x1b[36m"
    green = "\x1b[32m"
    yellow = "\x1b[33m"
    red = "\x1b[31m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    format_str = "%(asctime)s | %(levelname)-8s | %(name)s - %(message)s"

    FORMATS = {
        logging.DEBUG: cyan + format_str + reset,
        logging.INFO: green + format_str + reset,
        logging.WARNING: yellow + format_str + reset,
        logging.ERROR: red + format_str + reset,
        logging.CRITICAL: bold_red + format_str + reset,
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, self.format_str)
        formatter = logging.Formatter(log_fmt, datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


def setup_logging(level=logging.INFO, color: bool | None = None, log_file: str | None = None) -> None:
    logger = logging.getLogger("pipeflow")
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.setLevel(level)
    logger.propagate = False

    if color is None:
        color = sys.stderr.isatty()
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(ColoredFormatter() if color else logging.Formatter(
        ColoredFormatter.format_str, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(ColoredFormatter.format_str, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(file_handler)
