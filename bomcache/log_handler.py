import logging
import logging.config
import sys
import yaml

from pathlib import Path

from typing import Dict, Any

logger = logging.getLogger(__name__)

# Third-party loggers that flood the output at INFO level
NOISY_LOGGERS = [
    'asyncio',
    'httpx',
    'httpcore',
    'PIL',
    'sqlalchemy.engine',
]

class LogHandler:

    def __init__(self, config: Dict[str, Any] | None = None):
        self.config = config

    @classmethod
    def from_file(cls, config_file: str | Path):
        """Read the ``logging`` section of a cache config file."""
        config_file = Path(config_file)
        if not config_file.exists():
            logger.info(f"No config file found at {config_file}. Using default logging configuration")
            return cls()

        try:
            with open(config_file) as f:
                config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Error loading config from config_file {config_file}: {e}")
            return cls()

        return cls(config=config.get('logging'))

    def _start_basic_logger(self, verbose: bool = False):
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        date_format = "%Y-%m-%d %H:%M:%S"

        logging.basicConfig(
            level=logging.INFO if not verbose else logging.DEBUG,
            format=log_format,
            datefmt=date_format,
            stream=sys.stdout,
        )

    def start_logger(self, verbose: bool = False):
        """
        Setup logging from the dictConfig section or with sensible defaults.

        Parameters
        ----------
        verbose : bool, optional
            Log at DEBUG level and keep third-party loggers at their default level.
        """
        if self.config:
            for handler in self.config.get('handlers', {}).values():
                if 'filename' in handler:
                    Path(handler['filename']).parent.mkdir(parents=True, exist_ok=True)
            logging.config.dictConfig(self.config)
            logger.debug("Loaded logging configuration")
        else:
            self._start_basic_logger(verbose=verbose)
            logger.debug("Using default logging configuration as no configuration was provided.")

        if not verbose:
            self.silence_noisy_loggers()

    def silence_noisy_loggers(self, log_level=logging.WARNING):
        logger.debug('Silencing noisy loggers')
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(log_level)
