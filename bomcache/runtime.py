from pathlib import Path
from dataclasses import dataclass
import yaml

import logging

from .compositor import RadarLoopCompositor
from .config import CacheConfig
from .database.db import CacheDB
from .fetcher import RadarLayerFetcher
from .remote.archive import FtpArchive
from .remote.client import WeatherClient
from .scheduler import MonitorScheduler
from .workflow import CacheWorkflow

logger = logging.getLogger(__name__)

def load_config_file(config_file: str | Path) -> dict:
    """Load configuration from YAML file."""
    try:
        with open(config_file, 'r') as file:
            config = yaml.safe_load(file) or {}
            logger.info(f"Loaded config file from {config_file}")
    except FileNotFoundError:
        logger.error(f"Configuration file {config_file} not found")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Error parsing configuration file: {e}")
        raise

    #Make sure log directory exists
    for handler_name, handler in (config.get('logging') or {}).get('handlers', {}).items():
        if "filename" in handler.keys():
            Path(handler['filename']).parent.mkdir(parents=True, exist_ok=True)

    return config

@dataclass
class RuntimeContext:
    config: dict
    config_file: str | Path | None = None

    @classmethod
    def from_config_file(cls, config_file: str | Path):
        config = load_config_file(config_file)
        return cls(config=config, config_file=config_file)

    def __post_init__(self):
        if self.config is None:
            raise ValueError("RuntimeContext requires a config dictionary")
        self.initialize_runtime(self.config)

    def initialize_runtime(self, config: dict):

        logger.info("Initializing Runtime Context")
        self.settings = CacheConfig.from_dict(config)

        ## Database
        self.db = CacheDB(
            self.settings.database_path,
            busy_timeout=self.settings.busy_timeout,
        )

        ## Remote sources
        self.client = WeatherClient(
            retry_limit=self.settings.retry_limit,
            retry_delay=self.settings.retry_delay,
        )
        self.archive = FtpArchive(**self.settings.archive)

        ## Radar
        self.fetcher = RadarLayerFetcher(
            self.db,
            self.archive,
            retry_limit=self.settings.retry_limit,
            retry_delay=self.settings.retry_delay,
        )
        self.compositor = RadarLoopCompositor(self.db, self.settings.image_dir)

        ## Monitor
        self.scheduler = MonitorScheduler(
            self.db,
            max_poll=self.settings.max_poll,
            fetch_timeout=self.settings.fetch_timeout,
        )
        self.workflow = CacheWorkflow(
            self.settings,
            self.db,
            self.client,
            self.fetcher,
            self.compositor,
            self.scheduler,
        )
        self.workflow.register_resources()

    def update_runtime(self, config_file: str | Path):
        self.close()
        self.config_file = Path(config_file)
        self.config = load_config_file(self.config_file)
        self.initialize_runtime(self.config)

    def close(self):
        self.db.close()
