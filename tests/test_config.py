import logging
from datetime import timedelta

import pytest
import yaml
from pydantic import ValidationError

from bomcache.config import CacheConfig
from bomcache.database.models import ResourceKind
from bomcache.log_handler import LogHandler
from bomcache.radar import RadarFeature, RadarType
from bomcache.runtime import RuntimeContext, load_config_file

CONFIG = """
database:
  path: {db_url}
  busy_timeout: 2
intervals:
  observation: 5min
  hourly: 2h
radars:
  - id: 2
    name: Melbourne
    radar_types: [128km, doppler]
    features: [background, locations]
max_poll_seconds: 60
archive:
  host: ftp.example.org
"""


@pytest.fixture
def config_file(tmp_path, db_url):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG.format(db_url=db_url))
    return path


def test_cache_config_from_dict(config_file):
    config = CacheConfig.from_dict(load_config_file(config_file))

    assert config.busy_timeout == 2
    assert config.max_poll == timedelta(seconds=60)
    assert config.intervals.for_kind(ResourceKind.OBSERVATION) == timedelta(minutes=5)
    assert config.intervals.for_kind(ResourceKind.HOURLY) == timedelta(hours=2)
    assert config.intervals.daily == timedelta(hours=1)

    radar = config.radars[0]
    assert radar.name == "Melbourne"
    assert radar.radar_types == [RadarType.KM128, RadarType.DOPPLER]
    assert radar.features == [RadarFeature.BACKGROUND, RadarFeature.LOCATIONS]
    assert radar.loop_length == 24


def test_invalid_interval():
    with pytest.raises(ValidationError):
        CacheConfig.from_dict({"intervals": {"daily": "sometimes"}})


def test_runtime_registers_radars(config_file):
    runtime = RuntimeContext.from_config_file(config_file)

    assert [r.key for r in runtime.scheduler.resources] == ["IDR023", "IDR02I"]
    assert runtime.archive.host == "ftp.example.org"
    assert runtime.scheduler.max_poll == timedelta(seconds=60)
    runtime.close()


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config_file(tmp_path / "missing.yaml")


def test_log_handler_reads_logging_section(tmp_path):
    log_file = tmp_path / "logs" / "bomcache.log"
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "logging": {
            "version": 1,
            "disable_existing_loggers": False,
            "handlers": {"file": {"class": "logging.FileHandler", "filename": str(log_file)}},
            "loggers": {"bomcache.test": {"level": "INFO", "handlers": ["file"]}},
        }
    }))

    LogHandler.from_file(path).start_logger()
    logging.getLogger("bomcache.test").info("hello")

    assert log_file.exists()
    assert logging.getLogger("httpx").level == logging.WARNING


def test_log_handler_without_file(tmp_path):
    assert LogHandler.from_file(tmp_path / "missing.yaml").config is None
