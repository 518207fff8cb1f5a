"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)


@dataclass
class SourcesConfig:
    """Publication endpoints and site parameters"""
    ofac_url: str = "https://www.treasury.gov/ofac/downloads/sdn.xml"
    un_url: str = "https://unsolprodfiles.blob.core.windows.net/publiclegacyxmlfiles/EN/consolidatedLegacyByNAME.xml"
    kofiu_origin: str = "https://www.kofiu.go.kr"
    vasp_board_code: str = "0007"
    vasp_default_notice_no: str = "194"
    vasp_title_keyword: str = "가상자산사업자 신고 현황"
    restricted_law_notice_no: str = "84"
    restricted_law_type_code: str = "001"
    enabled: List[str] = field(default_factory=lambda: [
        'ofac_xml', 'un_xml', 'kofiu_excel', 'kofiu_restricted'
    ])


@dataclass
class FetchConfig:
    """HTTP fetch settings"""
    connect_timeout: float = 15.0
    read_timeout: float = 30.0
    max_attempts: int = 3
    backoff_step: float = 0.8  # seconds; wait grows linearly per attempt
    user_agent: str = "sanctions-ingest/1.0"
    min_attachment_bytes: int = 10 * 1024


@dataclass
class RecognizerConfig:
    """List-item recognizer thresholds"""
    min_entries: int = 20
    year_min: int = 1900
    year_max: int = 2100
    inferred_min: int = 50
    inferred_max: int = 20000
    early_stop_tolerance: int = 1
    publish_tolerance: int = 0


@dataclass
class TabularConfig:
    """Spreadsheet registry layout"""
    header_rows: List[int] = field(default_factory=lambda: [4, 5])
    base_date_scan_rows: int = 15


@dataclass
class StorageConfig:
    """Snapshot/state storage settings"""
    state_directory: str = "state"
    history_limit: int = 50
    min_entries: int = 1


@dataclass
class PipelineConfig:
    """Job orchestration settings"""
    max_workers: int = 4


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = "logs/pipeline.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    event_log_dir: str = "logs"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.sources: SourcesConfig = SourcesConfig()
        self.fetch: FetchConfig = FetchConfig()
        self.recognizer: RecognizerConfig = RecognizerConfig()
        self.tabular: TabularConfig = TabularConfig()
        self.storage: StorageConfig = StorageConfig()
        self.pipeline: PipelineConfig = PipelineConfig()
        self.logging: LoggingConfig = LoggingConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        self._parse_sources()
        self._parse_fetch()
        self._parse_recognizer()
        self._parse_tabular()
        self._parse_storage()
        self._parse_pipeline()
        self._parse_logging()
        self._validate()

    def _parse_sources(self) -> None:
        """Parse source endpoint configuration"""
        cfg = self._raw_config.get('sources', {})
        self.sources = SourcesConfig(
            ofac_url=cfg.get('ofac_url', self.sources.ofac_url),
            un_url=cfg.get('un_url', self.sources.un_url),
            kofiu_origin=cfg.get('kofiu_origin', self.sources.kofiu_origin),
            vasp_board_code=str(cfg.get('vasp_board_code', self.sources.vasp_board_code)),
            vasp_default_notice_no=str(cfg.get('vasp_default_notice_no', self.sources.vasp_default_notice_no)),
            vasp_title_keyword=cfg.get('vasp_title_keyword', self.sources.vasp_title_keyword),
            restricted_law_notice_no=str(cfg.get('restricted_law_notice_no',
                                                 self.sources.restricted_law_notice_no)),
            restricted_law_type_code=str(cfg.get('restricted_law_type_code',
                                                 self.sources.restricted_law_type_code)),
            enabled=cfg.get('enabled', self.sources.enabled)
        )

    def _parse_fetch(self) -> None:
        """Parse HTTP fetch configuration"""
        cfg = self._raw_config.get('fetch', {})
        self.fetch = FetchConfig(
            connect_timeout=cfg.get('connect_timeout', 15.0),
            read_timeout=cfg.get('read_timeout', 30.0),
            max_attempts=cfg.get('max_attempts', 3),
            backoff_step=cfg.get('backoff_step', 0.8),
            user_agent=cfg.get('user_agent', self.fetch.user_agent),
            min_attachment_bytes=cfg.get('min_attachment_bytes', 10 * 1024)
        )

    def _parse_recognizer(self) -> None:
        """Parse list recognizer configuration"""
        cfg = self._raw_config.get('recognizer', {})
        self.recognizer = RecognizerConfig(
            min_entries=cfg.get('min_entries', 20),
            year_min=cfg.get('year_min', 1900),
            year_max=cfg.get('year_max', 2100),
            inferred_min=cfg.get('inferred_min', 50),
            inferred_max=cfg.get('inferred_max', 20000),
            early_stop_tolerance=cfg.get('early_stop_tolerance', 1),
            publish_tolerance=cfg.get('publish_tolerance', 0)
        )

    def _parse_tabular(self) -> None:
        """Parse spreadsheet layout configuration"""
        cfg = self._raw_config.get('tabular', {})
        self.tabular = TabularConfig(
            header_rows=cfg.get('header_rows', self.tabular.header_rows),
            base_date_scan_rows=cfg.get('base_date_scan_rows', 15)
        )

    def _parse_storage(self) -> None:
        """Parse storage configuration"""
        cfg = self._raw_config.get('storage', {})
        self.storage = StorageConfig(
            state_directory=cfg.get('state_directory', 'state'),
            history_limit=cfg.get('history_limit', 50),
            min_entries=cfg.get('min_entries', 1)
        )

    def _parse_pipeline(self) -> None:
        """Parse job orchestration configuration"""
        cfg = self._raw_config.get('pipeline', {})
        self.pipeline = PipelineConfig(
            max_workers=cfg.get('max_workers', 4)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', 'logs/pipeline.log'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format),
            event_log_dir=cfg.get('event_log_dir', 'logs')
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return {
            'sources': {
                'ofac_url': self.sources.ofac_url,
                'un_url': self.sources.un_url,
                'kofiu_origin': self.sources.kofiu_origin,
                'vasp_board_code': self.sources.vasp_board_code,
                'restricted_law_notice_no': self.sources.restricted_law_notice_no,
                'enabled': self.sources.enabled
            },
            'fetch': {
                'connect_timeout': self.fetch.connect_timeout,
                'read_timeout': self.fetch.read_timeout,
                'max_attempts': self.fetch.max_attempts,
                'backoff_step': self.fetch.backoff_step
            },
            'recognizer': {
                'min_entries': self.recognizer.min_entries,
                'year_min': self.recognizer.year_min,
                'year_max': self.recognizer.year_max,
                'publish_tolerance': self.recognizer.publish_tolerance
            },
            'tabular': {
                'header_rows': self.tabular.header_rows,
                'base_date_scan_rows': self.tabular.base_date_scan_rows
            },
            'storage': {
                'state_directory': self.storage.state_directory,
                'history_limit': self.storage.history_limit
            },
            'pipeline': {
                'max_workers': self.pipeline.max_workers
            }
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: If any value is out of range
        """
        errors = []

        if self.fetch.connect_timeout <= 0 or self.fetch.read_timeout <= 0:
            errors.append("fetch timeouts must be positive")
        if self.fetch.max_attempts < 1:
            errors.append("fetch.max_attempts must be at least 1")
        if self.fetch.backoff_step < 0:
            errors.append("fetch.backoff_step must not be negative")

        if self.recognizer.min_entries < 1:
            errors.append("recognizer.min_entries must be at least 1")
        if self.recognizer.year_min > self.recognizer.year_max:
            errors.append("recognizer year range is inverted")
        if self.recognizer.inferred_min > self.recognizer.inferred_max:
            errors.append("recognizer inferred range is inverted")
        if self.recognizer.publish_tolerance < 0 or self.recognizer.early_stop_tolerance < 0:
            errors.append("recognizer tolerances must not be negative")

        rows = self.tabular.header_rows
        if (not isinstance(rows, list) or len(rows) != 2 or len(set(rows)) != 2
                or any(not isinstance(r, int) or r < 0 for r in rows)):
            errors.append("tabular.header_rows must be two distinct non-negative integers")

        if self.storage.history_limit < 1:
            errors.append("storage.history_limit must be at least 1")
        if self.pipeline.max_workers < 1:
            errors.append("pipeline.max_workers must be at least 1")

        if errors:
            raise ConfigurationError("; ".join(errors))


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)


def setup_logging(config: Optional[ConfigManager] = None) -> None:
    """Configure root logging from the logging section"""
    config = config or get_config()
    cfg = config.logging

    handlers: List[logging.Handler] = []
    if cfg.console:
        handlers.append(logging.StreamHandler())
    if cfg.file:
        log_path = Path(cfg.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, str(cfg.level).upper(), logging.INFO),
        format=cfg.format,
        handlers=handlers or None,
        force=True
    )
