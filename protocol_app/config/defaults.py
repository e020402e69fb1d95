"""Default configuration parameters for the protocol engine."""

from dataclasses import dataclass


@dataclass(frozen=True)
class StorageParams:
    """Persistence parameters."""
    db_path: str = "protocols.db"
    busy_timeout_seconds: float = 30.0     # SQLite lock wait for concurrent writers


@dataclass(frozen=True)
class HistoryParams:
    """Run history parameters."""
    default_limit: int = 10
    max_limit: int = 100


@dataclass(frozen=True)
class DisplayParams:
    """Real-time display channel parameters."""
    default_device_id: str = "ipad"
    default_view: str = "dashboard"
    run_view: str = "protocol"


@dataclass(frozen=True)
class TimerParams:
    """External timer surface parameters."""
    enabled: bool = True
    locale: str = "en-US"
    visibility: str = "VISIBLE"


@dataclass(frozen=True)
class LoggingParams:
    """Logging parameters."""
    level: str = "INFO"
    format_json: bool = False


@dataclass(frozen=True)
class DefaultConfig:
    """Complete default configuration."""
    storage: StorageParams
    history: HistoryParams
    display: DisplayParams
    timer: TimerParams
    logging: LoggingParams


def get_default_config() -> DefaultConfig:
    """Get the default configuration instance."""
    return DefaultConfig(
        storage=StorageParams(),
        history=HistoryParams(),
        display=DisplayParams(),
        timer=TimerParams(),
        logging=LoggingParams(),
    )
