"""
SQL Guard - Runtime Configuration

Settings are read from the process environment after loading an optional
.env file. Nothing in here is mutable after load_settings() returns.

Environment variables:
    SEMANTIC_DICT_PATH        Path to the indicator catalog JSON
    OWNER_COLUMN              Row-ownership column name (default: owner_id)
    TIME_COLUMNS              Comma-separated date columns recognised as time bounds
    DEFAULT_TIME_COLUMN       Column used by the injected default time predicate
    DEFAULT_TIME_WINDOW_DAYS  Size of the default time window (default: 30)
    NULLABLE_FIELDS           Comma-separated nullable numeric columns
    DATABASE_URL              Optional, used by the guarded executor
    LOG_LEVEL                 Logging level for our modules (default: INFO)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_CATALOG_PATH = BASE_DIR / "data" / "semantic_dict.json"

DEFAULT_NULLABLE_FIELDS = (
    "unit_price", "cost_price", "quantity", "amount",
    "unitprice", "costprice", "debt_amount", "repaid_amount",
)


def _split_csv(raw: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not raw:
        return default
    items = tuple(part.strip() for part in raw.split(",") if part.strip())
    return items or default


@dataclass(frozen=True)
class GuardSettings:
    """Immutable engine settings."""
    catalog_path: Path = DEFAULT_CATALOG_PATH
    owner_column: str = "owner_id"
    time_columns: Tuple[str, ...] = ("created_at", "order_date", "date")
    default_time_column: str = "created_at"
    default_time_window_days: int = 30
    nullable_fields: Tuple[str, ...] = DEFAULT_NULLABLE_FIELDS
    database_url: Optional[str] = None
    log_level: str = "INFO"

    @property
    def default_time_predicate(self) -> str:
        """SQL predicate injected when a query carries no time bound."""
        return (
            f"{self.default_time_column} >= "
            f"date('now', '-{self.default_time_window_days} days')"
        )

    @property
    def default_time_label(self) -> str:
        """Human-readable label of the default window, used in intent annotations."""
        return f"近{self.default_time_window_days}天"


def load_settings(env_file: Optional[str] = None) -> GuardSettings:
    """Build GuardSettings from the environment (.env honoured, real env wins)."""
    load_dotenv(env_file)

    window_raw = os.getenv("DEFAULT_TIME_WINDOW_DAYS", "30")
    try:
        window = int(window_raw)
    except ValueError:
        raise ValueError(f"DEFAULT_TIME_WINDOW_DAYS must be an integer, got {window_raw!r}")
    if window <= 0:
        raise ValueError("DEFAULT_TIME_WINDOW_DAYS must be positive")

    catalog_path = os.getenv("SEMANTIC_DICT_PATH")
    time_columns = _split_csv(os.getenv("TIME_COLUMNS"), GuardSettings.time_columns)

    settings = GuardSettings(
        catalog_path=Path(catalog_path) if catalog_path else DEFAULT_CATALOG_PATH,
        owner_column=os.getenv("OWNER_COLUMN", "owner_id"),
        time_columns=time_columns,
        default_time_column=os.getenv("DEFAULT_TIME_COLUMN", time_columns[0]),
        default_time_window_days=window,
        nullable_fields=_split_csv(os.getenv("NULLABLE_FIELDS"), DEFAULT_NULLABLE_FIELDS),
        database_url=os.getenv("DATABASE_URL"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
    logger.debug(
        f"[CONFIG] catalog={settings.catalog_path} owner_column={settings.owner_column} "
        f"window={settings.default_time_label} database={'set' if settings.database_url else 'unset'}"
    )
    return settings
