import os
from typing import Any
from pathlib import Path

PROJECT_NAME = "cobranza_comunicados"

# Paths
PROJECT_ROOT_DIR = Path(__file__).parent.parent.parent.resolve()

DATA_DIR = PROJECT_ROOT_DIR / "data"
INPUT_FILES_DIR = DATA_DIR / "runs"
RESULTS_DIR = DATA_DIR / "results"
STAGING_DB_PATH = DATA_DIR / "staging.duckdb"

SOURCE_CONFIG_DIRECTORY_PATH = PROJECT_ROOT_DIR / "src" / "ingestion" / "configs"
LOG_FOLDER = PROJECT_ROOT_DIR / "logs"

os.makedirs(LOG_FOLDER, exist_ok=True)
os.makedirs(INPUT_FILES_DIR, exist_ok=True)
os.makedirs(RESULTS_DIR, exist_ok=True)

# Storage
RESULTS_DISK = "collection"

# Tables
TABLE_RUNS = "runs"
TABLE_DATA_SOURCE_FILES = "data_source_files"
TABLE_RESULT_FILES = "result_files"
TABLE_IMPORT_ERROR_LOG = "import_error_log"
TABLE_EMAIL_BLACKLIST = "email_blacklist"
STAGING_TABLE_PREFIX = "data_source_"

# System Columns
SYSTEM_COL_ID = "id"
SYSTEM_COL_RUN_ID = "run_id"
SYSTEM_COL_SHEET_NAME = "sheet_name"
SYSTEM_COL_PAYLOAD = "data"
SYSTEM_COL_CREATED_AT = "created_at"

# Ingestion
DEFAULT_DELIMITER = ";"
CANONICAL_ENCODING = "utf-8"
LEGACY_ENCODING = "latin-1"
ENCODING_SAMPLE_BYTES = 8192
RESILIENT_CHUNK_SIZE = 10_000
BULK_BATCH_SIZE_BYTES = 8 << 20  # 8MB blocks for the arrow reader
SPREADSHEET_CHUNK_SIZE = 5_000
MAX_LINE_CONTENT_LENGTH = 500
MAX_ERROR_MESSAGE_LENGTH = 1_000

# Pipeline
AUDIT_PAGE_SIZE = 5_000
EXPORT_PAGE_SIZE = 5_000
MAX_ROWS_PER_SHEET = 65_535  # 65,536 rows minus the header
ALL_PERIODS_TOKENS = frozenset({"todos los periodos", "todos", "all", "all periods"})

# Business rules
BLACKLISTED_EMAIL_DOMAINS = ("@segurosbolivar.com", "@segurosbolivar.com.co")
HOUSE_ACCOUNT_ADDRESS = "AV CALLE 26 # 68B 31 TSB"
UNDEFINED_ADDRESS_TOKEN = "NO DEFINIDA"
MIN_ADDRESS_LENGTH = 7
STREET_TOKENS = (
    "calle", "carrera", "diagonal", "avenida", "transversal", "autopista", "circular", "variante",
    "cl", "cr", "cra", "dg", "av", "tv", "circ", "var", "krr",
)
RISK_CLASS_RATES: dict[str, float] = {
    "1": 0.0055,
    "2": 0.01044,
    "3": 0.0244,
    "4": 0.0435,
    "5": 0.0696,
}
CONSECUTIVE_PREFIX = "CON"
CONSECUTIVE_SERIAL_LENGTH = 5

OBSERVATION_ALREADY_PAID = "Cruza con recaudo"
OBSERVATION_NO_ACTIVE_WORKERS = "Sin trabajadores activos"

DELIVERY_EMAIL = "CORREO"
DELIVERY_POSTAL = "FISICO"


# Logging Configuration

LOGGING_CONFIG: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s [%(levelname)s] %(message)s"
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": "INFO",
        },
        "rotating_file": {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "level": "DEBUG",
            "filename": str(LOG_FOLDER / "pipeline.log"),
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
            "encoding": "utf8",
        },
    },
    "loggers": {
        "": {  # root logger
            "handlers": ["console", "rotating_file"],
            "level": "DEBUG",
            "propagate": True
        },
    }

}
