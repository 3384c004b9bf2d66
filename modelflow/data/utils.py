from pathlib import Path

DATA_PATH = Path(__file__).parent
CACHE_PATH = DATA_PATH / "cache"
DEFAULT_SCHEMA_PATH = DATA_PATH / "dataset_schema.json"
HOTELS_URL = "https://tidymodels.org/start/case-study/hotels.csv"

DEFAULT_SEED = 123
DEFAULT_SPLIT_PROP = 0.75
DEFAULT_VALIDATION_PROPS = (0.6, 0.2)
DEFAULT_FOLDS = 10
NUMERIC_STRATA_BREAKS = 4
MISSING_STRATUM = "__missing__"

ROLE_OUTCOME = "outcome"
ROLE_PREDICTOR = "predictor"
ROLE_ID = "ID"

DATE_FEATURES = ["dow", "month", "year", "doy", "week", "quarter", "decimal"]
DEFAULT_DATE_FEATURES = ("dow", "month", "year")
DOW_LABELS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
MONTH_LABELS = [
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
]

# Observance of federal holidays can move a date by at most a few days
HOLIDAY_WINDOW_DAYS = 7
