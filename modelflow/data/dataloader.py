import json
from collections.abc import Sequence
from logging import getLogger
from pathlib import Path
from urllib.parse import urlparse

import pandas as pd

from modelflow.data.models import Dataset
from modelflow.data.utils import CACHE_PATH, DEFAULT_SCHEMA_PATH, HOTELS_URL
from modelflow.errors import ColumnTypeError, DataIngestionError, MissingColumnsError

logger = getLogger(__name__)


def is_remote(source: str) -> bool:
    return urlparse(source).scheme in ("http", "https")


class DataLoader:
    """Data loader for a tabular CSV dataset.

    Remote (http/https) sources are downloaded once and cached as a CSV file
    in ``cache_dir``, later loads read the cached copy. Set ``cache_dir`` to
    None to always read the source.

    Attributes:
        source (str): URL or path of the CSV file
        target (str): outcome column
        id_columns (tuple[str, ...]): columns with the ID role
        date_columns (tuple[str, ...]): columns parsed as dates
        df (pd.DataFrame): the loaded table

    Methods:
        load_data(): Returns the dataset with its outcome declared
        features(): Returns every column except the outcome
        target_column(): Returns the outcome column
    """

    def __init__(
        self,
        source: str | Path = HOTELS_URL,
        target: str = "children",
        id_columns: Sequence[str] = (),
        date_columns: Sequence[str] = (),
        cache_dir: Path | None = CACHE_PATH,
    ):
        self.source = str(source)
        self.target = target
        self.id_columns = tuple(id_columns)
        self.date_columns = tuple(date_columns)
        self.cache_dir = cache_dir
        self.df = self._read()

    @classmethod
    def from_schema(
        cls,
        source: str | Path = HOTELS_URL,
        schema_path: Path = DEFAULT_SCHEMA_PATH,
        cache_dir: Path | None = CACHE_PATH,
    ) -> "DataLoader":
        """Creates a loader with the column declarations of a JSON schema.

        The schema holds ``target`` and optionally ``id_columns`` and
        ``date_columns``.
        """
        dataset_schema = json.load(Path(schema_path).open())
        return cls(
            source=source,
            target=dataset_schema["target"],
            id_columns=dataset_schema.get("id_columns", ()),
            date_columns=dataset_schema.get("date_columns", ()),
            cache_dir=cache_dir,
        )

    @property
    def cache_path(self) -> Path | None:
        if self.cache_dir is None or not is_remote(self.source):
            return None
        return Path(self.cache_dir) / Path(urlparse(self.source).path).name

    def _read(self) -> pd.DataFrame:
        cache_path = self.cache_path
        read_from = cache_path if cache_path is not None and cache_path.exists() else self.source
        try:
            df = pd.read_csv(read_from)
        except (OSError, ValueError) as e:
            # URLError is an OSError, pandas parser errors are ValueErrors
            logger.exception(f"Failed to read '{read_from}'")
            raise DataIngestionError(f"Can't read dataset from '{read_from}': {e}") from e
        logger.info(f"Loaded {len(df)} rows from '{read_from}'")

        if cache_path is not None and not cache_path.exists():
            cache_path.parent.mkdir(parents=True, exist_ok=True)
            df.to_csv(cache_path, index=False)

        missing = [
            column
            for column in (self.target, *self.id_columns, *self.date_columns)
            if column not in df.columns
        ]
        if missing:
            raise MissingColumnsError(missing, context=f"'{self.source}'")

        for column in self.date_columns:
            try:
                df[column] = pd.to_datetime(df[column])
            except (ValueError, TypeError) as e:
                raise ColumnTypeError(f"Column '{column}' can't be parsed as dates") from e
        return df

    def load_data(self) -> Dataset:
        """Load the dataset.

        Returns
        -------
        Dataset
            The loaded table with its outcome and ID columns declared.
        """
        return Dataset(self.df, outcome=self.target, id_columns=self.id_columns)

    def features(self) -> pd.DataFrame:
        """Every column of the table except the target."""
        return self.df.drop(columns=[self.target])

    def target_column(self) -> pd.Series:
        """Get the target column from the dataset.

        Returns
        -------
        pd.Series
            The target column.
        """
        return self.df[self.target]
