from collections.abc import Iterable


class ModelFlowError(Exception):
    """Base class for all errors raised by modelflow."""


class DataIngestionError(ModelFlowError):
    """Raised when a data source can't be read or parsed."""


class MissingColumnsError(ModelFlowError, ValueError):
    """Raised when required columns are absent from a frame.

    Attributes:
        columns (list[str]): names of the missing columns
    """

    def __init__(self, columns: Iterable[str], context: str = "data"):
        self.columns = list(columns)
        super().__init__(f"Missing columns in {context}: {self.columns}")


class ColumnTypeError(ModelFlowError, TypeError):
    """Raised when a column has a type the operation can't handle."""


class InvalidSplitError(ModelFlowError, ValueError):
    """Raised for invalid split or resampling parameters."""


class InvalidSpecificationError(ModelFlowError, ValueError):
    """Raised for unknown families, modes, engines or arguments."""


class InsufficientClassesError(ModelFlowError, ValueError):
    """Raised when a classification outcome has fewer than two classes."""


class ConvergenceError(ModelFlowError, RuntimeError):
    """Raised when an estimator reports that it did not converge."""


class InvalidGridError(ModelFlowError, ValueError):
    """Raised for empty grids or out-of-domain hyperparameter values."""


class TuningError(ModelFlowError, RuntimeError):
    """Raised when tuning results can't support the requested operation."""
