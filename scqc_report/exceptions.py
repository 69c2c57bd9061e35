# scqc_report/exceptions.py


class QcReportError(Exception):
    """Base class for errors raised by the QC report pipeline."""


class ConfigurationError(QcReportError, ValueError):
    """Invalid run parameters, e.g. a grouping column missing from the sample annotations."""


class DatasetError(QcReportError, ValueError):
    """The input dataset is malformed (inconsistent indices, missing matrices or metadata)."""


class EmptyResultError(QcReportError, ValueError):
    """Filtering removed every sample or every feature."""


class PlotUnavailable(QcReportError):
    """A plot's data preconditions are not met. Caught at the plot boundary; the plot is omitted."""
