from run_results.records import RunRecord, error_payload
from run_results.summary import EvalSummary, count_outcomes, summarize
from run_results.writer import RESULTS_FILENAME, ResultsFileError, ResultsWriter, load_results

__all__ = [
    "RESULTS_FILENAME",
    "EvalSummary",
    "ResultsFileError",
    "ResultsWriter",
    "RunRecord",
    "count_outcomes",
    "error_payload",
    "load_results",
    "summarize",
]
