"""
Resource path mapping.

Infers the requested data type and purpose from a request path.
"""

from app.access.models import DataType, Purpose

# Path segment -> data type, in priority order for equal-length matches
DATA_TYPE_PATHS: tuple[tuple[str, DataType], ...] = (
    ("/demographics", DataType.DEMOGRAPHICS),
    ("/medical-history", DataType.MEDICAL_HISTORY),
    ("/visits", DataType.VISITS),
    ("/medications", DataType.MEDICATIONS),
    ("/lab-results", DataType.LAB_RESULTS),
    ("/prescriptions", DataType.PRESCRIPTIONS),
    ("/vitals", DataType.VITAL_SIGNS),
)

# Checked in order, first hit wins
PURPOSE_PATHS: tuple[tuple[tuple[str, ...], Purpose], ...] = (
    (("/emergency",), Purpose.EMERGENCY_CARE),
    (("/treatment", "/prescription"), Purpose.TREATMENT),
    (("/diagnosis", "/lab-result"), Purpose.DIAGNOSIS),
    (("/follow-up",), Purpose.FOLLOW_UP),
)

DEFAULT_DATA_TYPE = DataType.ALL_RECORDS
DEFAULT_PURPOSE = Purpose.TREATMENT


def normalize_path(path: str) -> str:
    """Lowercase, drop query string and trailing slash."""
    path = (path or "").split("?", 1)[0].strip().lower()
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def determine_data_type(path: str) -> DataType:
    """Longest matching segment wins; no match means all_records."""
    normalized = normalize_path(path)
    best = None
    for segment, data_type in DATA_TYPE_PATHS:
        if segment in normalized and (best is None or len(segment) > len(best[0])):
            best = (segment, data_type)
    return best[1] if best else DEFAULT_DATA_TYPE


def determine_purpose(path: str) -> Purpose:
    normalized = normalize_path(path)
    for segments, purpose in PURPOSE_PATHS:
        if any(segment in normalized for segment in segments):
            return purpose
    return DEFAULT_PURPOSE
