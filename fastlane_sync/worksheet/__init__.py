from .client import RowPage, WorksheetClient, iter_pages
from .envelope import Envelope, normalize_envelope
from .errors import AuthenticationError, MalformedResponseError, TransientError, UpstreamError
from .filters import Condition, Group, build_filter, combine, incremental_filter
from .mapper import decode_value, map_record, map_row

__all__ = [
    "AuthenticationError",
    "Condition",
    "Envelope",
    "Group",
    "MalformedResponseError",
    "RowPage",
    "TransientError",
    "UpstreamError",
    "WorksheetClient",
    "build_filter",
    "combine",
    "decode_value",
    "incremental_filter",
    "iter_pages",
    "map_record",
    "map_row",
    "normalize_envelope",
]
