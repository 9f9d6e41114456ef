"""formrelay kernel utilities."""

from .errors import TableNotFoundError, TierError
from .canonical_json import CanonicalJsonTypeError, RecordDecodeError, canonical_dumps, decode_record, encoded_size
from .keyed_lock import KeyedLock
from .record_keys import blob_name, cache_key, form_key

__all__ = [
    "CanonicalJsonTypeError",
    "KeyedLock",
    "TableNotFoundError",
    "TierError",
    "RecordDecodeError",
    "blob_name",
    "cache_key",
    "canonical_dumps",
    "decode_record",
    "encoded_size",
    "form_key",
]
