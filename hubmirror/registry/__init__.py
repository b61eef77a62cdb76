"""
Model metadata mirror.

Record model, JSON codec, merge engine, store, query translator and
sync driver.
"""

from hubmirror.registry.errors import (
    FetchError,
    HubMirrorError,
    InvalidQueryError,
    JsonFieldError,
    MalformedJsonError,
    NotFoundError,
    SchemaMismatchError,
    StoreIoError,
    ValidationError,
)
from hubmirror.registry.record import ModelRecord, Sibling
from hubmirror.registry.codec import decode_field, encode_field
from hubmirror.registry.payloads import (
    ListingSummary,
    ModelDetail,
    PayloadKind,
    TreeListing,
    parse_detail,
    parse_listing,
    parse_tree,
)
from hubmirror.registry.merge import MergeResult, merge, reconcile_siblings
from hubmirror.registry.query import QueryCriteria, QueryPage, QueryTranslator
from hubmirror.registry.store import ModelStore
from hubmirror.registry.sync import RetryPolicy, SyncDriver, SyncReport

__all__ = [
    "FetchError",
    "HubMirrorError",
    "InvalidQueryError",
    "JsonFieldError",
    "ListingSummary",
    "MalformedJsonError",
    "MergeResult",
    "ModelDetail",
    "ModelRecord",
    "ModelStore",
    "NotFoundError",
    "PayloadKind",
    "QueryCriteria",
    "QueryPage",
    "QueryTranslator",
    "RetryPolicy",
    "SchemaMismatchError",
    "Sibling",
    "StoreIoError",
    "SyncDriver",
    "SyncReport",
    "TreeListing",
    "ValidationError",
    "decode_field",
    "encode_field",
    "merge",
    "parse_detail",
    "parse_listing",
    "parse_tree",
]
