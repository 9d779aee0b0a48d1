"""Identity resolution, merging and authoritative snapshot precedence."""

from .identity import key_of
from .merge import are_equivalent, merge_messages
from .snapshot import AuthoritativeRecord, AuthoritativeSnapshot, SnapshotLoader, apply_snapshot

__all__ = [
    "AuthoritativeRecord",
    "AuthoritativeSnapshot",
    "SnapshotLoader",
    "apply_snapshot",
    "are_equivalent",
    "key_of",
    "merge_messages",
]
