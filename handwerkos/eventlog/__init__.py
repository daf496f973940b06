from .core import (
    GENESIS_HASH,
    event_append,
    event_get_history,
    event_hash,
    event_verify_chain,
)

__all__ = [
    "GENESIS_HASH",
    "event_hash",
    "event_append",
    "event_verify_chain",
    "event_get_history",
]
