"""Consumer side of the feed stream: SSE parsing, merge/queue reduction."""

from .reducer import FeedReducer, ReducerState, MAX_DISPLAYED_TOKENS, MAX_QUEUED_TOKENS
from .sse import SSEEvent, SSEParser
from .subscription import FeedSubscription
from .symbol_cache import SymbolCache

__all__ = [
    "FeedReducer",
    "ReducerState",
    "MAX_DISPLAYED_TOKENS",
    "MAX_QUEUED_TOKENS",
    "SSEEvent",
    "SSEParser",
    "FeedSubscription",
    "SymbolCache",
]
