
from .llm_client import CompletionClient
from .streaming import SSELineDecoder, StreamEvent, parse_sse_line

__all__ = ["CompletionClient", "SSELineDecoder", "StreamEvent", "parse_sse_line"]
