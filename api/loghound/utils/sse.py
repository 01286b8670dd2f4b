from __future__ import annotations
import json
from typing import Dict, Any

def create_sse_message(data: Dict[str, Any], event_type: str = "message") -> str:
    """Create a Server-Sent Event formatted message."""
    json_data = json.dumps(data, ensure_ascii=False, default=str)
    return f"event: {event_type}\ndata: {json_data}\n\n"

def create_sse_error(message: str, error_type: str = "error") -> str:
    return create_sse_message({"type": error_type, "message": message}, "error")

def create_sse_close() -> str:
    """Create a close SSE message."""
    return "event: close\ndata: {\"type\":\"close\"}\n\n"
