"""Facebook Graph API integration."""
from facebook.graph import (
    FacebookAPIError, GraphClient, build_message, extract_participants, parse_graph_time,
    extract_post_id, extract_recipients, oauth_dialog_url,
)

__all__ = [
    "FacebookAPIError", "GraphClient", "build_message", "extract_participants", "parse_graph_time",
    "extract_post_id", "extract_recipients", "oauth_dialog_url",
]
