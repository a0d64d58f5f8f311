"""deepsearch: state and coordination layer for a streaming research-assistant chat."""
