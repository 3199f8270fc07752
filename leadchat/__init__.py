"""Roy lead-chat service: extraction, scoring and the chat session."""
