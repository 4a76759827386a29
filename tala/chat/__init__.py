"""Chat ingress: message store, history, and the streaming/sync chat service."""
