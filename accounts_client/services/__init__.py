"""Collaborators outside the core: the transport, the account server's
endpoints, and the realtime channel."""
