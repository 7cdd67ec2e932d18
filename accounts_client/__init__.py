"""Client-side orchestration of multi-account sessions."""

from .factory import AuthClient, create_client, get_config
