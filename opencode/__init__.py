"""OpenCode assistant server client."""

from .client import OpencodeClient, SSEDecoder

__all__ = ["OpencodeClient", "SSEDecoder"]
