"""Opaque session token minting.

A token is ``b64(b64(node_id) "." b64(salt)) "." b64(node_id)`` where
``node_id`` is a snowflake-style 64-bit identifier (millisecond clock,
node number, per-millisecond sequence) and ``salt`` is a SHA-256 digest of
the issue time and random bytes. Every segment is base64url without
padding, so ``.`` only ever appears as the separator.
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
import threading
import time
from datetime import datetime, timezone
from typing import Optional

from multisession.logging import get_logger
from multisession.service.errors import ServiceError

logger = get_logger(__name__)

TOKEN_SEPARATOR = "."

# Snowflake layout: 41 bits of ms since epoch, 10 bits node, 12 bits sequence
_EPOCH_MS = 1288834974657
_NODE_BITS = 10
_SEQUENCE_BITS = 12
_MAX_NODE = (1 << _NODE_BITS) - 1
_SEQUENCE_MASK = (1 << _SEQUENCE_BITS) - 1


class TokenGeneratorError(ServiceError):
    """Node identifier source could not be initialised (fatal configuration error)."""
    status_code = 500
    error_code = "server_error"


def b64_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def b64_decode(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def join_parts(*parts: str) -> str:
    return TOKEN_SEPARATOR.join(parts)


def _default_node() -> int:
    # Distinguish processes sharing a store without requiring configuration
    digest = hashlib.sha256(f"{os.getpid()}:{secrets.token_hex(8)}".encode()).digest()
    return int.from_bytes(digest[:2], "big") & _MAX_NODE


class SnowflakeNode:
    """Thread-safe generator of unique, time-ordered 64-bit identifiers."""

    def __init__(self, node: Optional[int] = None) -> None:
        node = _default_node() if node is None else node
        if node < 0 or node > _MAX_NODE:
            raise TokenGeneratorError(
                f"node number must be between 0 and {_MAX_NODE}",
                detail={"node": node},
            )
        self.node = node
        self._lock = threading.Lock()
        self._last_ms = -1
        self._sequence = 0

    @staticmethod
    def _now_ms() -> int:
        return time.time_ns() // 1_000_000

    def generate(self) -> int:
        with self._lock:
            now = self._now_ms()
            if now < self._last_ms:
                # Clock stepped backwards; keep ids monotonic
                now = self._last_ms
            if now == self._last_ms:
                self._sequence = (self._sequence + 1) & _SEQUENCE_MASK
                if self._sequence == 0:
                    while now <= self._last_ms:
                        now = self._now_ms()
            else:
                self._sequence = 0
            self._last_ms = now
            return (
                ((now - _EPOCH_MS) << (_NODE_BITS + _SEQUENCE_BITS))
                | (self.node << _SEQUENCE_BITS)
                | self._sequence
            )


_node: Optional[SnowflakeNode] = None
_node_lock = threading.Lock()


def get_node() -> SnowflakeNode:
    global _node
    with _node_lock:
        if _node is None:
            _node = SnowflakeNode()
            logger.info("token_node_initialized", node=_node.node)
        return _node


def generate_token(node: Optional[SnowflakeNode] = None) -> str:
    """Mint a new opaque session token.

    Raises:
        TokenGeneratorError: the node identifier source is misconfigured
    """
    node = node or get_node()
    node_id = b64_encode(str(node.generate()).encode())
    issued = datetime.now(timezone.utc).isoformat()
    salt = b64_encode(hashlib.sha256(issued.encode() + secrets.token_bytes(16)).digest())
    return join_parts(b64_encode(join_parts(node_id, salt).encode()), node_id)


def reset_node_for_tests() -> None:
    global _node
    with _node_lock:
        _node = None
