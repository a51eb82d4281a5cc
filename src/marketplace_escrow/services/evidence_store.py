"""Evidence storage collaborator.

Photos and signature images live outside the database. The core only keeps
opaque references and asks the store for short-lived URLs when a client
needs to display them; no escrow operation accepts raw evidence bytes.
"""

from __future__ import annotations

import hashlib
import hmac
import time
import uuid
from typing import Protocol, runtime_checkable
from urllib.parse import urlencode


@runtime_checkable
class EvidenceStore(Protocol):
    async def store(self, data: bytes, content_type: str) -> str: ...

    async def resolve(self, ref: str) -> str: ...


class SimulatedEvidenceStore:
    """In-memory store that hands out signed, expiring URLs.

    Usage:
        store = SimulatedEvidenceStore("https://evidence.local", ttl_seconds=900)
        ref = await store.store(b"...", "image/jpeg")
        url = await store.resolve(ref)
    """

    def __init__(self, base_url: str, ttl_seconds: int = 900, secret: str = "dev") -> None:
        self._base_url = base_url.rstrip("/")
        self._ttl_seconds = ttl_seconds
        self._secret = secret.encode()
        self._objects: dict[str, tuple[bytes, str]] = {}

    async def store(self, data: bytes, content_type: str) -> str:
        ref = f"ev_{uuid.uuid4().hex}"
        self._objects[ref] = (data, content_type)
        return ref

    async def resolve(self, ref: str) -> str:
        expires = int(time.time()) + self._ttl_seconds
        signature = hmac.new(self._secret, f"{ref}:{expires}".encode(), hashlib.sha256)
        query = urlencode({"expires": expires, "sig": signature.hexdigest()[:32]})
        return f"{self._base_url}/{ref}?{query}"
