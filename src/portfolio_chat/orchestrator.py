"""Per-request flow: validate, admit, enrich, call the model, persist."""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Mapping, Optional

from . import protocol
from .errors import ChatInputError, QuotaExceededError
from .gateway import FragmentCallback, ModelGateway
from .memory import ConversationStore
from .models import ResponseEnvelope
from .portfolio import PortfolioEnricher
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


def client_identity(headers: Mapping[str, str], client_host: Optional[str]) -> str:
    """First X-Forwarded-For hop, else the socket peer, else "unknown"."""
    forwarded = headers.get("x-forwarded-for") or headers.get("X-Forwarded-For") or ""
    first = forwarded.split(",")[0].strip()
    return first or client_host or "unknown"


def session_for(identity: str) -> str:
    return f"session-{identity}"


class ChatOrchestrator:
    def __init__(
        self,
        gateway: ModelGateway,
        limiter: RateLimiter,
        conversations: ConversationStore,
        enricher: Optional[PortfolioEnricher] = None,
        *,
        max_message_length: int = MAX_MESSAGE_LENGTH,
    ) -> None:
        self.gateway = gateway
        self.limiter = limiter
        self.conversations = conversations
        self.enricher = enricher
        self.max_message_length = int(max_message_length)

    # -------------------------
    # Steps
    # -------------------------
    def validate(self, message: Optional[str]) -> str:
        if message is None or not message.strip():
            raise ChatInputError("EMPTY_MESSAGE", "Message cannot be empty")
        if len(message) > self.max_message_length:
            raise ChatInputError(
                "MESSAGE_TOO_LONG",
                f"Message exceeds the maximum length of {self.max_message_length} characters",
                limit=self.max_message_length,
            )
        return message.strip()

    async def check(self, identity: str, message: Optional[str]) -> str:
        """Validate then admit; raises before any model work is done."""
        text = self.validate(message)
        if not await self.limiter.admit(identity):
            logger.warning("Rate limit exceeded for %s", identity)
            raise QuotaExceededError(identity)
        return text

    def _context(self, message: str) -> str:
        if self.enricher is None:
            return ""
        try:
            return self.enricher.enrich(message)
        except Exception as e:  # enrichment must never fail a chat
            logger.error("Context enrichment failed: %s", e)
            return ""

    # -------------------------
    # Public API
    # -------------------------
    async def chat(self, identity: str, message: Optional[str], style: Optional[str] = None) -> ResponseEnvelope:
        text = await self.check(identity, message)

        session = session_for(identity)
        context = self._context(text)
        history = await self.conversations.history(session)
        logger.info("Chat from %s (style=%s, %d history turns)", identity, style or "NORMAL", len(history))

        envelope = await self.gateway.complete(text, history, style, context)

        await self.conversations.append(session, text, envelope.text)
        await self.limiter.commit(identity)
        return envelope

    async def stream(
        self,
        identity: str,
        message: Optional[str],
        style: Optional[str],
        on_fragment: FragmentCallback,
        cancel: Optional[asyncio.Event] = None,
    ) -> str:
        """Streamed variant of :meth:`chat`; returns the delivered text."""
        text = await self.check(identity, message)

        session = session_for(identity)
        context = self._context(text)
        history = await self.conversations.history(session)

        delivered = await self.gateway.stream(text, history, style, on_fragment, cancel, context)
        if not delivered:
            return delivered
        visible = protocol.decode(delivered).text
        await self.conversations.append(session, text, visible)
        await self.limiter.commit(identity)
        return delivered

    async def remaining(self, identity: str) -> Dict[str, int]:
        total = self.limiter.max_requests
        return {"remaining": await self.limiter.remaining(identity, total), "total": total}

    async def clear(self, identity: str) -> bool:
        return await self.conversations.clear(session_for(identity))
