"""Gemini gateway: prompt construction, resilient upstream calls and streaming."""
from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from . import protocol
from .memory import ConversationStore
from .models import CallOutcome, ChatTurn, OwnerProfile, ResponseEnvelope, RetryAttempt

logger = logging.getLogger(__name__)

FragmentCallback = Callable[[str], Awaitable[None]]
SleepFn = Callable[[float], Awaitable[None]]


# -----------------------------
# Types & defaults
# -----------------------------
DEFAULT_STYLE = "NORMAL"

DEFAULT_STYLES: Mapping[str, str] = MappingProxyType({
    "NORMAL": "Respond in a balanced, conversational tone. Be helpful, clear, and friendly.",
    "FORMAL": (
        "Respond in a formal, professional tone. Use proper grammar and avoid contractions or "
        "colloquialisms. Structure your responses clearly with proper paragraphs."
    ),
    "EXPLANATORY": (
        "Respond in a teaching style that explains concepts thoroughly. Use examples where appropriate "
        "and break down complex ideas into simpler components. Number your points when listing multiple items."
    ),
    "MINIMALIST": (
        "Respond with brevity. Keep answers concise and to the point. Avoid unnecessary elaboration "
        "and focus on delivering essential information only."
    ),
    "HR": (
        "Respond in a warm, professional tone suitable for HR or recruitment conversations. Emphasize "
        "professional achievements, soft skills, and culture fit aspects."
    ),
})

DEFAULT_CONTACT_KEYWORDS: Tuple[str, ...] = (
    "contact", "email", "reach", "message you", "get in touch", "connect with you",
)

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

STATUS_MESSAGES: Mapping[int, str] = MappingProxyType({
    400: "I'm sorry, there was an issue with the request. Please try again later.",
    401: "I'm currently unable to access my knowledge due to authentication issues. Please try again later.",
    403: "I don't have permission to access that information right now.",
    404: "I'm sorry, I couldn't find the information you're looking for.",
    429: "I'm currently experiencing high demand. Please try again in a little while.",
})
GENERIC_FAILURE = "I'm sorry, I'm having trouble processing your request right now. Please try again later."
EXTRACTION_FAILURE = "I'm sorry, I couldn't generate a proper response. Please try again."
EXHAUSTED_TEMPLATE = (
    "I'm having trouble connecting to my knowledge source right now. Please try again later, "
    "or reach me directly at {email}."
)


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.95
    max_output_tokens: int = 8192
    stop_sequences: Tuple[str, ...] = ()
    safety_threshold: str = "BLOCK_MEDIUM_AND_ABOVE"


@dataclass(frozen=True)
class GatewayConfig:
    """Everything the gateway needs, fixed at construction."""
    api_key: str = ""
    base_url: str = "https://generativelanguage.googleapis.com"
    model: str = "gemini-2.0-flash"
    max_retries: int = 5
    base_timeout: float = 30.0
    timeout_step: float = 5.0
    base_delay: float = 1.0
    jitter: Tuple[float, float] = (0.1, 0.5)
    fragment_size: int = 25
    fragment_delay: float = 0.05
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    profile: OwnerProfile = field(default_factory=OwnerProfile)
    styles: Mapping[str, str] = field(default_factory=lambda: DEFAULT_STYLES)
    contact_keywords: Tuple[str, ...] = DEFAULT_CONTACT_KEYWORDS

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/v1beta/models/{self.model}:generateContent"


class _Retryable(Exception):
    def __init__(self, cause: str):
        super().__init__(cause)
        self.cause = cause


# -----------------------------
# Text helpers
# -----------------------------
_DOUBLE_BRACKET_LINK = re.compile(r"\[\[([^\[\]]+)\]\]\(([^()\s]+)\)")
_SPACED_LINK = re.compile(r"\[([^\[\]]+)\]\s+\(([^()\s]+)\)")
_STRAY_AFTER_LINK = re.compile(r"(\[[^\[\]]+\]\([^()\s]+\))[)\]]+")


def clean_links(text: str) -> str:
    """Repair markdown links the model tends to mangle."""
    text = _DOUBLE_BRACKET_LINK.sub(r"[\1](\2)", text)
    text = _SPACED_LINK.sub(r"[\1](\2)", text)
    return _STRAY_AFTER_LINK.sub(r"\1", text)


def is_contact_query(message: str, keywords: Sequence[str] = DEFAULT_CONTACT_KEYWORDS) -> bool:
    lower = (message or "").lower()
    return any(k in lower for k in keywords)


# -----------------------------
# Gateway
# -----------------------------
class ModelGateway:
    """Talks to the Gemini ``generateContent`` endpoint.

    ``sleep`` and ``rng`` are injectable so backoff can be observed in tests
    without waiting. A cancel event is honored before each upstream attempt,
    during backoff and between streamed fragments.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
        sleep: SleepFn = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.base_timeout + config.timeout_step * config.max_retries, connect=5.0)
        )
        self._sleep = sleep
        self._rng = rng or random.Random()
        if not config.api_key:
            logger.warning("No Gemini API key configured; upstream calls will be rejected")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -------------------------
    # Prompt
    # -------------------------
    def style_instruction(self, style: Optional[str]) -> str:
        key = (style or "").strip().upper()
        styles = self.config.styles
        return styles.get(key) or styles.get(DEFAULT_STYLE) or DEFAULT_STYLES[DEFAULT_STYLE]

    def build_prompt(
        self,
        message: str,
        history: Sequence[ChatTurn],
        style: Optional[str],
        context: str = "",
    ) -> str:
        p = self.config.profile
        lines: List[str] = [
            f"You are an AI chatbot representing {p.name}, a {p.position}. Use the information in the "
            f"portfolio data to answer questions accurately about {p.name}'s skills, projects, and "
            "experience. If you don't know something, be honest and don't make up information.",
            "When a table presents the answer best, end your reply with "
            '[format:table][data:{"headers": [...], "rows": [[...]]}][/format].',
            "",
            "Important contact information:",
            f"- Email: {p.email}",
            f"- GitHub: {p.github_url}",
            f"- LinkedIn: {p.linkedin_url}",
            "",
            self.style_instruction(style),
        ]
        if context and context.strip():
            lines += ["", context.strip()]
        transcript = ConversationStore.render(history)
        if transcript:
            lines += ["", "Conversation history:", transcript]
        lines += ["", "Current message:", message]
        if self.is_contact_query(message):
            lines += [
                "",
                "This is a contact-related query. Please provide my contact information. "
                f"Always use {p.email} as the email address.",
            ]
        return "\n".join(lines) + "\n"

    def build_payload(self, prompt: str) -> Dict[str, Any]:
        g = self.config.generation
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": g.temperature,
                "topK": g.top_k,
                "topP": g.top_p,
                "maxOutputTokens": g.max_output_tokens,
                "stopSequences": list(g.stop_sequences),
            },
            "safetySettings": [
                {"category": c, "threshold": g.safety_threshold} for c in SAFETY_CATEGORIES
            ],
        }

    def is_contact_query(self, message: str) -> bool:
        return is_contact_query(message, self.config.contact_keywords)

    # -------------------------
    # Upstream
    # -------------------------
    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        return await self._client.post(
            self.config.endpoint,
            json=payload,
            headers={"x-goog-api-key": self.config.api_key, "Content-Type": "application/json"},
        )

    @staticmethod
    def _extract_text(resp: httpx.Response) -> Optional[str]:
        try:
            data = resp.json()
        except ValueError:
            logger.error("Gemini response is not JSON (%d bytes)", len(resp.content))
            return None
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            logger.warning("Could not extract text from Gemini response: %.500s", resp.text)
            return None
        if not isinstance(text, str) or not text.strip():
            return None
        return text

    def attempt_timeout(self, attempt: int) -> float:
        return self.config.base_timeout + self.config.timeout_step * attempt

    async def _attempt(self, payload: Dict[str, Any], attempt: int) -> httpx.Response:
        deadline = self.attempt_timeout(attempt)
        try:
            resp = await asyncio.wait_for(self._post(payload), timeout=deadline)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise _Retryable(f"timeout after {deadline:g}s") from e
        except httpx.TransportError as e:
            raise _Retryable(f"connection error: {e}") from e
        if resp.status_code in (429, 503):
            raise _Retryable(f"HTTP {resp.status_code}")
        return resp

    async def _pause(self, delay: float, cancel: Optional[asyncio.Event]) -> bool:
        """Sleep ``delay`` seconds; returns True if cancelled meanwhile."""
        if cancel is None:
            await self._sleep(delay)
            return False
        if cancel.is_set():
            return True
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        return cancel.is_set()

    def backoff_delay(self, attempt: int) -> float:
        lo, hi = self.config.jitter
        return self.config.base_delay * (2 ** attempt) + self._rng.uniform(lo, hi)

    async def call(self, prompt: str, cancel: Optional[asyncio.Event] = None) -> CallOutcome:
        """Run the retry loop for one prompt."""
        payload = self.build_payload(prompt)
        attempts: List[RetryAttempt] = []
        last_cause = ""
        for attempt in range(max(1, self.config.max_retries)):
            if cancel is not None and cancel.is_set():
                logger.info("Upstream call cancelled before attempt %d", attempt + 1)
                return CallOutcome(text="", ok=False, attempts=attempts, cancelled=True)
            try:
                logger.info("Sending request to Gemini (attempt %d/%d)", attempt + 1, self.config.max_retries)
                resp = await self._attempt(payload, attempt)
            except _Retryable as e:
                last_cause = e.cause
                if attempt + 1 >= self.config.max_retries:
                    break
                delay = self.backoff_delay(attempt)
                attempts.append(RetryAttempt(attempt=attempt + 1, delay=delay, cause=e.cause))
                logger.warning("Gemini retry %d: %s (sleep %.2fs)", attempt + 1, e.cause, delay)
                if await self._pause(delay, cancel):
                    return CallOutcome(text="", ok=False, attempts=attempts, cancelled=True)
                continue

            status = resp.status_code
            if status != 200:
                logger.error("Gemini API error %d: %.500s", status, resp.text)
                return CallOutcome(
                    text=STATUS_MESSAGES.get(status, GENERIC_FAILURE), ok=False, attempts=attempts, status=status
                )
            text = self._extract_text(resp)
            if text is None:
                return CallOutcome(text=EXTRACTION_FAILURE, ok=False, attempts=attempts, status=status)
            logger.info("Gemini returned %d chars after %d attempt(s)", len(text), attempt + 1)
            return CallOutcome(text=text, ok=True, attempts=attempts, status=status)

        logger.error("Gemini retries exhausted after %d attempts (last: %s)", self.config.max_retries, last_cause)
        return CallOutcome(
            text=EXHAUSTED_TEMPLATE.format(email=self.config.profile.email), ok=False, attempts=attempts
        )

    def _finish(self, message: str, outcome: CallOutcome) -> str:
        """Cleanup plus contact enhancement; apologies pass through untouched."""
        if not outcome.ok:
            return outcome.text
        text = clean_links(outcome.text)
        if self.is_contact_query(message) and protocol.directive_kind(text) != "contact":
            # The contact block replaces whatever directive the model chose.
            p = self.config.profile
            text = protocol.encode_contact(
                protocol.strip_directives(text), protocol.build_contact_payload(p), p.email
            )
        return text

    # -------------------------
    # Public API
    # -------------------------
    async def complete(
        self,
        message: str,
        history: Sequence[ChatTurn],
        style: Optional[str],
        context: str = "",
        cancel: Optional[asyncio.Event] = None,
    ) -> ResponseEnvelope:
        prompt = self.build_prompt(message, history, style, context)
        outcome = await self.call(prompt, cancel)
        if not outcome.ok:
            return ResponseEnvelope(text=outcome.text)
        return protocol.decode(self._finish(message, outcome))

    async def stream(
        self,
        message: str,
        history: Sequence[ChatTurn],
        style: Optional[str],
        on_fragment: FragmentCallback,
        cancel: Optional[asyncio.Event] = None,
        context: str = "",
    ) -> str:
        """Deliver the reply in fixed-size fragments; returns what was delivered."""
        prompt = self.build_prompt(message, history, style, context)
        outcome = await self.call(prompt, cancel)
        if outcome.cancelled:
            return ""
        text = self._finish(message, outcome)

        sent: List[str] = []
        for i, fragment in enumerate(protocol.iter_fragments(text, self.config.fragment_size)):
            if cancel is not None and cancel.is_set():
                logger.info("Stream cancelled after %d fragments", len(sent))
                break
            if i and await self._pause(self.config.fragment_delay, cancel):
                logger.info("Stream cancelled after %d fragments", len(sent))
                break
            await on_fragment(fragment)
            sent.append(fragment)
        return "".join(sent)
