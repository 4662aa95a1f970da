"""Core value types shared by the gateway, codec and stores."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

# -----------------------------
# Types & constants
# -----------------------------
Role = Literal["user", "assistant"]

# JSON value domain carried by a [data:...] token. dicts keep insertion order.
FormatData = Union[None, bool, int, float, str, List["FormatData"], Dict[str, "FormatData"]]

FORMAT_KINDS = ("text", "table", "contact", "pdf")
DEFAULT_FORMAT = "text"


@dataclass(frozen=True)
class ChatTurn:
    """One message in a conversation. Immutable once written."""
    role: Role
    text: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "text": self.text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatTurn":
        role = str(data.get("role", ""))
        if role not in ("user", "assistant"):
            raise ValueError(f"unknown role: {role!r}")
        return cls(role=role, text=str(data.get("text", "") or ""))  # type: ignore[arg-type]


@dataclass
class ResponseEnvelope:
    """Structured result of one model interaction."""
    text: str
    format: str = DEFAULT_FORMAT
    format_data: FormatData = None

    def to_payload(self) -> Dict[str, Any]:
        """Shape used on the wire (``formatData`` in camelCase)."""
        return {"response": self.text, "format": self.format, "formatData": self.format_data}


@dataclass
class RetryAttempt:
    attempt: int
    delay: float
    cause: str


@dataclass
class CallOutcome:
    """Result of the gateway's retry loop before codec processing.

    ``ok`` is True only when the upstream produced usable text; otherwise
    ``text`` holds a user-facing apology and must not be decoded.
    """
    text: str
    ok: bool
    attempts: List[RetryAttempt] = field(default_factory=list)
    cancelled: bool = False
    status: Optional[int] = None


@dataclass(frozen=True)
class OwnerProfile:
    """Who the assistant speaks for, and how to reach them."""
    name: str = "Portfolio Owner"
    position: str = "Software Engineer"
    email: str = "owner@example.com"
    github_url: str = "https://github.com/example"
    linkedin_url: str = "https://www.linkedin.com/in/example"
