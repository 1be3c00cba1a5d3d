"""Configuration management for the summary stream engine.

This module contains all configuration schemas, constants, and valve definitions:
- Valves: Global configuration (endpoints, deadlines, pacing, logging)
- EncryptedStr: Secret value encryption wrapper for the API key
- Wire constants (event prefix, status vocabulary)
- Error and fallback text templates
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from typing import Any, Literal, Optional, cast

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, Field, GetCoreSchemaHandler
from pydantic_core import core_schema

from .timing_logger import timed

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

EVENT_PREFIX = "data: "
EVENT_CONTENT_TYPE = "text/event-stream"
SESSION_HEADER = "X-Session-ID"

MIN_QUERY_LENGTH = 2

_DEFAULT_SUMMARY_STREAM_URL = "http://localhost:8000/chat/stream"
_DEFAULT_AI_SEARCH_BASE_URL = "http://localhost:8000"
_AI_SEARCH_PATH = "/api/ai-search"

# Status tokens observed on the wire. "formatting response" is reported to
# callers as "formatting".
STATUS_CONNECTING = "connecting"
STATUS_PROCESSING = "processing"
STATUS_SEARCHING = "searching"
STATUS_SUMMARIZING = "summarizing"
STATUS_STATUS = "status"
STATUS_FORMATTING = "formatting"
STATUS_FORMATTING_RESPONSE = "formatting response"
STATUS_GENERATING_VISUAL = "generating_visual"
STATUS_COMPLETE_IMAGE = "complete_image"
STATUS_CHUNK = "chunk"
STATUS_COMPLETE = "complete"
STATUS_ERROR = "error"

PROGRESS_STATUSES = frozenset(
    {
        STATUS_PROCESSING,
        STATUS_SEARCHING,
        STATUS_SUMMARIZING,
        STATUS_STATUS,
        STATUS_FORMATTING,
        STATUS_FORMATTING_RESPONSE,
        STATUS_GENERATING_VISUAL,
    }
)

ERROR_SHORT_SUMMARY = "An error occurred while processing your request. Please try again."
NO_DETAILS_TEXT = "No detailed information available."

DEFAULT_STREAM_ERROR_TEMPLATE = (
    "{{#if status}}\n"
    "Upstream responded with HTTP {status}.\n"
    "{{/if}}\n"
    "{{#if detail}}\n"
    "Error: {detail}\n"
    "{{/if}}\n"
    "{{#if received_chars}}\n"
    "Partial answer kept: {received_chars} characters received before the failure.\n"
    "{{/if}}\n"
    "{{#if request_id}}\n"
    "Request reference: {request_id}\n"
    "{{/if}}"
)

DEFAULT_FALLBACK_ANSWER_TEMPLATE = (
    'Based on available medical information, here\'s what I found about "{query}":\n\n'
    "This appears to be a medical query that would benefit from consultation with healthcare professionals. "
    "While I can provide general information, it's important to note that:\n\n"
    "1. **Professional Consultation**: Always consult with qualified healthcare providers for medical advice\n"
    "2. **Individual Variation**: Medical treatments and responses can vary significantly between individuals\n"
    "3. **Current Information**: Medical knowledge and guidelines are constantly evolving\n\n"
    'For the most accurate and up-to-date information about "{query}", I recommend:\n'
    "- Consulting with your healthcare provider\n"
    "- Checking official medical databases\n"
    "- Reviewing peer-reviewed medical literature\n\n"
    "Please note: This AI search service is currently being configured with advanced medical databases. "
    "In the meantime, you can search for official drug information using the EMA mode."
)

# -----------------------------------------------------------------------------
# EncryptedStr
# -----------------------------------------------------------------------------


class EncryptedStr(str):
    """String wrapper that automatically encrypts/decrypts valve values."""

    _ENCRYPTION_PREFIX = "encrypted:"

    @classmethod
    def _get_encryption_key(cls) -> Optional[bytes]:
        """Return the Fernet key derived from ``SUMMARY_STREAM_SECRET_KEY``."""
        secret = os.getenv("SUMMARY_STREAM_SECRET_KEY")
        if not secret:
            return None
        hashed_key = hashlib.sha256(secret.encode()).digest()
        return base64.urlsafe_b64encode(hashed_key)

    @classmethod
    def encrypt(cls, value: str) -> str:
        """Encrypt ``value`` when a secret is configured, else return it unchanged."""
        if not value or value.startswith(cls._ENCRYPTION_PREFIX):
            return value
        key = cls._get_encryption_key()
        if not key:
            return value
        encrypted = Fernet(key).encrypt(value.encode())
        return f"{cls._ENCRYPTION_PREFIX}{encrypted.decode()}"

    @classmethod
    def decrypt(cls, value: str) -> str:
        """Decrypt values produced by :meth:`encrypt`."""
        if not value or not value.startswith(cls._ENCRYPTION_PREFIX):
            return value
        key = cls._get_encryption_key()
        if not key:
            return value[len(cls._ENCRYPTION_PREFIX):]
        try:
            decrypted = Fernet(key).decrypt(value[len(cls._ENCRYPTION_PREFIX):].encode())
            return decrypted.decode()
        except InvalidToken:
            LOGGER.warning("Failed to decrypt value: invalid token or key mismatch")
            return value
        except (ValueError, UnicodeDecodeError) as e:
            LOGGER.warning("Failed to decrypt value: %s: %s", type(e).__name__, e)
            return value

    @classmethod
    def __get_pydantic_core_schema__(
        cls, _source_type: Any, _handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        """Expose a union schema so plain strings auto-wrap as EncryptedStr."""
        return core_schema.union_schema(
            [
                core_schema.is_instance_schema(cls),
                core_schema.chain_schema(
                    [
                        core_schema.str_schema(),
                        core_schema.no_info_plain_validator_function(
                            lambda value: cls(cls.encrypt(value) if value else value)
                        ),
                    ]
                ),
            ],
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda instance: str(instance)
            ),
        )


_ALLOWED_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _default_api_key() -> EncryptedStr:
    """Return the API key env default as EncryptedStr."""
    return EncryptedStr((os.getenv("SUMMARY_STREAM_API_KEY") or "").strip())


@timed
def _resolve_log_level_default() -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    """Normalize env-provided log level to the allowed literal set."""
    value = (os.getenv("SUMMARY_STREAM_LOG_LEVEL") or "INFO").strip().upper()
    if value not in _ALLOWED_LOG_LEVELS:
        value = "INFO"
    return cast(Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], value)


# -----------------------------------------------------------------------------
# Valves
# -----------------------------------------------------------------------------


class Valves(BaseModel):
    """Global configuration shared by the stream client and the producer routes."""

    # Endpoints & auth
    SUMMARY_STREAM_URL: str = Field(
        default_factory=lambda: (os.getenv("SUMMARY_STREAM_URL") or "").strip() or _DEFAULT_SUMMARY_STREAM_URL,
        description="Endpoint that answers a POSTed query with a text/event-stream of summary frames.",
    )
    AI_SEARCH_BASE_URL: str = Field(
        default_factory=lambda: (os.getenv("AI_API_URL") or "").strip() or _DEFAULT_AI_SEARCH_BASE_URL,
        description="Base URL of the upstream AI search backend consumed by the streaming routes.",
    )
    API_KEY: EncryptedStr = Field(
        default_factory=_default_api_key,
        description="Key sent as X-API-Key to the summary stream endpoint. Defaults to SUMMARY_STREAM_API_KEY.",
    )

    # Consumer connection and deadlines
    HTTP_CONNECT_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait for the TCP/TLS connection before the connect attempt fails.",
    )
    CONNECT_MAX_ATTEMPTS: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Connection attempts made before any byte is read. Reads are never retried.",
    )
    STREAM_DEADLINE_SECONDS: float = Field(
        default=60.0,
        gt=0,
        description="Overall deadline for one request against the real backend.",
    )
    FALLBACK_DEADLINE_SECONDS: float = Field(
        default=15.0,
        gt=0,
        description="Deadline applied when frames come from the local fallback simulator.",
    )
    ENABLE_CLIENT_FALLBACK: bool = Field(
        default=True,
        description=(
            "When the stream endpoint cannot be reached at all, decode a simulated answer "
            "instead of returning an errored response."
        ),
    )

    # Producer upstream
    UPSTREAM_SEARCH_TIMEOUT_SECONDS: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for the upstream AI search call made by the streaming route.",
    )
    SEARCH_PROXY_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for the upstream AI search call made by the search proxy route.",
    )
    BREAKER_THRESHOLD: int = Field(
        default=5,
        ge=1,
        description="Upstream failures within BREAKER_WINDOW_SECONDS before the producer skips straight to the fallback.",
    )
    BREAKER_WINDOW_SECONDS: float = Field(
        default=60.0,
        gt=0,
        description="Sliding window for counting upstream failures.",
    )

    # Pacing
    REAL_WORD_DELAY_SECONDS: float = Field(
        default=0.03,
        ge=0,
        description="Per-word delay when streaming a real upstream answer.",
    )
    FALLBACK_WORD_DELAY_SECONDS: float = Field(
        default=0.05,
        ge=0,
        description="Per-word delay when streaming the simulated fallback answer.",
    )
    REAL_STATUS_DELAY_SECONDS: float = Field(
        default=0.5,
        ge=0,
        description="Pause after the 'processing results' status on the real path.",
    )
    FALLBACK_STATUS_DELAY_SECONDS: float = Field(
        default=1.0,
        ge=0,
        description="Pause after the 'searching databases' status on the fallback path.",
    )

    # Request defaults
    DEFAULT_USER_ID: str = Field(default="anonymous_user", description="User id sent when the caller supplies none.")
    DEFAULT_MODE: str = Field(default="study", description="Summary mode sent when the caller supplies none.")
    DEFAULT_COUNTRY: str = Field(default="US", description="Country sent when the caller supplies none.")
    DEFAULT_LANGUAGE: str = Field(default="English", description="Answer language requested from the backend.")

    # HTTP surface
    CORS_ALLOW_ORIGINS: str = Field(
        default="*",
        description="Comma-separated origins allowed to POST to the streaming routes.",
    )

    # Observability
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default_factory=_resolve_log_level_default,
        description="Minimum level for per-request console output. Defaults to SUMMARY_STREAM_LOG_LEVEL.",
    )
    SESSION_LOG_MAX_LINES: int = Field(
        default=2000,
        ge=100,
        le=200000,
        description="Structured log events retained in memory per request.",
    )
    ENABLE_TIMING_LOG: bool = Field(
        default=False,
        description="Write @timed entrance/exit events for each request to TIMING_LOG_FILE.",
    )
    TIMING_LOG_FILE: str = Field(
        default="logs/timing.jsonl",
        description="JSONL file receiving timing events when ENABLE_TIMING_LOG is True.",
    )
    STREAM_ERROR_TEMPLATE: str = Field(
        default=DEFAULT_STREAM_ERROR_TEMPLATE,
        description="Template for the diagnostic carried by errored responses. Supports {{#if var}} blocks.",
    )
    FALLBACK_ANSWER_TEMPLATE: str = Field(
        default=DEFAULT_FALLBACK_ANSWER_TEMPLATE,
        description="Canned answer streamed by the fallback simulator; {query} is substituted.",
    )

    @property
    def ai_search_url(self) -> str:
        return self.AI_SEARCH_BASE_URL.rstrip("/") + _AI_SEARCH_PATH

    @property
    def cors_origins(self) -> list[str]:
        origins = [item.strip() for item in (self.CORS_ALLOW_ORIGINS or "").split(",")]
        return [item for item in origins if item] or ["*"]
