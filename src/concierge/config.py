"""
Configuration management for the phone concierge.

Settings come from the environment (and a local .env) into one frozen
`Config`; required keys and the ordering window are checked at startup.
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
import structlog

from src.concierge.models import BusinessHours

load_dotenv()

logger = structlog.get_logger(__name__)


DEFAULT_SYSTEM_INSTRUCTION = """
You are Paahi, the AI phone concierge for Jalwa Modern Indian Dining.

STRICT OPERATIONAL RULES:

1. ACCENTS AND NOISE:
- Be tolerant of diverse English accents. Use the menu to interpret unclear words.
- Never silently substitute an item. Offer candidates instead.
- Ignore tokens like [honk], [siren], [static]. If noise makes a command ambiguous, ask again.

2. SILENCE AND ABANDONED CALLS:
- If the caller is silent for 30 seconds, set ORDER_STATE.status = "abandoned",
  keep every captured field, say goodbye, output the ORDER_STATE JSON block and
  then exactly: ACTION: END_CALL.

3. FINALIZATION:
- Only finalize after the caller says "Yes" to a full summary readback.
- Call finalize_order (pickup/delivery) or finalize_reservation with every field.
- After a successful tool response, confirm, output the ORDER_STATE JSON block and
  then exactly: ACTION: END_CALL.
- If a tool response carries error OUT_OF_WINDOW, tell the caller the earliest
  available time from next_available.

4. FAILSAFE:
- Output ACTION: TRANSFER_TO_MANAGER if the caller asks for a manager or is irate.

ORDER_STATE SCHEMA:
{
  "intent": "pickup" | "delivery" | "reservation",
  "name": string | null,
  "phone": string | null,
  "address": string | null,
  "items": [{"name": string, "quantity": number}],
  "requested_time": string | null,
  "allergies": string | null,
  "status": "collecting" | "finalized" | "abandoned"
}
""".strip()


class ConfigError(Exception):
    """A required setting is missing or unusable."""
    pass


@dataclass(frozen=True)
class Config:
    """Process-wide settings, read once per process."""

    # Server
    public_host: str
    port: int = 5050
    log_level: str = "INFO"

    # Twilio (REST credentials are only needed to hang up calls)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""

    # Gemini Live
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash-native-audio-preview-12-2025"
    gemini_voice: str = "Zephyr"
    system_instruction: str = ""
    system_instruction_file: str = ""

    # Business
    agent_name: str = "Paahi"
    restaurant_id: str = "res_01"
    restaurant_name: str = "Jalwa: Modern Indian Dining"
    restaurant_timezone: str = "America/New_York"
    order_start_time: str = "11:00"
    order_end_time: str = "22:15"

    # Fulfillment
    pos_webhook_url: str = ""
    fulfillment_timeout_seconds: float = 45.0

    # Voice pipeline
    barge_in_rms_threshold: float = 0.025
    barge_in_required_frames: int = 3
    capture_frame_samples: int = 4096
    silence_timeout_seconds: float = 30.0
    filler_delay_ms: int = 250
    filler_fade_ms: int = 150
    filler_clips: tuple[str, ...] = field(default_factory=tuple)

    # Call teardown delays
    terminal_grace_seconds: float = 5.0
    handover_cleanup_seconds: float = 4.0
    end_call_cleanup_seconds: float = 6.0

    @property
    def ws_url(self) -> str:
        """Media Streams URL handed to Twilio in TwiML."""
        return f"wss://{self.public_host}/ws"

    @property
    def hangup_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)

    def business_hours(self) -> BusinessHours:
        return BusinessHours(
            restaurant_id=self.restaurant_id,
            timezone=self.restaurant_timezone,
            order_start_time=self.order_start_time,
            order_end_time=self.order_end_time,
        )

    def resolve_system_instruction(self) -> str:
        """
        Build the system instruction sent to the AI session.

        A file takes precedence over inline text; the ordering window is always
        appended so the assistant can quote it.
        """
        text = ""
        if self.system_instruction_file:
            path = Path(self.system_instruction_file)
            try:
                text = path.read_text(encoding="utf-8").strip()
            except OSError as e:
                logger.warning(
                    "System instruction file unreadable",
                    path=str(path),
                    error=str(e),
                )
        if not text:
            text = (self.system_instruction or "").strip() or DEFAULT_SYSTEM_INSTRUCTION
        return f"{text}\n\nWINDOW: {self.order_start_time}-{self.order_end_time}"

    def validate(self) -> None:
        """Raise ConfigError on missing keys or malformed values."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.gemini_api_key:
            missing.append("GEMINI_API_KEY")
        if not self.gemini_model:
            missing.append("GEMINI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        for key, value in (
            ("ORDER_START_TIME", self.order_start_time),
            ("ORDER_END_TIME", self.order_end_time),
        ):
            parts = value.split(":")
            if len(parts) != 2 or not all(p.isdigit() for p in parts):
                raise ConfigError(f"Invalid {key} '{value}'. Expected HH:MM.")

        if self.barge_in_required_frames < 1:
            raise ConfigError("BARGE_IN_REQUIRED_FRAMES must be at least 1.")

    def log_config(self) -> None:
        """Log the effective settings; secrets only as presence flags."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            gemini_model=self.gemini_model,
            gemini_voice=self.gemini_voice,
            restaurant_id=self.restaurant_id,
            order_window=f"{self.order_start_time}-{self.order_end_time}",
            restaurant_timezone=self.restaurant_timezone,
            barge_in_rms_threshold=self.barge_in_rms_threshold,
            barge_in_required_frames=self.barge_in_required_frames,
            silence_timeout_seconds=self.silence_timeout_seconds,
            fulfillment_timeout_seconds=self.fulfillment_timeout_seconds,
            filler_clips=len(self.filler_clips),
            pos_webhook_set=bool(self.pos_webhook_url),
            hangup_enabled=self.hangup_enabled,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            gemini_key_set=bool(self.gemini_api_key),
        )


def _get_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_list(key: str) -> tuple[str, ...]:
    raw = os.getenv(key, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@lru_cache(maxsize=1)
def get_config() -> Config:
    """Build the Config from the environment; cached for the life of the process."""
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 5050),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),

        # Gemini
        gemini_api_key=os.getenv("GEMINI_API_KEY", "") or os.getenv("API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash-native-audio-preview-12-2025"),
        gemini_voice=os.getenv("GEMINI_VOICE", "Zephyr"),
        system_instruction=os.getenv("SYSTEM_INSTRUCTION", ""),
        system_instruction_file=os.getenv("SYSTEM_INSTRUCTION_FILE", ""),

        # Business
        agent_name=os.getenv("AGENT_NAME", "Paahi"),
        restaurant_id=os.getenv("RESTAURANT_ID", "res_01"),
        restaurant_name=os.getenv("RESTAURANT_NAME", "Jalwa: Modern Indian Dining"),
        restaurant_timezone=os.getenv("RESTAURANT_TIMEZONE", "America/New_York"),
        order_start_time=os.getenv("ORDER_START_TIME", "11:00").strip(),
        order_end_time=os.getenv("ORDER_END_TIME", "22:15").strip(),

        # Fulfillment
        pos_webhook_url=os.getenv("POS_WEBHOOK_URL", "") or os.getenv("N8N_WEBHOOK_URL", ""),
        fulfillment_timeout_seconds=_get_float("FULFILLMENT_TIMEOUT_SECONDS", 45.0),

        # Voice pipeline
        barge_in_rms_threshold=_get_float("BARGE_IN_RMS_THRESHOLD", 0.025),
        barge_in_required_frames=_get_int("BARGE_IN_REQUIRED_FRAMES", 3),
        capture_frame_samples=_get_int("CAPTURE_FRAME_SAMPLES", 4096),
        silence_timeout_seconds=_get_float("SILENCE_TIMEOUT_SECONDS", 30.0),
        filler_delay_ms=_get_int("FILLER_DELAY_MS", 250),
        filler_fade_ms=_get_int("FILLER_FADE_MS", 150),
        filler_clips=_get_list("FILLER_CLIPS"),

        # Teardown
        terminal_grace_seconds=_get_float("TERMINAL_GRACE_SECONDS", 5.0),
        handover_cleanup_seconds=_get_float("HANDOVER_CLEANUP_SECONDS", 4.0),
        end_call_cleanup_seconds=_get_float("END_CALL_CLEANUP_SECONDS", 6.0),
    )

    return config


def init_config() -> Config:
    """Load, validate and log the config. Startup aborts on ConfigError."""
    config = get_config()
    config.validate()
    config.log_config()
    return config
