"""
Configuration management for the call bridge.

Loads environment variables and provides a strongly-typed configuration object.
Missing secrets degrade features instead of failing startup; only invalid
values raise ConfigError.
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Tuple

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

MODEL_MODES = ("completion", "realtime")
ETA_POLICIES = ("minimum", "lead_time")


class ConfigError(Exception):
    """Raised when configuration is invalid."""
    pass


@dataclass(frozen=True)
class BusinessProfile:
    """Facts the agent is allowed to state about the store."""

    name: str = "Crystal Nugs Dispensary"
    hours: str = "We're open Monday through Sunday, 9 AM to 9 PM."
    address: str = "2300 J Street, Sacramento"
    domain: str = "crystalnugs.com"
    emails: Tuple[str, ...] = ("info@crystalnugs.com",)
    id_policy: str = (
        "You must be 21 or older with a valid government-issued photo ID. "
        "Medical patients 18 and up need a valid recommendation."
    )
    delivery_area: str = (
        "We deliver throughout the greater Sacramento area. "
        "Minimums and fees depend on your ZIP code."
    )
    parking: str = "There's free street parking on J Street and a paid lot around the corner."
    payment: str = "We accept cash and debit cards. There's an ATM in the store."
    specials: str = "Our daily deals change every day. Check our website or ask a budtender in store."
    returns: str = (
        "Unopened, defective products can be exchanged within 7 days with your receipt. "
        "We can't accept returns on opened items."
    )
    vendors: str = (
        "For vendor and wholesale inquiries, please email our purchasing team "
        "and include your brand and license details."
    )
    events: str = (
        "We host vendor demo days and pop-ups. To book a demo or event, "
        "email us with your preferred dates."
    )

    @property
    def primary_email(self) -> str:
        return self.emails[0] if self.emails else ""


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = ""
    port: int = 8080
    log_level: str = "INFO"
    relay_path: str = "/ws/relay"
    relay_url_override: str = ""

    # Relay
    welcome_greeting: str = ""
    tts_provider: str = ""
    tts_voice: str = ""
    use_ssml: bool = False
    schema_negotiation: bool = False
    local_intents_enabled: bool = True

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    transfer_number: str = "+19165071099"
    transfer_voice: str = "Polly.Joanna-Neural"

    # Upstream model
    # - "completion": one chat completion request per unhandled utterance
    # - "realtime": one OpenAI Realtime socket per call, text modality
    model_mode: str = "completion"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.3
    openai_timeout_seconds: float = 5.0
    openai_realtime_model: str = "gpt-4o-realtime-preview"
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"
    realtime_idle_timeout_seconds: float = 20.0
    system_prompt: str = ""
    system_prompt_file: str = ""

    # Pricing
    pricing_source: str = "data/zip_rules.json"
    pricing_eta_policy: str = "minimum"
    default_last_call_minutes: int = 90
    admin_token: str = ""

    business: BusinessProfile = field(default_factory=BusinessProfile)

    @property
    def relay_url(self) -> str:
        """Get the ConversationRelay WebSocket URL handed to Twilio."""
        if self.relay_url_override:
            return self.relay_url_override
        return f"wss://{self.public_host}{self.relay_path}"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def greeting(self) -> str:
        if self.welcome_greeting:
            return self.welcome_greeting
        return (
            f"Thanks for calling {self.business.name}. How can I help you today? "
            "If you need a person at any time, just say transfer."
        )

    @property
    def model_enabled(self) -> bool:
        """Whether an upstream model can be used at all."""
        return bool(self.openai_api_key)

    @property
    def transfer_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.transfer_number)

    def validate(self) -> None:
        """Reject invalid values and warn about features that will be degraded."""
        if self.model_mode not in MODEL_MODES:
            raise ConfigError(
                f"Invalid MODEL_MODE '{self.model_mode}'. Expected one of: {', '.join(MODEL_MODES)}."
            )
        if self.pricing_eta_policy not in ETA_POLICIES:
            raise ConfigError(
                f"Invalid PRICING_ETA_POLICY '{self.pricing_eta_policy}'. "
                f"Expected one of: {', '.join(ETA_POLICIES)}."
            )

        if not self.public_host and not self.relay_url_override:
            logger.warning("PUBLIC_HOST not set; relay URL will not be reachable by Twilio")
        if not self.openai_api_key:
            logger.warning("OPENAI_API_KEY not set; answering from local intents only")
        if not self.transfer_enabled:
            logger.warning("Twilio credentials not set; live transfer disabled, fallback number will be spoken")
        if not self.admin_token:
            logger.warning("ADMIN_TOKEN not set; pricing reload endpoint is disabled")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            relay_url=self.relay_url,
            use_ssml=self.use_ssml,
            schema_negotiation=self.schema_negotiation,
            local_intents_enabled=self.local_intents_enabled,
            model_mode=self.model_mode,
            model=self.openai_realtime_model if self.model_mode == "realtime" else self.openai_model,
            pricing_source=self.pricing_source,
            pricing_eta_policy=self.pricing_eta_policy,
            business_name=self.business.name,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            openai_key_set=bool(self.openai_api_key),
            admin_token_set=bool(self.admin_token),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_list(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(key)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _load_business_profile() -> BusinessProfile:
    defaults = BusinessProfile()
    return BusinessProfile(
        name=os.getenv("BUSINESS_NAME", defaults.name),
        hours=os.getenv("BUSINESS_HOURS", defaults.hours),
        address=os.getenv("BUSINESS_ADDRESS", defaults.address),
        domain=os.getenv("BUSINESS_DOMAIN", defaults.domain).strip().lower(),
        emails=_get_list("BUSINESS_EMAILS", defaults.emails),
        id_policy=os.getenv("ID_POLICY", defaults.id_policy),
        delivery_area=os.getenv("DELIVERY_AREA", defaults.delivery_area),
        parking=os.getenv("PARKING_INFO", defaults.parking),
        payment=os.getenv("PAYMENT_INFO", defaults.payment),
        specials=os.getenv("SPECIALS_INFO", defaults.specials),
        returns=os.getenv("RETURN_POLICY", defaults.returns),
        vendors=os.getenv("VENDOR_INFO", defaults.vendors),
        events=os.getenv("EVENTS_INFO", defaults.events),
    )


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    relay_path = os.getenv("RELAY_PATH", "/ws/relay").strip() or "/ws/relay"
    if not relay_path.startswith("/"):
        relay_path = "/" + relay_path

    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", "").strip().rstrip("/"),
        port=_get_int("PORT", 8080),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        relay_path=relay_path,
        relay_url_override=os.getenv("RELAY_URL", "").strip(),

        # Relay
        welcome_greeting=os.getenv("WELCOME_GREETING", ""),
        tts_provider=os.getenv("TTS_PROVIDER", ""),
        tts_voice=os.getenv("TTS_VOICE", ""),
        use_ssml=_get_bool("USE_SSML", False),
        schema_negotiation=_get_bool("RELAY_SCHEMA_NEGOTIATION", False),
        local_intents_enabled=_get_bool("LOCAL_INTENTS_ENABLED", True),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        transfer_number=os.getenv("TRANSFER_NUMBER", "+19165071099"),
        transfer_voice=os.getenv("TRANSFER_VOICE", "Polly.Joanna-Neural"),

        # Upstream model
        model_mode=os.getenv("MODEL_MODE", "completion").strip().lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        openai_temperature=_get_float("OPENAI_TEMPERATURE", 0.3),
        openai_timeout_seconds=_get_float("OPENAI_TIMEOUT_SECONDS", 5.0),
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview"),
        openai_realtime_url=os.getenv("OPENAI_REALTIME_URL", "wss://api.openai.com/v1/realtime"),
        realtime_idle_timeout_seconds=_get_float("REALTIME_IDLE_TIMEOUT_SECONDS", 20.0),
        system_prompt=os.getenv("SYSTEM_PROMPT", ""),
        system_prompt_file=os.getenv("SYSTEM_PROMPT_FILE", ""),

        # Pricing
        pricing_source=os.getenv("PRICING_SOURCE", "data/zip_rules.json"),
        pricing_eta_policy=os.getenv("PRICING_ETA_POLICY", "minimum").strip().lower(),
        default_last_call_minutes=_get_int("DEFAULT_LAST_CALL_MINUTES", 90),
        admin_token=os.getenv("ADMIN_TOKEN", ""),

        business=_load_business_profile(),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
