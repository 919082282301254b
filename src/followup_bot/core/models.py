"""
Pydantic models for the follow-up bot.

Contact records, scheduled reminders, deferred start jobs, send intents and the
runtime configuration tree. Everything that is persisted round-trips through
``model_dump(by_alias=True, mode="json")`` so stored files use camelCase keys
(``stepIndex``, ``nextEligibleAt``) while Python code uses snake_case.
"""
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, get_origin

import pytz
from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from followup_bot.humanizer.timing import JitterMode


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CamelModel(BaseModel):
    """Base model: camelCase aliases on disk, snake_case in code."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        use_enum_values = True
        validate_default = True


class ConfigModel(CamelModel):
    """Configuration section: unknown keys are rejected instead of ignored."""

    class Config:
        extra = "forbid"


class ContactStage(str, Enum):
    """Coarse pipeline status of a contact."""
    NEW = "new"  # Known, nothing sent yet
    NEGOTIATING = "negotiating"  # At least one follow-up step delivered
    QUOTED = "quoted"  # A price quote was sent
    SCHEDULED_APPOINTMENT = "scheduled_appointment"  # Agenda reminders pending
    CLOSED = "closed"  # Became a client
    LOST = "lost"  # Removed from the funnel or blocked
    DEFERRED_START = "deferred_start"  # Waiting for a one-shot start message


class IntentKind(str, Enum):
    """Which scheduling stream produced a send intent."""
    FOLLOW_UP = "follow_up"
    AGENDA = "agenda"
    DEFERRED_START = "deferred_start"
    MANUAL = "manual"


AUTOMATIC_KINDS = frozenset(
    {IntentKind.FOLLOW_UP.value, IntentKind.AGENDA.value, IntentKind.DEFERRED_START.value}
)


class ConnectionState(str, Enum):
    """Channel session state as reported by the messaging collaborator."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ContactRecord(CamelModel):
    """Engagement state for one contact, keyed by its channel handle."""
    handle: str
    phone_key: str = ""
    stage: ContactStage = ContactStage.NEW
    step_index: int = Field(default=0, ge=0)
    next_eligible_at: Optional[datetime] = None
    paused_until: Optional[datetime] = None
    manual_off_until: Optional[datetime] = None
    blocked: bool = False
    blocked_reason: Optional[str] = None
    is_client: bool = False
    dedupe: dict[str, datetime] = Field(default_factory=dict)  # step key -> last sent
    detected_year: Optional[int] = None
    detected_model: Optional[str] = None

    # History fields, kept when the contact is removed from the funnel
    name: str = ""
    notes: str = ""
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_inbound_at: Optional[datetime] = None
    last_outbound_at: Optional[datetime] = None

    @field_validator("handle")
    @classmethod
    def validate_handle(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Contact handle cannot be empty")
        return v

    def is_paused(self, now: datetime) -> bool:
        """True while the soft pause window is still open."""
        return self.paused_until is not None and now < self.paused_until

    def is_manual_off(self, now: datetime) -> bool:
        """True while the seller has switched the bot off for this contact."""
        return self.manual_off_until is not None and now < self.manual_off_until

    def is_on_hold(self, now: datetime) -> bool:
        """Paused or manually switched off right now."""
        return self.is_paused(now) or self.is_manual_off(now)

    def sent_within(self, step_key: str, now: datetime, window: timedelta) -> bool:
        """Whether ``step_key`` was delivered less than ``window`` ago."""
        last = self.dedupe.get(step_key)
        return last is not None and now - last < window

    def touch(self, now: datetime) -> None:
        self.updated_at = now


class AgendaEntry(CamelModel):
    """One reminder in a sequence anchored to an appointment instant."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    handle: str
    offset_key: str  # message key, e.g. "agenda0"
    fires_at: datetime
    appointment_at: datetime
    template_data: dict[str, str] = Field(default_factory=dict)
    sent: bool = False
    sent_at: Optional[datetime] = None


class DeferredStartJob(CamelModel):
    """A one-shot "send this text at this instant" job."""
    handle: str
    fires_at: datetime
    text: str = ""
    created_at: datetime = Field(default_factory=utc_now)


class SendIntent(CamelModel):
    """A queued request to deliver ``text`` to ``handle``."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    handle: str
    text: str
    kind: IntentKind
    meta: dict[str, str] = Field(default_factory=dict)
    attempts: int = 0  # failed send attempts so far
    enqueued_at: datetime = Field(default_factory=utc_now)

    @property
    def is_automatic(self) -> bool:
        return self.kind in AUTOMATIC_KINDS


class InboundMessage(CamelModel):
    """Message event emitted by the channel collaborator."""
    handle: str
    text: str
    timestamp: datetime = Field(default_factory=utc_now)
    from_self: bool = False


class SendOutcome(CamelModel):
    """Result of a manual send request."""
    ok: bool
    error: Optional[str] = None


class BotStatus(CamelModel):
    """Operator-facing status snapshot."""
    connected: bool = False
    enabled: bool = True
    queue_size: int = 0
    last_error: Optional[str] = None
    last_update: datetime = Field(default_factory=utc_now)


# =============================================================================
# CONFIGURATION
# =============================================================================

class WindowConfig(ConfigModel):
    """Allowed sending hours in the business time zone (end hour exclusive)."""
    start_hour: int = Field(default=9, ge=0, le=23)
    end_hour: int = Field(default=22, ge=1, le=24)
    timezone: str = "America/Sao_Paulo"

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {v!r}")
        return v


class LimitsConfig(ConfigModel):
    """Send ceilings per bucket."""
    per_minute: int = Field(default=8, ge=0)
    per_hour: int = Field(default=120, ge=0)
    per_day: int = Field(default=400, ge=0)
    per_contact_per_day: int = Field(default=2, ge=0)


class RulesConfig(ConfigModel):
    """Eligibility rules for the automatic funnel."""
    min_year_follow_up: Optional[int] = 2022  # None disables the rule
    client_loop_enabled: bool = True
    restart_on_inbound: bool = False


class CommandsConfig(ConfigModel):
    """Texts the seller can type to a contact to steer the bot."""
    stop: str = "STOP"
    pause: str = "PAUSE"
    client: str = "CLIENTE"
    remove: str = "REMOVE"
    bot_off: str = "BOT OFF"


class TimingConfig(ConfigModel):
    """Delays, windows and durations used by the engines and the queue."""
    step_delays_hours: list[float] = Field(default_factory=lambda: [0, 24, 48, 72])
    fallback_delay_hours: float = Field(default=24, ge=0)
    client_loop_interval_days: float = Field(default=30, gt=0)
    dedup_window_minutes: float = Field(default=10, ge=0)
    jitter_min_ms: int = Field(default=1200, ge=0)
    jitter_max_ms: int = Field(default=2800, ge=0)
    jitter_mode: JitterMode = JitterMode.UNIFORM
    agenda_offsets_days: list[float] = Field(default_factory=lambda: [7, 3, 1])
    agenda_retention_days: float = Field(default=7, ge=0)
    send_timeout_seconds: float = Field(default=30, gt=0)
    pause_hours: float = Field(default=72, ge=0)
    manual_off_hours: float = Field(default=24, ge=0)

    @field_validator("jitter_max_ms")
    @classmethod
    def validate_jitter_range(cls, v: int, info) -> int:
        """Ensure jitter_max_ms is not below jitter_min_ms."""
        low = info.data.get("jitter_min_ms")
        if low is not None and v < low:
            raise ValueError(f"jitterMaxMs ({v}) must be >= jitterMinMs ({low})")
        return v

    @field_validator("step_delays_hours", "agenda_offsets_days")
    @classmethod
    def validate_non_negative(cls, v: list[float]) -> list[float]:
        if any(x < 0 for x in v):
            raise ValueError("Delays and offsets must be non-negative")
        return v

    def step_delay(self, new_index: int) -> timedelta:
        """Delay before the step at ``new_index`` becomes eligible."""
        if 0 <= new_index < len(self.step_delays_hours):
            return timedelta(hours=self.step_delays_hours[new_index])
        return timedelta(hours=self.fallback_delay_hours)

    @property
    def dedup_window(self) -> timedelta:
        return timedelta(minutes=self.dedup_window_minutes)

    @property
    def client_loop_interval(self) -> timedelta:
        return timedelta(days=self.client_loop_interval_days)


class MessagesConfig(ConfigModel):
    """Message texts. Step ``i`` uses key ``step{i}``, reminder ``i`` uses ``agenda{i}``."""
    steps: list[str] = Field(default_factory=lambda: [
        "Oi! Tudo certo? Você ainda tem interesse em proteger os vidros do seu carro?",
        "Passando para saber se posso te ajudar com alguma dúvida 😊",
        "Se quiser, posso te enviar uma cotação sem compromisso 👍",
        "Última mensagem por aqui 😊 Se ainda tiver interesse, é só me chamar.",
    ])
    extra: str = ""
    post_sale: str = "Oi! Tudo bem? Passando para saber como está a sua experiência com a gente 😊"
    agenda: list[str] = Field(default_factory=lambda: [
        "Olá! Faltam 7 dias para o seu agendamento ({{DATA}} às {{HORA}}).",
        "Olá! Faltam 3 dias para o seu agendamento ({{DATA}} às {{HORA}}).",
        "Olá! Seu agendamento é amanhã às {{HORA}}. Qualquer dúvida me chama 😊",
    ])
    confirm_template: str = (
        "✅ *Agendamento confirmado*\n"
        "📅 Data: {{DATA}}\n"
        "🕒 Hora: {{HORA}}\n"
        "🚗 Veículo: {{VEICULO}}\n"
        "🛡️ Produto: {{PRODUTO}}\n"
        "💰 Valor: {{VALOR}}\n"
        "💳 Pagamento: {{PAGAMENTO}}"
    )

    def text_for(self, key: str) -> str:
        """Resolve a message key to its text; unknown keys resolve to ''."""
        for prefix, texts in (("step", self.steps), ("agenda", self.agenda)):
            if key.startswith(prefix) and key[len(prefix):].isdigit():
                idx = int(key[len(prefix):])
                return texts[idx] if idx < len(texts) else ""
        if key == "extra":
            return self.extra
        if key == "post_sale":
            return self.post_sale
        if key == "confirm_template":
            return self.confirm_template
        return ""


class QuoteTemplate(ConfigModel):
    """A named price-quote message."""
    title: str
    template: str


def _default_quotes() -> dict[str, QuoteTemplate]:
    body = (
        "🛡️ *{title}*\n"
        "🚗 Veículo: {{{{VEICULO}}}} {{{{ANO}}}}\n"
        "💰 Valor: {{{{VALOR}}}}\n"
        "💳 Pagamento: {{{{PAGAMENTO}}}}"
    )
    return {
        "standard": QuoteTemplate(title="Cotação Standard", template=body.format(title="Cotação Standard")),
        "plus": QuoteTemplate(title="Cotação Plus", template=body.format(title="Cotação Plus")),
        "defender": QuoteTemplate(title="Cotação Defender", template=body.format(title="Cotação Defender")),
    }


class BotConfig(ConfigModel):
    """Full runtime configuration of one bot instance."""
    window: WindowConfig = Field(default_factory=WindowConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    rules: RulesConfig = Field(default_factory=RulesConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    messages: MessagesConfig = Field(default_factory=MessagesConfig)
    quotes: dict[str, QuoteTemplate] = Field(default_factory=_default_quotes)
    default_quote: str = "plus"


def wire_patch(model_cls: type[BaseModel], patch: dict) -> dict:
    """Rewrite a partial update so every known field uses its camelCase alias.

    Accepts snake_case or camelCase keys, recursing into nested models.
    Unknown keys are passed through untouched: configuration sections forbid
    extra fields, so validation rejects them, and dict-valued fields such as
    ``quotes`` keep their own keys.
    """
    by_alias = {f.alias: (name, f) for name, f in model_cls.model_fields.items() if f.alias}
    out = {}
    for key, value in patch.items():
        field = model_cls.model_fields.get(key)
        if field is None and key in by_alias:
            field = by_alias[key][1]
        if field is None:
            out[key] = value
            continue
        sub = field.annotation
        if isinstance(value, dict) and get_origin(sub) is None and isinstance(sub, type) and issubclass(sub, BaseModel):
            value = wire_patch(sub, value)
        out[field.alias or key] = value
    return out


def deep_merge(base: dict, patch: dict) -> dict:
    """Recursively merge ``patch`` into a copy of ``base``.

    Nested dicts are merged key by key; any other value (including lists)
    replaces the base value outright.
    """
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
