"""Runtime agent configuration store backed by the system_config table."""

import asyncio
import math
from typing import Any, Callable

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.exceptions import ConfigurationError
from app.crud import system_config as config_crud
from app.models.recommendation import RecommendationType
from app.schemas.agent import AgentConfiguration

logger = structlog.get_logger()

CONFIG_PREFIX = "agent."

KEY_AUTONOMOUS_MODE = "agent.autonomous_mode"
KEY_AI_MODE = "agent.ai_mode"
KEY_MAX_RISK = "agent.max_autonomous_risk_level"
KEY_APPROVAL_CEILING = "agent.approval_required_above_savings"
KEY_AUTO_EXECUTE_TYPES = "agent.auto_execute_types"

# field name -> (storage key, description)
_FIELDS: dict[str, tuple[str, str]] = {
    "autonomous_mode": (KEY_AUTONOMOUS_MODE, "Enable autonomous execution of low-risk recommendations"),
    "ai_mode": (KEY_AI_MODE, "Enrich cycles with AI-produced recommendations"),
    "max_autonomous_risk_level": (KEY_MAX_RISK, "Maximum risk level (0-10) eligible for autonomous execution"),
    "approval_required_above_savings": (
        KEY_APPROVAL_CEILING,
        "Projected annual savings (USD) above which approval is required",
    ),
    "auto_execute_types": (KEY_AUTO_EXECUTE_TYPES, "Recommendation types eligible for autonomous execution"),
}


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("true", "1", "yes"):
        return True
    if value in ("false", "0", "no"):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse_types(raw: str) -> tuple[RecommendationType, ...]:
    types = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            types.append(RecommendationType(item))
        except ValueError:
            logger.warning("agent_config.unknown_type_ignored", type=item)
    return tuple(types)


_PARSERS: dict[str, Callable[[str], Any]] = {
    "autonomous_mode": _parse_bool,
    "ai_mode": _parse_bool,
    "max_autonomous_risk_level": int,
    "approval_required_above_savings": float,
    "auto_execute_types": _parse_types,
}


def _serialize(field: str, value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if field == "auto_execute_types":
        return ",".join(RecommendationType(t).value for t in value)
    return str(value)


def defaults_from_settings(settings: Settings) -> AgentConfiguration:
    """Seed configuration from environment settings."""
    return AgentConfiguration(
        autonomous_mode=settings.AGENT_DEFAULT_AUTONOMOUS_MODE,
        ai_mode=settings.AGENT_DEFAULT_AI_MODE,
        max_autonomous_risk_level=settings.AGENT_DEFAULT_MAX_AUTONOMOUS_RISK_LEVEL,
        approval_required_above_savings=settings.AGENT_DEFAULT_APPROVAL_REQUIRED_ABOVE_SAVINGS,
        auto_execute_types=tuple(settings.AGENT_DEFAULT_AUTO_EXECUTE_TYPES),
    )


def _validate_changes(changes: dict[str, Any]) -> None:
    """Reject values the lax model coercion would otherwise accept."""
    unknown = set(changes) - set(_FIELDS)
    if unknown:
        raise ConfigurationError(
            "Unknown agent configuration field(s)", details=", ".join(sorted(unknown))
        )

    for field in ("autonomous_mode", "ai_mode"):
        if field in changes and not isinstance(changes[field], bool):
            raise ConfigurationError(
                f"{field} must be a boolean", details=f"got {type(changes[field]).__name__}"
            )

    if "max_autonomous_risk_level" in changes:
        value = changes["max_autonomous_risk_level"]
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError("max_autonomous_risk_level must be an integer")
        if not 0 <= value <= 10:
            raise ConfigurationError("max_autonomous_risk_level must be between 0 and 10", details=str(value))

    if "approval_required_above_savings" in changes:
        value = changes["approval_required_above_savings"]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ConfigurationError("approval_required_above_savings must be a finite number")
        if value < 0:
            raise ConfigurationError("approval_required_above_savings must not be negative", details=str(value))

    if "auto_execute_types" in changes:
        value = changes["auto_execute_types"]
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",") if item.strip()]
            changes["auto_execute_types"] = value
        invalid = []
        for item in value:
            try:
                RecommendationType(item)
            except ValueError:
                invalid.append(str(item))
        if invalid:
            raise ConfigurationError("Unknown recommendation type(s)", details=", ".join(invalid))


class AgentConfigStore:
    """
    Cached, explicitly invalidated agent configuration for one tenant.

    Readers get an immutable ``AgentConfiguration`` snapshot. ``update`` is the
    single writer: it validates, persists, and drops the cached snapshot so the
    next ``get`` reloads from storage. There is no time-based refresh.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        tenant_id: str,
        defaults: AgentConfiguration | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.tenant_id = tenant_id
        self.defaults = defaults or AgentConfiguration()
        self._cache: AgentConfiguration | None = None
        self._lock = asyncio.Lock()

    async def initialize_defaults(self, updated_by: str = "system") -> list[str]:
        """
        Write default values for any agent key missing from storage.

        Returns:
            Keys that were seeded
        """
        seeded = []
        async with self._lock:
            async with self.session_factory() as session, session.begin():
                existing = await config_crud.get_config_values(session, self.tenant_id, CONFIG_PREFIX)
                for field, (key, description) in _FIELDS.items():
                    if key in existing:
                        continue
                    await config_crud.set_config_value(
                        session,
                        self.tenant_id,
                        key,
                        _serialize(field, getattr(self.defaults, field)),
                        updated_by=updated_by,
                        description=description,
                    )
                    seeded.append(key)
            self._cache = None

        if seeded:
            logger.info("agent_config.defaults_seeded", tenant_id=self.tenant_id, keys=seeded)
        return seeded

    async def get(self) -> AgentConfiguration:
        """Return the cached snapshot, loading it from storage on first use."""
        cached = self._cache
        if cached is not None:
            return cached

        async with self._lock:
            if self._cache is None:
                self._cache = await self._load()
            return self._cache

    def invalidate(self) -> None:
        """Drop the cached snapshot; the next ``get`` reloads from storage."""
        self._cache = None
        logger.debug("agent_config.invalidated", tenant_id=self.tenant_id)

    async def update(self, updated_by: str, **changes: Any) -> AgentConfiguration:
        """
        Validate and persist configuration changes.

        Args:
            updated_by: Identity of the administrator making the change
            **changes: Field name -> new value

        Returns:
            The new configuration snapshot

        Raises:
            ConfigurationError: If a field is unknown or a value is invalid
        """
        if not changes:
            return await self.get()

        _validate_changes(changes)
        current = await self.get()
        try:
            updated = AgentConfiguration.model_validate({**current.model_dump(), **changes})
        except ValidationError as e:
            raise ConfigurationError("Invalid agent configuration", details=str(e)) from e

        async with self._lock:
            async with self.session_factory() as session, session.begin():
                for field in changes:
                    key, description = _FIELDS[field]
                    await config_crud.set_config_value(
                        session,
                        self.tenant_id,
                        key,
                        _serialize(field, getattr(updated, field)),
                        updated_by=updated_by,
                        description=description,
                    )
            self.invalidate()

        logger.info(
            "agent_config.updated",
            tenant_id=self.tenant_id,
            updated_by=updated_by,
            fields=sorted(changes),
        )
        return await self.get()

    async def _load(self) -> AgentConfiguration:
        async with self.session_factory() as session:
            stored = await config_crud.get_config_values(session, self.tenant_id, CONFIG_PREFIX)

        values = self.defaults.model_dump()
        for field, (key, _) in _FIELDS.items():
            raw = stored.get(key)
            if raw is None:
                continue
            try:
                values[field] = _PARSERS[field](raw)
            except ValueError:
                logger.warning(
                    "agent_config.invalid_stored_value",
                    tenant_id=self.tenant_id,
                    key=key,
                    value=raw,
                )

        try:
            config = AgentConfiguration.model_validate(values)
        except ValidationError as e:
            logger.warning("agent_config.invalid_stored_config", tenant_id=self.tenant_id, error=str(e))
            config = self.defaults

        logger.debug("agent_config.loaded", tenant_id=self.tenant_id, autonomous_mode=config.autonomous_mode)
        return config
