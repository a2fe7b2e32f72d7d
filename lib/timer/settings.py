"""
lib/timer/settings.py

Timer settings model and field-level validation.

Provides:
- Settings dataclass holding the per-tier extension policy and the
  cosmetic display parameters broadcast to overlays
- FieldRule table describing how each wire field is validated
- Partial updates that apply valid fields and ignore the rest
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import SettingsValidationError


logger = logging.getLogger(__name__)


# =============================================================================
# Field Rules
# =============================================================================

NUMBER = "number"
STRING = "string"

# Rule groups decide which extra broadcasts an update triggers
GROUP_POLICY = "policy"
GROUP_SIZE = "size"
GROUP_STYLE = "style"


@dataclass(frozen=True)
class FieldRule:
    """
    Validation rule for one settings field.

    Attributes:
        key: Wire (JSON) name of the field.
        attr: Attribute name on Settings.
        kind: NUMBER or STRING.
        minimum: Lowest accepted value for numbers.
        maximum: Highest accepted value for numbers (None for unbounded).
        group: Which broadcast group the field belongs to.
    """

    key: str
    attr: str
    kind: str
    group: str
    minimum: float = 0.0
    maximum: Optional[float] = None

    def accepts(self, value: Any) -> bool:
        """Check whether value is acceptable for this field."""
        if self.kind == STRING:
            return isinstance(value, str)

        # bool is an int subclass but never a valid amount
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not math.isfinite(value):
            return False
        if value < self.minimum:
            return False
        if self.maximum is not None and value > self.maximum:
            return False
        return True


SETTINGS_FIELDS: Tuple[FieldRule, ...] = (
    FieldRule("regularSubTime", "regular_sub_time", NUMBER, GROUP_POLICY),
    FieldRule("tier2SubTime", "tier2_sub_time", NUMBER, GROUP_POLICY),
    FieldRule("tier3SubTime", "tier3_sub_time", NUMBER, GROUP_POLICY),
    FieldRule("primeSubTime", "prime_sub_time", NUMBER, GROUP_POLICY),
    FieldRule("giftSubTime", "gift_sub_time", NUMBER, GROUP_POLICY),
    FieldRule("timerSize", "timer_size", NUMBER, GROUP_SIZE),
    FieldRule("timerColor", "timer_color", STRING, GROUP_STYLE),
    FieldRule("timerFont", "timer_font", STRING, GROUP_STYLE),
    FieldRule("timerShadowColor", "timer_shadow_color", STRING, GROUP_STYLE),
    FieldRule("timerShadowBlur", "timer_shadow_blur", NUMBER, GROUP_STYLE),
    FieldRule("timerShadowOpacity", "timer_shadow_opacity", NUMBER, GROUP_STYLE,
              maximum=1.0),
    FieldRule("timerShadowX", "timer_shadow_x", NUMBER, GROUP_STYLE),
    FieldRule("timerShadowY", "timer_shadow_y", NUMBER, GROUP_STYLE),
)

RULES_BY_KEY: Dict[str, FieldRule] = {rule.key: rule for rule in SETTINGS_FIELDS}

STYLE_KEYS: List[str] = [
    rule.key for rule in SETTINGS_FIELDS if rule.group == GROUP_STYLE
]


# =============================================================================
# Settings Model
# =============================================================================

@dataclass
class Settings:
    """
    Time-extension policy and display parameters.

    Tier amounts are seconds granted per subscription unit (one sub, or
    one gifted sub). Cosmetic fields have no effect on the countdown; they
    exist only to be broadcast to overlays.
    """

    regular_sub_time: float = 300
    tier2_sub_time: float = 600
    tier3_sub_time: float = 900
    prime_sub_time: float = 300
    gift_sub_time: float = 300
    timer_size: float = 72
    timer_color: str = "#ffffff"
    timer_font: str = "Arial"
    timer_shadow_color: str = "#000000"
    timer_shadow_blur: float = 4
    timer_shadow_opacity: float = 0.5
    timer_shadow_x: float = 2
    timer_shadow_y: float = 2

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert settings to their wire (camelCase) form.

        Returns:
            Dictionary suitable for JSON broadcasts and snapshots.
        """
        return {rule.key: getattr(self, rule.attr) for rule in SETTINGS_FIELDS}

    def style(self) -> Dict[str, Any]:
        """Get the style subset sent with timer_style_update."""
        return {key: getattr(self, RULES_BY_KEY[key].attr) for key in STYLE_KEYS}

    def copy(self) -> "Settings":
        return replace(self)

    def merge(self, partial: Mapping[str, Any]) -> Tuple["Settings", List[str]]:
        """
        Apply a partial update field by field.

        Invalid values and unknown keys are skipped; the update as a whole
        never fails.

        Args:
            partial: Mapping of wire keys to candidate values.

        Returns:
            Tuple of (new Settings, list of wire keys that were applied).
        """
        updated = self.copy()
        applied = []
        rejected = []

        for key, value in partial.items():
            rule = RULES_BY_KEY.get(key)
            if rule is None:
                continue
            if not rule.accepts(value):
                rejected.append(key)
                continue
            setattr(updated, rule.attr, value)
            applied.append(key)

        if rejected:
            logger.warning(f"Ignored invalid settings fields: {', '.join(rejected)}")

        return updated, applied

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "Settings":
        """
        Create Settings from a wire dictionary (e.g., a loaded snapshot).

        Missing or invalid fields keep their defaults.

        Args:
            data: Dictionary with camelCase fields, or None.

        Returns:
            Settings instance.
        """
        if not data or not isinstance(data, Mapping):
            return cls()
        settings, _ = cls().merge(data)
        return settings

    @classmethod
    def from_config(cls, data: Optional[Mapping[str, Any]]) -> "Settings":
        """
        Create Settings from the configuration file's settings section.

        Unlike from_dict, a bad value here is an operator mistake and is
        reported instead of ignored.

        Raises:
            SettingsValidationError: If a known field has an invalid value.
        """
        if not data:
            return cls()
        if not isinstance(data, Mapping):
            raise SettingsValidationError("settings section must be a mapping")

        for key, value in data.items():
            rule = RULES_BY_KEY.get(key)
            if rule is not None and not rule.accepts(value):
                raise SettingsValidationError(f"Invalid value for {key}: {value!r}")

        settings, _ = cls().merge(data)
        return settings

