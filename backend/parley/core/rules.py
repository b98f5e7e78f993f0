"""Immutable rule tables for SLA sizing and entity-link thresholds.

Built once from settings at process start and handed explicitly to the SLA
monitor and the confidence linker; nothing reads them from module globals.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from parley.core.config import Settings

# Hours to wait for a reply, keyed by (deal stage, contact persona).
# None in either slot is a wildcard.
DEFAULT_SLA_TABLE: Mapping[tuple[str | None, str | None], float] = MappingProxyType({
    ("closing", "executive"): 24.0,
    ("closing", None): 12.0,
    ("negotiation", "executive"): 48.0,
    ("negotiation", None): 24.0,
    ("qualification", None): 36.0,
    ("prospecting", None): 48.0,
    (None, "executive"): 48.0,
    (None, "franchise_corp"): 72.0,
    (None, "it_technical"): 36.0,
    (None, "operations_lead"): 24.0,
    (None, "office_manager"): 24.0,
    (None, "owner_operator"): 24.0,
})


@dataclass(frozen=True)
class SlaPolicy:
    default_hours: float = 24.0
    warning_fraction: float = 0.75
    adaptive_min_responses: int = 3
    adaptive_multiplier: float = 1.5
    max_follow_up_attempts: int = 3
    table: Mapping[tuple[str | None, str | None], float] = field(default_factory=lambda: DEFAULT_SLA_TABLE)

    def hours_for(self, deal_stage: str | None, persona: str | None) -> float:
        """Most specific rule wins: (stage, persona), (stage, *), (*, persona), default."""
        stage = deal_stage.lower() if deal_stage else None
        role = persona.lower() if persona else None
        for key in ((stage, role), (stage, None), (None, role)):
            if key != (None, None) and key in self.table:
                return self.table[key]
        return self.default_hours


@dataclass(frozen=True)
class LinkPolicy:
    auto_threshold: int = 85
    suggest_threshold: int = 60
    recency_window_days: int = 7


def load_sla_policy(config: Settings) -> SlaPolicy:
    return SlaPolicy(
        default_hours=config.SLA_DEFAULT_HOURS,
        warning_fraction=config.SLA_WARNING_FRACTION,
        adaptive_min_responses=config.SLA_ADAPTIVE_MIN_RESPONSES,
        adaptive_multiplier=config.SLA_ADAPTIVE_MULTIPLIER,
        max_follow_up_attempts=config.MAX_FOLLOW_UP_ATTEMPTS,
    )


def load_link_policy(config: Settings) -> LinkPolicy:
    if not 0 < config.LINK_SUGGEST_THRESHOLD < config.LINK_AUTO_THRESHOLD <= 100:
        raise ValueError(
            "Link thresholds must satisfy 0 < suggest < auto <= 100, "
            f"got suggest={config.LINK_SUGGEST_THRESHOLD} auto={config.LINK_AUTO_THRESHOLD}"
        )
    return LinkPolicy(
        auto_threshold=config.LINK_AUTO_THRESHOLD,
        suggest_threshold=config.LINK_SUGGEST_THRESHOLD,
    )
