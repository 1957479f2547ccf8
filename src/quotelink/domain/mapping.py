from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from quotelink.domain import rules
from quotelink.domain.stages import CLOSED_STAGES, DealStage, QuoteType, RevisionType


def _default_revision_types() -> dict[str, DealStage]:
    return {
        RevisionType.WALKTHROUGH_PROPOSAL.value: DealStage.PROSPECTING,
        RevisionType.FINAL_QUOTE.value: DealStage.PROPOSAL,
    }


def _default_quote_types() -> dict[str, DealStage]:
    return {QuoteType.WALKTHROUGH_REQUIRED.value: DealStage.PROSPECTING}


PRECEDENCE_CHOICES = ("quote_type", "revision_type")


@dataclass(frozen=True)
class StageMapping:
    revision_types: Mapping[str, DealStage] = field(default_factory=_default_revision_types)
    quote_types: Mapping[str, DealStage] = field(default_factory=_default_quote_types)
    default: DealStage = DealStage.QUALIFICATION
    precedence: str = "quote_type"

    def stage_for(self, revision_type: str | None, quote_type: str | None) -> DealStage:
        lookups = [(quote_type, self.quote_types), (revision_type, self.revision_types)]
        if self.precedence == "revision_type":
            lookups.reverse()
        for name, table in lookups:
            if name and name in table:
                return table[name]
        return self.default


DEFAULT_STAGE_MAPPING = StageMapping()


def map_revision_to_stage(
    revision_type: str | None,
    quote_type: str | None,
    mapping: StageMapping = DEFAULT_STAGE_MAPPING,
) -> DealStage:
    return mapping.stage_for(_value(revision_type), _value(quote_type))


def stage_mapping_from_dict(data: Mapping[str, Any] | None) -> StageMapping:
    if not data:
        return DEFAULT_STAGE_MAPPING
    # Closing is reserved for accepted and declined events.
    allowed = [stage.value for stage in DealStage if stage not in CLOSED_STAGES]
    revision_types = dict(_default_revision_types())
    quote_types = dict(_default_quote_types())
    for target, key in ((revision_types, "revision_types"), (quote_types, "quote_types")):
        overrides = data.get(key) or {}
        if not isinstance(overrides, Mapping):
            raise rules.ValidationError(f"stage_mapping.{key} must be a mapping.")
        for name, stage in overrides.items():
            rules.validate_enum(stage, allowed, f"stage_mapping.{key}.{name}")
            target[str(name)] = DealStage(stage)
    default = data.get("default") or DealStage.QUALIFICATION.value
    rules.validate_enum(default, allowed, "stage_mapping.default")
    precedence = data.get("precedence") or "quote_type"
    rules.validate_enum(precedence, PRECEDENCE_CHOICES, "stage_mapping.precedence")
    return StageMapping(
        revision_types=revision_types,
        quote_types=quote_types,
        default=DealStage(default),
        precedence=precedence,
    )


def _value(raw: Any) -> str | None:
    if raw is None:
        return None
    return raw.value if hasattr(raw, "value") else str(raw)
