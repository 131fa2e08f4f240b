"""campaign_task.py

Domain models for one campaign-creation attempt.

- BusinessProfile / Strategy: pydantic models (validated collaborator output)
- CampaignTask / CreativeVariant / ExternalIds: plain records loaded from the task store
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class TaskState(str, Enum):
    PENDING = "PENDING"
    GATHERING_INFO = "GATHERING_INFO"
    GENERATING = "GENERATING"
    REVIEW = "REVIEW"
    CREATING = "CREATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED})
NON_TERMINAL_STATES = frozenset(s for s in TaskState if s not in TERMINAL_STATES)


class ConversionMethod(str, Enum):
    LEAD_FORM = "LEAD_FORM"
    WEBSITE = "WEBSITE"


class CreativeSlot(str, Enum):
    HEADLINE = "HEADLINE"
    PRIMARY_TEXT = "PRIMARY_TEXT"
    DESCRIPTION = "DESCRIPTION"


# Meta ad format limits (characters).
COPY_LIMITS: Dict[CreativeSlot, int] = {
    CreativeSlot.HEADLINE: 40,
    CreativeSlot.PRIMARY_TEXT: 125,
    CreativeSlot.DESCRIPTION: 30,
}

ELLIPSIS = "..."


def truncate_copy(text: str, limit: int) -> str:
    """Cut text to `limit` chars, marking the cut with an ellipsis."""
    text = text or ""
    if len(text) <= limit:
        return text
    return text[: limit - len(ELLIPSIS)] + ELLIPSIS


# Objective keys accepted from the strategy generator -> (Meta objective, optimization goal).
OBJECTIVES: Dict[str, tuple[str, str]] = {
    "LEADS": ("OUTCOME_LEADS", "LEAD_GENERATION"),
    "WHATSAPP": ("OUTCOME_LEADS", "CONVERSATIONS"),
    "SALES": ("OUTCOME_SALES", "OFFSITE_CONVERSIONS"),
    "TRAFFIC": ("OUTCOME_TRAFFIC", "LINK_CLICKS"),
}


def resolve_objective(objective: str, conversion_method: ConversionMethod) -> tuple[str, str]:
    """Map a strategy objective to (Meta campaign objective, ad set optimization goal).

    Accepts the short keys above or a raw Meta OUTCOME_* value. Instant forms
    only run under OUTCOME_LEADS / LEAD_GENERATION.
    """
    if conversion_method == ConversionMethod.LEAD_FORM:
        return "OUTCOME_LEADS", "LEAD_GENERATION"

    key = (objective or "").strip().upper()
    if key in OBJECTIVES:
        meta_objective, goal = OBJECTIVES[key]
    elif key.startswith("OUTCOME_"):
        meta_objective, goal = key, "LINK_CLICKS"
    else:
        meta_objective, goal = "OUTCOME_TRAFFIC", "LINK_CLICKS"

    # Website ads have no form to optimize for.
    if goal == "LEAD_GENERATION":
        goal = "LINK_CLICKS"
    return meta_objective, goal


# -----------------------------
# Collaborator payloads
# -----------------------------

class BusinessProfile(BaseModel):
    brand_name: str = ""
    description: str = ""
    products: List[str] = Field(default_factory=list)
    usps: List[str] = Field(default_factory=list)
    website: Optional[str] = None
    source: str = "manual"

    @field_validator("products", "usps", mode="before")
    @classmethod
    def _coerce_to_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(x).strip() for x in v if str(x).strip()]

    @staticmethod
    def from_manual_text(text: str) -> "BusinessProfile":
        """Fallback profile when no analyzer could process the text."""
        text = (text or "").strip()
        return BusinessProfile(description=text, products=[text[:100]] if text else [], source="manual")


class Budget(BaseModel):
    daily_amount: float = Field(gt=0)
    currency: str = "INR"


class Targeting(BaseModel):
    age_min: int = 18
    age_max: int = 65
    interest_keywords: List[str] = Field(default_factory=list)
    location: Optional[str] = None

    @model_validator(mode="after")
    def _check_ages(self) -> "Targeting":
        if self.age_max < self.age_min:
            raise ValueError("targeting.age_max must be >= targeting.age_min")
        return self


class AdCopy(BaseModel):
    headlines: List[str]
    primary_texts: List[str]
    descriptions: List[str]
    cta: str = "LEARN_MORE"

    @field_validator("headlines", "primary_texts", "descriptions", mode="before")
    @classmethod
    def _coerce_to_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(x) for x in v if str(x).strip()]

    @model_validator(mode="after")
    def _require_variants(self) -> "AdCopy":
        for name in ("headlines", "primary_texts", "descriptions"):
            if not getattr(self, name):
                raise ValueError(f"ad_copy.{name} must contain at least one variant")
        return self

    def variants(self) -> Dict[CreativeSlot, List[str]]:
        return {
            CreativeSlot.HEADLINE: list(self.headlines),
            CreativeSlot.PRIMARY_TEXT: list(self.primary_texts),
            CreativeSlot.DESCRIPTION: list(self.descriptions),
        }


class Strategy(BaseModel):
    objective: str
    budget: Budget
    targeting: Targeting = Field(default_factory=Targeting)
    ad_copy: AdCopy

    @model_validator(mode="after")
    def _truncate_copy(self) -> "Strategy":
        c = self.ad_copy
        c.headlines = [truncate_copy(h, COPY_LIMITS[CreativeSlot.HEADLINE]) for h in c.headlines]
        c.primary_texts = [truncate_copy(t, COPY_LIMITS[CreativeSlot.PRIMARY_TEXT]) for t in c.primary_texts]
        c.descriptions = [truncate_copy(d, COPY_LIMITS[CreativeSlot.DESCRIPTION]) for d in c.descriptions]
        return self

    def summary(self) -> Dict[str, Any]:
        return {
            "objective": self.objective,
            "daily_budget": self.budget.daily_amount,
            "currency": self.budget.currency,
            "age_min": self.targeting.age_min,
            "age_max": self.targeting.age_max,
            "interest_keywords": list(self.targeting.interest_keywords),
            "variants": {slot.value: len(v) for slot, v in self.ad_copy.variants().items()},
            "cta": self.ad_copy.cta,
        }


# -----------------------------
# Stored records
# -----------------------------

@dataclass(frozen=True)
class CreativeVariant:
    id: str
    slot: CreativeSlot
    position: int
    content: str
    selected: bool


@dataclass(frozen=True)
class ExternalIds:
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    creative_id: Optional[str] = None
    ad_id: Optional[str] = None
    lead_form_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "campaign_id": self.campaign_id,
            "adset_id": self.adset_id,
            "creative_id": self.creative_id,
            "ad_id": self.ad_id,
            "lead_form_id": self.lead_form_id,
        }


EXTERNAL_ID_FIELDS = ("campaign_id", "adset_id", "creative_id", "ad_id", "lead_form_id")


@dataclass(frozen=True)
class CampaignTask:
    id: str
    user_id: str
    state: TaskState
    created_at: datetime
    updated_at: datetime
    conversion_method: Optional[ConversionMethod] = None
    business_profile: Optional[BusinessProfile] = None
    strategy: Optional[Strategy] = None
    creatives: List[CreativeVariant] = field(default_factory=list)
    external_ids: ExternalIds = field(default_factory=ExternalIds)
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def selected_copy(self, slot: CreativeSlot) -> Optional[str]:
        for v in self.creatives:
            if v.slot == slot and v.selected:
                return v.content
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "state": self.state.value,
            "conversion_method": self.conversion_method.value if self.conversion_method else None,
            "business_profile": self.business_profile.model_dump() if self.business_profile else None,
            "strategy": self.strategy.model_dump() if self.strategy else None,
            "creatives": [
                {"id": v.id, "slot": v.slot.value, "position": v.position, "content": v.content, "selected": v.selected}
                for v in self.creatives
            ],
            "external_ids": self.external_ids.to_dict(),
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
