"""pipeline.py

Campaign orchestration: scan -> strategy -> launch.

Each stage is driven by one caller request and persists the task before it
returns. Only this module mutates CampaignTask state.

Launch sequence (inside CREATING), strict order:
  1) upload image
  2) create campaign
  3) interest lookup (best-effort, falls back to broad targeting)
  4) create ad set
  5) lead form (reuse or create) + creative, or a link creative for WEBSITE
  6) create ad
  7) COMPLETED + webhook

Any failure in 1-6 stops the sequence. Objects already created on Meta are
left in place (PAUSED by default) for manual cleanup; there is no rollback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from campaign_task import (
    BusinessProfile,
    CampaignTask,
    ConversionMethod,
    CreativeSlot,
    CreativeVariant,
    ExternalIds,
    Strategy,
    TaskState,
    TERMINAL_STATES,
    resolve_objective,
)
from collaborators import BusinessAnalyzer, Notifier, StrategyGenerator
from error_classifier import ErrorKind, StructuredError, classify_exception
from meta_client import (
    LeadFormDestination,
    LinkDestination,
    MetaAPIError,
    MetaClient,
    MetaConfig,
    MetaCredential,
    TokenCryptoError,
    is_valid_http_url,
    resolve_privacy_policy_url,
)
from task_store import build_variants, new_id
from token_store import CredentialMissing

logger = logging.getLogger(__name__)

INTERESTS_PER_KEYWORD = 3
LEAD_FORM_THANK_YOU = "Thanks! We'll be in touch soon."


# -----------------------------
# Precondition errors (raised before any external call, never change state)
# -----------------------------

class PipelineError(Exception):
    pass


class TaskNotFound(PipelineError):
    pass


class MissingBusinessInput(PipelineError):
    pass


class MissingBusinessProfile(PipelineError):
    pass


class MissingStrategy(PipelineError):
    pass


class MissingImage(PipelineError):
    pass


class MissingDestinationUrl(PipelineError):
    pass


class InvalidTaskState(PipelineError):
    pass


class VariantNotFound(PipelineError):
    pass


class CollaboratorUnavailable(PipelineError):
    pass


class StrategyGenerationFailed(PipelineError):
    """The generator failed or returned an unusable strategy; the task is now FAILED."""

    def __init__(self, task_id: str, error: StructuredError):
        super().__init__(error.render())
        self.task_id = task_id
        self.error = error


# -----------------------------
# Results
# -----------------------------

@dataclass(frozen=True)
class ScanResult:
    task_id: str
    business_profile: Optional[BusinessProfile] = None
    needs_manual_input: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class StrategyResult:
    task_id: str
    strategy_summary: Dict[str, Any]


@dataclass(frozen=True)
class LaunchSuccess:
    task_id: str
    campaign_id: str
    adset_id: str
    creative_id: str
    ad_id: str
    lead_form_id: Optional[str] = None
    success: bool = True


class ConflictReason(str, Enum):
    ALREADY_LAUNCHED = "ALREADY_LAUNCHED"
    LAUNCH_IN_PROGRESS = "LAUNCH_IN_PROGRESS"
    LAUNCH_FAILED = "LAUNCH_FAILED"


@dataclass(frozen=True)
class LaunchConflict:
    task_id: str
    reason: ConflictReason
    campaign_id: Optional[str] = None
    ad_id: Optional[str] = None
    external_ids: ExternalIds = field(default_factory=ExternalIds)
    last_error: Optional[str] = None
    success: bool = False


@dataclass(frozen=True)
class LaunchFailure:
    task_id: str
    error: StructuredError
    external_ids: ExternalIds = field(default_factory=ExternalIds)
    success: bool = False


LaunchResult = Union[LaunchSuccess, LaunchConflict, LaunchFailure]


def to_minor_units(amount: float) -> int:
    """Currency amount -> Meta minor units (e.g. 500.00 INR -> 50000)."""
    return int(round(float(amount) * 100))


def conflict_for(task: CampaignTask) -> Optional[LaunchConflict]:
    """Idempotency guard: why this task may not be launched (None = launchable)."""
    ids = task.external_ids
    if ids.campaign_id:
        reason = ConflictReason.ALREADY_LAUNCHED
    elif task.state == TaskState.CREATING:
        reason = ConflictReason.LAUNCH_IN_PROGRESS
    elif task.state == TaskState.FAILED:
        reason = ConflictReason.LAUNCH_FAILED
    else:
        return None
    return LaunchConflict(
        task_id=task.id,
        reason=reason,
        campaign_id=ids.campaign_id,
        ad_id=ids.ad_id,
        external_ids=ids,
        last_error=task.last_error,
    )


class CampaignPipeline:
    def __init__(
        self,
        store,
        client: MetaClient,
        cfg: MetaConfig,
        credential_provider,
        *,
        strategy_generator: Optional[StrategyGenerator] = None,
        analyzer: Optional[BusinessAnalyzer] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.store = store
        self.client = client
        self.cfg = cfg
        self.credential_provider = credential_provider
        self.strategy_generator = strategy_generator
        self.analyzer = analyzer
        self.notifier = notifier

    # -----------------------------
    # Reads
    # -----------------------------

    def get_task(self, task_id: str, user_id: str) -> CampaignTask:
        task = self.store.get(task_id)
        if task is None or task.user_id != user_id:
            raise TaskNotFound(f"Task {task_id} not found")
        return task

    def list_tasks(self, user_id: str, limit: int = 10) -> List[CampaignTask]:
        return self.store.list_for_user(user_id, limit=limit)

    # -----------------------------
    # Stage 1: scan
    # -----------------------------

    def start_scan(self, user_id: str, url: Optional[str] = None, manual_text: Optional[str] = None) -> ScanResult:
        profile, reason = self._analyze(url, manual_text)
        if profile is None:
            task = self.store.create(user_id, TaskState.GATHERING_INFO)
            logger.info("Scan for task %s needs manual input: %s", task.id, reason)
            return ScanResult(task_id=task.id, needs_manual_input=True, reason=reason)

        task = self.store.create(user_id, TaskState.PENDING, business_profile=profile)
        logger.info("Scan created task %s (source=%s)", task.id, profile.source)
        return ScanResult(task_id=task.id, business_profile=profile)

    def submit_business_info(
        self, task_id: str, user_id: str, url: Optional[str] = None, manual_text: Optional[str] = None
    ) -> ScanResult:
        """Retry analysis for a task parked in GATHERING_INFO."""
        task = self.get_task(task_id, user_id)
        if task.state != TaskState.GATHERING_INFO:
            raise InvalidTaskState(f"Task {task_id} is {task.state.value}, expected GATHERING_INFO")

        profile, reason = self._analyze(url, manual_text)
        if profile is None:
            return ScanResult(task_id=task.id, needs_manual_input=True, reason=reason)

        if not self.store.transition(task.id, [TaskState.GATHERING_INFO], TaskState.PENDING, business_profile=profile):
            raise InvalidTaskState(f"Task {task_id} changed state during business info update")
        return ScanResult(task_id=task.id, business_profile=profile)

    def _analyze(self, url: Optional[str], manual_text: Optional[str]) -> Tuple[Optional[BusinessProfile], Optional[str]]:
        url = (url or "").strip()
        text = (manual_text or "").strip()
        if not url and not text:
            raise MissingBusinessInput("Provide a website URL or a business description.")

        reason: Optional[str] = None
        if url:
            if self.analyzer is None:
                reason = "Website analysis is not available; describe the business instead."
            else:
                try:
                    profile = _as_profile(self.analyzer.analyze_url(url))
                    if not profile.website:
                        profile = profile.model_copy(update={"website": url})
                    return profile, None
                except Exception as e:
                    logger.warning("Website analysis failed for %s: %s", url, e)
                    reason = f"Could not analyze {url}; describe the business instead."
            if not text:
                return None, reason

        website = url if is_valid_http_url(url) else None
        if self.analyzer is not None:
            try:
                profile = _as_profile(self.analyzer.analyze_text(text))
                if website and not profile.website:
                    profile = profile.model_copy(update={"website": website})
                return profile, None
            except Exception as e:
                logger.warning("Text analysis failed, using the raw description: %s", e)

        profile = BusinessProfile.from_manual_text(text)
        if website:
            profile = profile.model_copy(update={"website": website})
        return profile, None

    # -----------------------------
    # Stage 2: strategy
    # -----------------------------

    def generate_strategy(
        self,
        task_id: str,
        user_id: str,
        conversion_method: Union[ConversionMethod, str],
        *,
        user_goal: Optional[str] = None,
        objective: Optional[str] = None,
        budget_hint: Optional[float] = None,
        historical_performance: Optional[Mapping[str, Any]] = None,
    ) -> StrategyResult:
        task = self.get_task(task_id, user_id)
        if task.business_profile is None:
            raise MissingBusinessProfile(f"Task {task_id} has no business profile; scan first")
        if task.state != TaskState.PENDING:
            raise InvalidTaskState(f"Task {task_id} is {task.state.value}, expected PENDING")
        if self.strategy_generator is None:
            raise CollaboratorUnavailable("Strategy generator is not configured")

        method = ConversionMethod(conversion_method)
        if not self.store.transition(task.id, [TaskState.PENDING], TaskState.GENERATING, conversion_method=method):
            raise InvalidTaskState(f"Task {task_id} changed state before strategy generation")

        try:
            raw = self.strategy_generator.generate(task.business_profile, user_goal, method, historical_performance)
            strategy = _as_strategy(raw, objective=objective, budget_hint=budget_hint)
        except Exception as e:
            logger.exception("Strategy generation failed for task %s", task.id)
            detail = "the generated strategy was invalid" if isinstance(e, ValidationError) else str(e)
            error = StructuredError(
                kind=ErrorKind.GENERIC,
                user_message=f"Strategy generation failed: {detail}.",
                remediation="Start a new campaign and try again.",
                retryable=False,
            )
            self._fail(task, error.render())
            raise StrategyGenerationFailed(task.id, error) from e

        if not self.store.store_strategy(task.id, strategy, build_variants(strategy.ad_copy.variants())):
            raise InvalidTaskState(f"Task {task_id} left GENERATING before the strategy was stored")
        logger.info("Strategy stored for task %s (objective=%s)", task.id, strategy.objective)
        return StrategyResult(task_id=task.id, strategy_summary=strategy.summary())

    def select_creative_variant(self, task_id: str, user_id: str, variant_id: str, slot: Union[CreativeSlot, str]) -> bool:
        task = self.get_task(task_id, user_id)
        slot = CreativeSlot(slot)
        if task.state in TERMINAL_STATES or task.state == TaskState.CREATING:
            raise InvalidTaskState(f"Task {task_id} is {task.state.value}; creatives are locked")
        if not any(v.id == variant_id and v.slot == slot for v in task.creatives):
            raise VariantNotFound(f"Variant {variant_id} not found in slot {slot.value}")
        if not self.store.select_variant(task.id, variant_id, slot):
            raise InvalidTaskState(f"Task {task_id} changed state during variant selection")
        return True

    # -----------------------------
    # Stage 3: launch
    # -----------------------------

    def launch_campaign(
        self,
        task_id: str,
        user_id: str,
        image: Optional[bytes] = None,
        lead_form_id: Optional[str] = None,
    ) -> LaunchResult:
        task = self.get_task(task_id, user_id)

        conflict = conflict_for(task)
        if conflict is not None:
            logger.info("Launch for task %s rejected: %s", task.id, conflict.reason.value)
            return conflict

        strategy = task.strategy
        if strategy is None:
            raise MissingStrategy(f"Task {task_id} has no strategy; generate one first")
        if task.state != TaskState.REVIEW:
            raise InvalidTaskState(f"Task {task_id} is {task.state.value}, expected REVIEW")
        if not image:
            raise MissingImage("An ad image is required to launch")

        method = task.conversion_method or ConversionMethod.WEBSITE
        profile = task.business_profile or BusinessProfile()
        link_url: Optional[str] = None
        if method == ConversionMethod.WEBSITE:
            link_url = profile.website if is_valid_http_url(profile.website) else self.cfg.default_link_url
            if not link_url:
                raise MissingDestinationUrl("No website on file and META_DEFAULT_LINK_URL is not set")

        credential = self._credential(user_id)

        # Atomic check-and-mark; losing the race means another request owns the launch.
        if not self.store.claim_launch(task.id, user_id):
            current = self.store.get(task.id) or task
            return conflict_for(current) or LaunchConflict(task_id=task.id, reason=ConflictReason.LAUNCH_IN_PROGRESS)

        try:
            ids = self._run_launch(
                task, strategy, credential, image, lead_form_id=lead_form_id, link_url=link_url or ""
            )
        except Exception as e:
            error = classify_exception(e)
            if isinstance(e, MetaAPIError):
                logger.warning("Launch for task %s failed (%s): %s", task.id, error.kind.value, e)
                last_error = error.render()
            else:
                logger.exception("Launch for task %s failed unexpectedly", task.id)
                last_error = str(e) or e.__class__.__name__
            self._fail(task, last_error)
            current = self.store.get(task.id)
            return LaunchFailure(
                task_id=task.id,
                error=error,
                external_ids=current.external_ids if current else ExternalIds(),
            )

        self.store.mark_completed(task.id)
        logger.info("Launch for task %s completed: campaign=%s ad=%s", task.id, ids["campaign_id"], ids["ad_id"])
        self._notify(task.user_id, "campaign.completed", {"task_id": task.id, **ids})
        return LaunchSuccess(task_id=task.id, **ids)

    def _credential(self, user_id: str) -> MetaCredential:
        try:
            credential = self.credential_provider(user_id)
        except TokenCryptoError as e:
            raise CredentialMissing("Stored Facebook token could not be read. Please reconnect.") from e
        if not credential.page_id:
            raise CredentialMissing("A Facebook page must be connected to publish ads.")
        return credential

    def _run_launch(
        self,
        task: CampaignTask,
        strategy: Strategy,
        credential: MetaCredential,
        image: bytes,
        *,
        lead_form_id: Optional[str],
        link_url: str,
    ) -> Dict[str, Optional[str]]:
        method = task.conversion_method or ConversionMethod.WEBSITE
        profile = task.business_profile or BusinessProfile()
        brand = profile.brand_name.strip() or "Business"
        base_name = f"{brand} - {task.id[:8]}"
        status = self.cfg.launch_status

        # 1) Image
        image_hash = self.client.upload_image(credential, image, filename=f"{task.id[:8]}.jpg")

        # 2) Campaign
        meta_objective, optimization_goal = resolve_objective(strategy.objective, method)
        campaign_id = self.client.create_campaign(credential, f"{base_name} - Campaign", meta_objective, status)
        self.store.set_external_ids(task.id, campaign_id=campaign_id)

        # 3) Interests (best-effort)
        interests = self._interests(credential, strategy.targeting.interest_keywords)

        # 4) Ad set
        targeting: Dict[str, Any] = {"age_min": strategy.targeting.age_min, "age_max": strategy.targeting.age_max}
        if interests:
            targeting["flexible_spec"] = [{"interests": interests}]
        lead = method == ConversionMethod.LEAD_FORM
        adset_id = self.client.create_adset(
            credential,
            campaign_id,
            f"{base_name} - Ad Set",
            to_minor_units(strategy.budget.daily_amount),
            targeting,
            optimization_goal=optimization_goal,
            status=status,
            promoted_object={"page_id": credential.page_id} if lead else None,
            destination_type="ON_AD" if lead else None,
        )
        self.store.set_external_ids(task.id, adset_id=adset_id)

        # 5) Creative
        copy = strategy.ad_copy
        headline = task.selected_copy(CreativeSlot.HEADLINE) or copy.headlines[0]
        body = task.selected_copy(CreativeSlot.PRIMARY_TEXT) or copy.primary_texts[0]
        description = task.selected_copy(CreativeSlot.DESCRIPTION) or copy.descriptions[0]

        form_id: Optional[str] = None
        if lead:
            form_id = (lead_form_id or "").strip() or None
            if form_id is None:
                privacy_url = resolve_privacy_policy_url(profile.website, task.id, self.cfg.privacy_policy_base_url)
                form_id = self.client.create_lead_form(
                    credential,
                    f"{base_name} - Lead Form",
                    profile.description[:300] or headline,
                    privacy_url,
                    LEAD_FORM_THANK_YOU,
                )
            self.store.set_external_ids(task.id, lead_form_id=form_id)
            destination = LeadFormDestination(lead_form_id=form_id)
        else:
            destination = LinkDestination(url=link_url)

        creative_id = self.client.create_creative(
            credential,
            f"{base_name} - Creative",
            image_hash,
            headline,
            body,
            destination,
            description=description,
            # Instant forms always open with SIGN_UP.
            call_to_action=None if lead else copy.cta,
        )
        self.store.set_external_ids(task.id, creative_id=creative_id)

        # 6) Ad
        ad_id = self.client.create_ad(credential, f"{base_name} - Ad", adset_id, creative_id, status)
        self.store.set_external_ids(task.id, ad_id=ad_id)

        return {
            "campaign_id": campaign_id,
            "adset_id": adset_id,
            "creative_id": creative_id,
            "ad_id": ad_id,
            "lead_form_id": form_id,
        }

    def _interests(self, credential: MetaCredential, keywords: List[str]) -> List[dict]:
        if not keywords:
            return []
        try:
            return self.client.search_interests(credential, keywords, INTERESTS_PER_KEYWORD)
        except Exception as e:
            logger.warning("Interest search failed, using broad targeting: %s", e)
            return []

    # -----------------------------
    # Re-drive
    # -----------------------------

    def redrive_task(self, task_id: str, user_id: str) -> CampaignTask:
        """Start a fresh task in REVIEW from a FAILED task's profile, strategy and selections.

        The failed task stays FAILED; its partial platform ids are not carried over.
        """
        task = self.get_task(task_id, user_id)
        if task.state != TaskState.FAILED:
            raise InvalidTaskState(f"Task {task_id} is {task.state.value}; only FAILED tasks can be re-driven")
        if task.strategy is None:
            raise MissingStrategy(f"Task {task_id} failed before a strategy existed; start a new scan")

        creatives = [
            CreativeVariant(id=new_id(), slot=v.slot, position=v.position, content=v.content, selected=v.selected)
            for v in task.creatives
        ]
        new_task = self.store.create(
            user_id,
            TaskState.REVIEW,
            business_profile=task.business_profile,
            conversion_method=task.conversion_method,
            strategy=task.strategy,
            creatives=creatives,
        )
        logger.info("Task %s re-driven as %s", task.id, new_task.id)
        return new_task

    # -----------------------------
    # Failure + notification
    # -----------------------------

    def _fail(self, task: CampaignTask, message: str) -> None:
        if self.store.mark_failed(task.id, message):
            self._notify(task.user_id, "campaign.failed", {"task_id": task.id, "error": message})

    def _notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(user_id, event, payload)
        except Exception:
            logger.exception("Notifier raised for %s; task state is unaffected", event)


def _as_profile(raw: Union[BusinessProfile, Dict[str, Any]]) -> BusinessProfile:
    if isinstance(raw, BusinessProfile):
        return raw
    return BusinessProfile.model_validate(raw)


def _as_strategy(
    raw: Union[Strategy, Dict[str, Any]],
    *,
    objective: Optional[str] = None,
    budget_hint: Optional[float] = None,
) -> Strategy:
    """Validate generator output, applying caller overrides before validation."""
    data: Dict[str, Any] = raw.model_dump() if isinstance(raw, Strategy) else dict(raw or {})
    if objective:
        data["objective"] = objective
    if budget_hint is not None:
        budget = dict(data.get("budget") or {})
        budget["daily_amount"] = budget_hint
        data["budget"] = budget
    return Strategy.model_validate(data)
