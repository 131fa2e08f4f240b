"""
Shared fixtures: a SQLite task store on tmp_path, a fake Meta client that
records calls instead of hitting the Graph API, and fake collaborators.
"""

from typing import Any, Dict, List, Optional

import pytest

from campaign_task import BusinessProfile, ConversionMethod, Strategy, TaskState
from meta_client import MetaAPIError, MetaConfig, MetaCredential
from pipeline import CampaignPipeline
from task_store import TaskStore, build_variants

USER_ID = "user-1"


def sample_strategy_dict(**overrides: Any) -> Dict[str, Any]:
    data = {
        "objective": "LEADS",
        "budget": {"daily_amount": 500, "currency": "INR"},
        "targeting": {"age_min": 22, "age_max": 45, "interest_keywords": ["coffee", "cafe"], "location": "Pune"},
        "ad_copy": {
            "headlines": ["Fresh artisan coffee in Pune", "Roasted this week"],
            "primary_texts": ["Small-batch beans roasted in Pune and delivered to your door."],
            "descriptions": ["Order today", "Free delivery"],
            "cta": "LEARN_MORE",
        },
    }
    data.update(overrides)
    return data


class FakeMetaClient:
    """Stands in for MetaClient. `fail_on` names the method that raises `error`."""

    def __init__(self, fail_on: Optional[str] = None, error: Optional[Exception] = None):
        self.fail_on = fail_on
        self.error = error or MetaAPIError(
            "Meta API error (400): Invalid parameter", http_status=400, error={"code": 100, "message": "Invalid parameter"}
        )
        self.calls: List[tuple] = []
        self.interests: List[dict] = [{"id": "6003", "name": "Coffee"}]

    def _call(self, name: str, *args: Any, **kwargs: Any) -> None:
        self.calls.append((name, args, kwargs))
        if self.fail_on == name:
            raise self.error

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]

    def kwargs_of(self, name: str) -> Dict[str, Any]:
        for c in self.calls:
            if c[0] == name:
                return c[2]
        raise AssertionError(f"{name} was not called")

    def args_of(self, name: str) -> tuple:
        for c in self.calls:
            if c[0] == name:
                return c[1]
        raise AssertionError(f"{name} was not called")

    def upload_image(self, credential, image_bytes, *, filename="image.jpg"):
        self._call("upload_image", credential, image_bytes, filename=filename)
        return "hash_1"

    def create_campaign(self, credential, name, objective, status="PAUSED"):
        self._call("create_campaign", credential, name, objective, status)
        return "cmp_1"

    def search_interests(self, credential, keywords, per_keyword_limit=3):
        self._call("search_interests", credential, keywords, per_keyword_limit)
        return list(self.interests)

    def create_adset(self, credential, campaign_id, name, daily_budget_minor, targeting, **kwargs):
        self._call("create_adset", credential, campaign_id, name, daily_budget_minor, targeting, **kwargs)
        return "adset_1"

    def create_lead_form(self, credential, form_name, intro_text, privacy_policy_url, thank_you_message, questions=None):
        self._call("create_lead_form", credential, form_name, intro_text, privacy_policy_url, thank_you_message)
        return "form_1"

    def create_creative(self, credential, name, image_hash, headline, body, destination, **kwargs):
        self._call("create_creative", credential, name, image_hash, headline, body, destination, **kwargs)
        return "creative_1"

    def create_ad(self, credential, name, adset_id, creative_id, status="PAUSED"):
        self._call("create_ad", credential, name, adset_id, creative_id, status)
        return "ad_1"


class FakeGenerator:
    def __init__(self, result: Any = None, error: Optional[Exception] = None):
        self.result = result if result is not None else sample_strategy_dict()
        self.error = error
        self.calls: List[tuple] = []

    def generate(self, business_profile, user_goal, conversion_method, historical_performance=None):
        self.calls.append((business_profile, user_goal, conversion_method, historical_performance))
        if self.error:
            raise self.error
        return self.result


class FakeAnalyzer:
    def __init__(self, url_result: Any = None, text_result: Any = None, url_error: Optional[Exception] = None):
        self.url_result = url_result
        self.text_result = text_result
        self.url_error = url_error

    def analyze_url(self, url):
        if self.url_error:
            raise self.url_error
        return self.url_result

    def analyze_text(self, text):
        if self.text_result is None:
            raise RuntimeError("analyzer offline")
        return self.text_result


class RecordingNotifier:
    def __init__(self, error: Optional[Exception] = None):
        self.events: List[tuple] = []
        self.error = error

    def notify(self, user_id, event, payload):
        self.events.append((user_id, event, payload))
        if self.error:
            raise self.error


@pytest.fixture
def store(tmp_path) -> TaskStore:
    return TaskStore(str(tmp_path / "tasks.db"))


@pytest.fixture
def cfg() -> MetaConfig:
    return MetaConfig(default_link_url="https://fallback.example.com", privacy_policy_base_url="https://adpilot.app")


@pytest.fixture
def credential() -> MetaCredential:
    return MetaCredential(access_token="tok", ad_account_id="act_123", page_id="page_1")


@pytest.fixture
def fake_client() -> FakeMetaClient:
    return FakeMetaClient()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def pipeline(store, fake_client, cfg, credential, generator, notifier) -> CampaignPipeline:
    return CampaignPipeline(
        store,
        fake_client,
        cfg,
        lambda user_id: credential,
        strategy_generator=generator,
        notifier=notifier,
    )


@pytest.fixture
def review_task(store):
    """A task that finished strategy generation for a LEAD_FORM campaign."""
    strategy = Strategy.model_validate(sample_strategy_dict())
    return store.create(
        USER_ID,
        TaskState.REVIEW,
        business_profile=BusinessProfile(brand_name="Bean There", description="Artisan coffee in Pune"),
        conversion_method=ConversionMethod.LEAD_FORM,
        strategy=strategy,
        creatives=build_variants(strategy.ad_copy.variants()),
    )
