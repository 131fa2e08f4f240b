"""Interfaces of the external collaborators the pipeline consumes.

The text-generation model and the website/text analyzer live outside this
service. The pipeline only relies on these shapes; concrete implementations
are plugged in with STRATEGY_GENERATOR_FACTORY / BUSINESS_ANALYZER_FACTORY
("package.module:callable", called with no arguments).
"""

from __future__ import annotations

import importlib
import os
from typing import Any, Dict, Mapping, Optional, Protocol, Union

from campaign_task import BusinessProfile, ConversionMethod, Strategy


class StrategyGenerator(Protocol):
    def generate(
        self,
        business_profile: BusinessProfile,
        user_goal: Optional[str],
        conversion_method: ConversionMethod,
        historical_performance: Optional[Mapping[str, Any]] = None,
    ) -> Union[Strategy, Dict[str, Any]]:
        ...


class BusinessAnalyzer(Protocol):
    def analyze_url(self, url: str) -> Union[BusinessProfile, Dict[str, Any]]:
        ...

    def analyze_text(self, text: str) -> Union[BusinessProfile, Dict[str, Any]]:
        ...


class Notifier(Protocol):
    def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        ...


def load_factory(spec: str):
    """Import 'package.module:callable' and call it."""
    module_name, _, attr = (spec or "").partition(":")
    if not module_name or not attr:
        raise ValueError(f"Factory must look like 'package.module:callable', got {spec!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


def build_strategy_generator() -> Optional[StrategyGenerator]:
    spec = (os.getenv("STRATEGY_GENERATOR_FACTORY") or "").strip()
    return load_factory(spec) if spec else None


def build_business_analyzer() -> Optional[BusinessAnalyzer]:
    spec = (os.getenv("BUSINESS_ANALYZER_FACTORY") or "").strip()
    return load_factory(spec) if spec else None
