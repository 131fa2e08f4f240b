"""api.py

FastAPI wrapper around `pipeline.CampaignPipeline` so a frontend (or any HTTP
client) can drive a campaign task from business scan to live ad.

Endpoints
---------
- GET  /health                         -> basic health check
- POST /scan                           -> JSON: url and/or manual_text, creates a task
- POST /tasks/{id}/business-info       -> JSON: retry analysis for GATHERING_INFO tasks
- POST /tasks/{id}/strategy            -> JSON: conversion_method (+ optional overrides)
- POST /tasks/{id}/creatives/select    -> JSON: variant_id + slot
- POST /tasks/{id}/launch              -> multipart/form-data: image_file (+ optional lead_form_id)
- POST /tasks/{id}/redrive             -> new REVIEW task from a FAILED one
- GET  /tasks/{id}                     -> task snapshot
- GET  /tasks                          -> recent tasks for the caller

Caller identity
---------------
Every /scan and /tasks request must carry X-User-Id. Authentication of that
header is the fronting gateway's job.

Optional API Key
----------------
If you set SERVICE_API_KEY in the environment, requests must include:
  X-API-Key: <SERVICE_API_KEY>

Environment variables
---------------------
See MetaConfig.from_env, build_task_store, build_credential_provider,
WebhookNotifier.from_env and the *_FACTORY loaders in collaborators.py.
"""

from __future__ import annotations

import io
import os
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from PIL import Image

from campaign_task import ConversionMethod, CreativeSlot
from collaborators import build_business_analyzer, build_strategy_generator
from meta_client import MetaClient, MetaConfig
from pipeline import (
    CampaignPipeline,
    CollaboratorUnavailable,
    LaunchConflict,
    LaunchFailure,
    PipelineError,
    StrategyGenerationFailed,
    TaskNotFound,
)
from task_store import build_task_store
from token_store import CredentialMissing, build_credential_provider
from webhook_notifier import WebhookNotifier

app = FastAPI(title="Campaign Pipeline API", version="1.0.0")


class ScanRequest(BaseModel):
    url: Optional[str] = Field(default=None, description="Business website to analyze.")
    manual_text: Optional[str] = Field(default=None, description="Free-text business description.")


class StrategyRequest(BaseModel):
    conversion_method: ConversionMethod
    user_goal: Optional[str] = None
    objective: Optional[str] = Field(default=None, description="Overrides the generated objective.")
    budget_hint: Optional[float] = Field(default=None, gt=0, description="Overrides the daily budget.")
    historical_performance: Optional[Dict[str, Any]] = None


class SelectVariantRequest(BaseModel):
    variant_id: str
    slot: CreativeSlot


@lru_cache(maxsize=1)
def get_pipeline() -> CampaignPipeline:
    """Build the process-wide pipeline from env configuration."""
    try:
        cfg = MetaConfig.from_env()
        return CampaignPipeline(
            build_task_store(),
            MetaClient(cfg),
            cfg,
            build_credential_provider(cfg.encryption_key),
            strategy_generator=build_strategy_generator(),
            analyzer=build_business_analyzer(),
            notifier=WebhookNotifier.from_env(),
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Server misconfigured: {e}")


def _require_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")) -> None:
    expected = (os.getenv("SERVICE_API_KEY") or "").strip()
    if not expected:
        return
    if not x_api_key or x_api_key.strip() != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def _normalize_to_jpeg_bytes(raw: bytes) -> bytes:
    """Re-encode any image bytes to a Meta-safe JPEG."""
    try:
        img = Image.open(io.BytesIO(raw))
        img = img.convert("RGB")
    except Exception as e:
        raise HTTPException(status_code=422, detail=f"Uploaded image_file is not a valid image: {e}")

    out = io.BytesIO()
    img.save(out, format="JPEG", quality=92, optimize=True)
    jpeg_bytes = out.getvalue()

    if not jpeg_bytes:
        raise HTTPException(status_code=422, detail="JPEG re-encode failed")

    return jpeg_bytes


def _raise_for(e: Exception) -> None:
    """Map pipeline exceptions onto HTTP errors."""
    if isinstance(e, HTTPException):
        raise e
    if isinstance(e, TaskNotFound):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, StrategyGenerationFailed):
        raise HTTPException(status_code=502, detail={"task_id": e.task_id, "error": e.error.to_dict()})
    if isinstance(e, CollaboratorUnavailable):
        raise HTTPException(status_code=503, detail=str(e))
    if isinstance(e, (PipelineError, CredentialMissing)):
        raise HTTPException(status_code=422, detail={"error": e.__class__.__name__, "message": str(e)})
    if isinstance(e, ValidationError):
        raise HTTPException(status_code=422, detail=jsonable_encoder(e.errors()))
    if isinstance(e, ValueError):
        raise HTTPException(status_code=422, detail=str(e))
    raise HTTPException(status_code=500, detail=str(e))


@app.get("/")
def root() -> JSONResponse:
    return JSONResponse({"ok": True, "docs": "/docs", "health": "/health"})


@app.get("/health")
def health() -> Dict[str, Any]:
    return {"ok": True}


@app.post("/scan", dependencies=[Depends(_require_api_key)])
def scan(
    req: ScanRequest,
    user_id: str = Depends(_user_id),
    pipeline: CampaignPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    try:
        result = pipeline.start_scan(user_id, url=req.url, manual_text=req.manual_text)
    except Exception as e:
        _raise_for(e)
    return {
        "ok": True,
        "task_id": result.task_id,
        "needs_manual_input": result.needs_manual_input,
        "reason": result.reason,
        "business_profile": result.business_profile.model_dump() if result.business_profile else None,
    }


@app.post("/tasks/{task_id}/business-info", dependencies=[Depends(_require_api_key)])
def business_info(
    task_id: str,
    req: ScanRequest,
    user_id: str = Depends(_user_id),
    pipeline: CampaignPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    try:
        result = pipeline.submit_business_info(task_id, user_id, url=req.url, manual_text=req.manual_text)
    except Exception as e:
        _raise_for(e)
    return {
        "ok": True,
        "task_id": result.task_id,
        "needs_manual_input": result.needs_manual_input,
        "reason": result.reason,
        "business_profile": result.business_profile.model_dump() if result.business_profile else None,
    }


@app.post("/tasks/{task_id}/strategy", dependencies=[Depends(_require_api_key)])
def strategy(
    task_id: str,
    req: StrategyRequest,
    user_id: str = Depends(_user_id),
    pipeline: CampaignPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    try:
        result = pipeline.generate_strategy(
            task_id,
            user_id,
            req.conversion_method,
            user_goal=req.user_goal,
            objective=req.objective,
            budget_hint=req.budget_hint,
            historical_performance=req.historical_performance,
        )
    except Exception as e:
        _raise_for(e)
    return {"ok": True, "task_id": result.task_id, "strategy": result.strategy_summary}


@app.post("/tasks/{task_id}/creatives/select", dependencies=[Depends(_require_api_key)])
def select_creative(
    task_id: str,
    req: SelectVariantRequest,
    user_id: str = Depends(_user_id),
    pipeline: CampaignPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    try:
        pipeline.select_creative_variant(task_id, user_id, req.variant_id, req.slot)
    except Exception as e:
        _raise_for(e)
    return {"ok": True, "task_id": task_id, "variant_id": req.variant_id, "slot": req.slot.value}


@app.post("/tasks/{task_id}/launch", dependencies=[Depends(_require_api_key)])
async def launch(
    task_id: str,
    image_file: UploadFile | None = File(None, description="Image file (jpg/png/etc)"),
    lead_form_id: Optional[str] = Form(None),
    user_id: str = Depends(_user_id),
    pipeline: CampaignPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    """Multipart launch endpoint.

    - image_file: file field; re-encoded to JPEG before upload to Meta
    - lead_form_id: reuse an existing instant form (LEAD_FORM tasks only)
    """
    image: Optional[bytes] = None
    if image_file is not None:
        raw = await image_file.read()
        if raw:
            image = _normalize_to_jpeg_bytes(raw)

    try:
        result = pipeline.launch_campaign(task_id, user_id, image=image, lead_form_id=lead_form_id)
    except Exception as e:
        _raise_for(e)

    if isinstance(result, LaunchConflict):
        raise HTTPException(
            status_code=409,
            detail={
                "task_id": result.task_id,
                "reason": result.reason.value,
                "external_ids": result.external_ids.to_dict(),
                "last_error": result.last_error,
            },
        )
    if isinstance(result, LaunchFailure):
        raise HTTPException(
            status_code=502,
            detail={
                "task_id": result.task_id,
                "error": result.error.to_dict(),
                "external_ids": result.external_ids.to_dict(),
            },
        )
    return {
        "ok": True,
        "task_id": result.task_id,
        "campaign_id": result.campaign_id,
        "adset_id": result.adset_id,
        "creative_id": result.creative_id,
        "ad_id": result.ad_id,
        "lead_form_id": result.lead_form_id,
    }


@app.post("/tasks/{task_id}/redrive", dependencies=[Depends(_require_api_key)])
def redrive(
    task_id: str,
    user_id: str = Depends(_user_id),
    pipeline: CampaignPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    try:
        task = pipeline.redrive_task(task_id, user_id)
    except Exception as e:
        _raise_for(e)
    return {"ok": True, "previous_task_id": task_id, "task": task.to_dict()}


@app.get("/tasks/{task_id}", dependencies=[Depends(_require_api_key)])
def get_task(
    task_id: str,
    user_id: str = Depends(_user_id),
    pipeline: CampaignPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    try:
        task = pipeline.get_task(task_id, user_id)
    except Exception as e:
        _raise_for(e)
    return {"ok": True, "task": task.to_dict()}


@app.get("/tasks", dependencies=[Depends(_require_api_key)])
def list_tasks(
    limit: int = 10,
    user_id: str = Depends(_user_id),
    pipeline: CampaignPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    tasks = pipeline.list_tasks(user_id, limit=max(1, min(int(limit), 100)))
    return {"ok": True, "limit": limit, "tasks": [t.to_dict() for t in tasks]}
