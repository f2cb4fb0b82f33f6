"""
api.py - FastAPI HTTP layer for the estimate supplement reconciler.

Endpoints:
  - POST /compare
  - GET /health

No matching, statistics or scoring logic is implemented here.
"""

from __future__ import annotations

import os
from typing import Any, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from analyze import ENGINE_VERSION, analyze_comparison
from config import ComparisonConfig
from errors import ComparisonError, LineItemValidationError
from explain import format_analysis_json, format_report
from logging_config import get_logger, setup_logging

logger = get_logger("reconciler-api")

app = FastAPI(
    title="Estimate Supplement Reconciler API",
    version=ENGINE_VERSION,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

# Allows local UI use from file:// or another local host/port.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


class CompareRequest(BaseModel):
    """Request body for POST /compare."""

    original: list[dict[str, Any]] = Field(default_factory=list)
    supplement: list[dict[str, Any]] = Field(default_factory=list)
    config: Optional[dict[str, Any]] = Field(
        default=None,
        description="ComparisonConfig field overrides applied on top of RECON_* settings.",
    )
    include_report: bool = Field(default=False, description="Also return the plain-text report.")


@app.get("/health")
def health() -> dict[str, str]:
    """Service health check."""
    return {"status": "ok", "engine_version": ENGINE_VERSION}


@app.post("/compare")
def compare_endpoint(request: CompareRequest) -> JSONResponse:
    """Run the comparison pipeline and return structured JSON."""
    try:
        config = ComparisonConfig.from_env(**(request.config or {}))
    except ValidationError as exc:
        logger.warning("api_config_error | errors=%s", exc.error_count())
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False)) from exc

    try:
        analysis = analyze_comparison(request.original, request.supplement, config)
    except LineItemValidationError as exc:
        logger.warning("api_compare_rejected | side=%s | index=%s | error=%s", exc.side, exc.index, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ComparisonError as exc:
        logger.error(
            "api_compare_error | error_type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        raise HTTPException(
            status_code=500,
            detail=f"Comparison failed: {type(exc).__name__}",
        ) from exc

    payload = format_analysis_json(analysis)
    if request.include_report:
        payload["report"] = format_report(analysis)
    return JSONResponse(content=payload)


if __name__ == "__main__":
    load_dotenv()
    setup_logging()
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)
