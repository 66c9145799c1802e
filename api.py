"""
api.py - FastAPI HTTP layer for the receipt extraction pipeline.

Endpoints:
  - GET  /health
  - POST /extract   {"rawResponse": "...", "config": {...}?}

No extraction logic is implemented here. Pipeline outcomes (including
"failed") are returned with HTTP 200; only an invalid request config is a 400.
"""

from __future__ import annotations

import os
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from config import PipelineConfig, load_config
from explain import format_result_json
from extract import extract_receipt
from logging_config import get_logger, setup_logging

logger = get_logger("receipt-api")

app = FastAPI(
    title="Receipt Extraction API",
    version="1.0.0",
)

# Allows local UI use from file:// or another local host/port.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Environment settings apply when a request does not send its own config.
env_config = load_config()


class ExtractRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    raw_response: str = Field(..., description="Verbatim text returned by the language model.")
    config: Optional[dict[str, Any]] = Field(
        default=None,
        description="PipelineConfig fields (camelCase or snake_case). Omit to use server defaults.",
    )


def _request_config(raw: Optional[dict[str, Any]]) -> PipelineConfig:
    if raw is None:
        return env_config
    try:
        return PipelineConfig.model_validate(raw)
    except ValidationError as exc:
        messages = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}" for error in exc.errors()
        )
        raise HTTPException(status_code=400, detail=f"Invalid config: {messages}") from exc


@app.get("/health")
def health() -> dict[str, str]:
    """Service health check."""
    return {"status": "ok"}


@app.post("/extract")
def extract(request: ExtractRequest) -> JSONResponse:
    """Run the extraction pipeline on one raw model response."""
    config = _request_config(request.config)
    try:
        result = extract_receipt(request.raw_response, config)
        payload = format_result_json(result)
    except Exception as exc:
        logger.error(
            "api_extract_error | error_type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        raise HTTPException(
            status_code=500,
            detail="Unexpected server error while extracting receipt.",
        ) from exc

    logger.info(
        "api_extract_complete | status=%s | chars=%s | items=%s",
        payload["status"],
        len(request.raw_response),
        payload["summary"]["itemCount"] if payload["summary"] else 0,
    )
    return JSONResponse(content=payload)


if __name__ == "__main__":
    setup_logging()
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)
