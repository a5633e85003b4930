import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from fastapi import HTTPException
from pydantic import BaseModel, Field

from completion_client import CompletionClient, CompletionError
from identity import IdentityVerifier
from prompts import (
    MCQ_SYSTEM_MESSAGE,
    PAPER_SYSTEM_MESSAGE,
    VOICE_NOTES_SYSTEM_MESSAGE,
    build_mcq_prompt,
    build_paper_prompt,
    build_voice_notes_prompt,
)
from rate_limiter import RateLimiter
from response_extractor import InvalidModelResponse, extract_json_payload
from usage_ledger import UsageLedger, UsageLedgerUnavailable
from validation import validate_mcq_fields, validate_paper_fields, validate_voice_notes_fields

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An error occurred. Please try again."
RATE_LIMITED_MESSAGE = "Too many requests. Please wait a minute before trying again."
USAGE_EXCEEDED_MESSAGE = "Usage limit exceeded. Please upgrade your plan."
UPSTREAM_FAILED_MESSAGE = "Failed to generate content. Please try again."
INVALID_RESPONSE_MESSAGE = "Invalid response from AI. Please try again."


class GenerationStage(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    AUTHENTICATED = "authenticated"
    RATE_CHECKED = "rate_checked"
    QUOTA_CONSUMED = "quota_consumed"
    PROMPTED = "prompted"
    COMPLETED = "completed"
    EXTRACTED = "extracted"
    RESPONDED = "responded"


class GenerationRequest(BaseModel):
    account_id: str
    kind: str
    fields: Dict[str, Any]
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class GeneratedArtifact(BaseModel):
    kind: str
    payload: Any


@dataclass(frozen=True)
class GenerationEndpoint:
    kind: str
    validate: Callable[[dict], Dict[str, Any]]
    build_prompt: Callable[..., str]
    system_message: str
    shape: str
    wrap_result: Callable[[Any], Dict[str, Any]]


MCQ_ENDPOINT = GenerationEndpoint(
    kind="mcq",
    validate=validate_mcq_fields,
    build_prompt=build_mcq_prompt,
    system_message=MCQ_SYSTEM_MESSAGE,
    shape="array",
    wrap_result=lambda payload: {"mcqs": payload},
)

PAPER_ENDPOINT = GenerationEndpoint(
    kind="paper",
    validate=validate_paper_fields,
    build_prompt=build_paper_prompt,
    system_message=PAPER_SYSTEM_MESSAGE,
    shape="object",
    wrap_result=lambda payload: {"paper": payload},
)

VOICE_NOTES_ENDPOINT = GenerationEndpoint(
    kind="voice",
    validate=validate_voice_notes_fields,
    build_prompt=build_voice_notes_prompt,
    system_message=VOICE_NOTES_SYSTEM_MESSAGE,
    shape="object",
    wrap_result=lambda payload: payload,
)


class GenerationPipeline:
    """Shared request flow for the usage-metered generation endpoints.

    validate -> authenticate -> rate limit -> consume quota -> prompt ->
    complete -> extract. The quota is always consumed before the completion
    call, and every failure ends the request.
    """

    def __init__(
        self,
        identity_verifier: IdentityVerifier,
        rate_limiter: RateLimiter,
        usage_ledger: UsageLedger,
        completion_client: CompletionClient,
    ):
        self.identity_verifier = identity_verifier
        self.rate_limiter = rate_limiter
        self.usage_ledger = usage_ledger
        self.completion_client = completion_client

    async def run(self, endpoint: GenerationEndpoint, body: Any, authorization: Optional[str]) -> Dict[str, Any]:
        stage = GenerationStage.RECEIVED
        account_id: Optional[str] = None
        try:
            if not isinstance(body, dict):
                raise HTTPException(status_code=400, detail="Invalid request body")
            fields = endpoint.validate(body)
            stage = GenerationStage.VALIDATED

            if not self.completion_client.configured:
                logger.error("generation_config_error kind=%s error=LLM API key is not configured", endpoint.kind)
                raise HTTPException(status_code=500, detail=GENERIC_ERROR_MESSAGE)

            account_id = self.identity_verifier.verify_header(authorization)
            stage = GenerationStage.AUTHENTICATED
            request = GenerationRequest(account_id=account_id, kind=endpoint.kind, fields=fields)

            if not await self.rate_limiter.allow(account_id):
                raise HTTPException(status_code=429, detail=RATE_LIMITED_MESSAGE)
            stage = GenerationStage.RATE_CHECKED

            await self._consume_quota(account_id, endpoint.kind)
            stage = GenerationStage.QUOTA_CONSUMED

            prompt = endpoint.build_prompt(**request.fields)
            stage = GenerationStage.PROMPTED

            content = await self._complete(endpoint, request, prompt)
            stage = GenerationStage.COMPLETED

            artifact = self._extract(endpoint, request, content)
            stage = GenerationStage.EXTRACTED
        except HTTPException as exc:
            logger.warning(
                "generation_%s kind=%s stage=%s account_id=%s status=%s detail=%s",
                "failed" if exc.status_code >= 500 else "rejected",
                endpoint.kind,
                stage.value,
                account_id or "-",
                exc.status_code,
                exc.detail,
            )
            raise

        logger.info(
            "generation_success kind=%s account_id=%s stage=%s elapsed_ms=%s",
            endpoint.kind,
            account_id,
            GenerationStage.RESPONDED.value,
            int((datetime.now(timezone.utc) - request.received_at).total_seconds() * 1000),
        )
        return endpoint.wrap_result(artifact.payload)

    async def _consume_quota(self, account_id: str, kind: str) -> None:
        try:
            allowed = await self.usage_ledger.try_consume(account_id, kind)
        except UsageLedgerUnavailable as exc:
            # Ledger outages are reported to the caller as an exhausted quota.
            logger.error("usage_ledger_unavailable account_id=%s kind=%s error=%s", account_id, kind, exc)
            raise HTTPException(status_code=403, detail=USAGE_EXCEEDED_MESSAGE)
        if not allowed:
            logger.info("usage_quota_exceeded account_id=%s kind=%s", account_id, kind)
            raise HTTPException(status_code=403, detail=USAGE_EXCEEDED_MESSAGE)

    async def _complete(self, endpoint: GenerationEndpoint, request: GenerationRequest, prompt: str) -> str:
        try:
            return await self.completion_client.complete(prompt, endpoint.system_message)
        except CompletionError as exc:
            logger.error(
                "generation_upstream_error kind=%s account_id=%s error=%s",
                endpoint.kind,
                request.account_id,
                exc,
            )
            raise HTTPException(status_code=500, detail=UPSTREAM_FAILED_MESSAGE)

    def _extract(self, endpoint: GenerationEndpoint, request: GenerationRequest, content: str) -> GeneratedArtifact:
        try:
            payload = extract_json_payload(content, endpoint.shape)
        except InvalidModelResponse as exc:
            preview = (content or "").strip().replace("\n", " ")[:180]
            logger.error(
                "generation_parse_error kind=%s account_id=%s error=%s preview=%r",
                endpoint.kind,
                request.account_id,
                exc,
                preview,
            )
            raise HTTPException(status_code=500, detail=INVALID_RESPONSE_MESSAGE)
        return GeneratedArtifact(kind=endpoint.kind, payload=payload)
